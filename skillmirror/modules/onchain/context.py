"""
Update context: everything one run of the update protocol needs.

The signing credential, the collaborator clients, the signer throttle and
the tunables travel together in an explicit ``UpdateContext`` that the
application builds once at startup and passes into the protocol. Nothing
in the mirror pipeline reaches for a module-level signer or connection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from skillmirror.core.config.config import Config
from skillmirror.core.exceptions import ConfigurationError
from skillmirror.modules.metadata.builder import MetadataBuilder
from skillmirror.modules.onchain.clients import ContentStoreClient, LedgerClient, ProofIndexClient


class SignerThrottle(Protocol):
    async def acquire(self, key: str, timeout: Optional[float] = None) -> bool: ...


class Signer:
    """Ed25519 signing credential for ledger submissions."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey) -> None:
        self._private_key = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.public_key = raw.hex()

    @classmethod
    def from_hex(cls, seed_hex: str) -> Signer:
        """
        Load from a hex-encoded 32-byte seed.

        Raises:
            ConfigurationError: If the seed is not 32 bytes of hex
        """
        try:
            seed = bytes.fromhex(seed_hex.strip())
        except ValueError as exc:
            raise ConfigurationError("SIGNER_PRIVATE_KEY", "signer seed is not valid hex") from exc
        if len(seed) != 32:
            raise ConfigurationError("SIGNER_PRIVATE_KEY", "signer seed must be 32 bytes")
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def generate(cls) -> Signer:
        """Ephemeral key for development and tests."""
        return cls(ed25519.Ed25519PrivateKey.generate())

    def sign(self, message: bytes) -> str:
        return self._private_key.sign(message).hex()

    def verify(self, message: bytes, signature_hex: str) -> bool:
        from cryptography.exceptions import InvalidSignature

        try:
            self._private_key.public_key().verify(bytes.fromhex(signature_hex), message)
        except (InvalidSignature, ValueError):
            return False
        return True

    def __repr__(self) -> str:
        return f"Signer(public_key={self.public_key[:12]}...)"


@dataclass(frozen=True)
class ProtocolSettings:
    max_tx_bytes: int = 1232
    fixed_overhead_bytes: int = 400
    canopy_depth: int = 0
    stale_max_attempts: int = 3
    stale_backoff_ms: int = 1000
    stale_jitter_ms: int = 250
    confirm_timeout_seconds: float = 20.0
    confirm_poll_interval_seconds: float = 2.0
    throttle_timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls) -> ProtocolSettings:
        return cls(
            max_tx_bytes=Config.LEDGER_MAX_TX_BYTES,
            fixed_overhead_bytes=Config.TX_FIXED_OVERHEAD_BYTES,
            canopy_depth=Config.TREE_CANOPY_DEPTH,
            stale_max_attempts=Config.STALE_PROOF_MAX_ATTEMPTS,
            stale_backoff_ms=Config.STALE_PROOF_BACKOFF_MS,
            stale_jitter_ms=Config.STALE_PROOF_JITTER_MS,
            confirm_timeout_seconds=float(Config.CONFIRM_TIMEOUT_SECONDS),
            confirm_poll_interval_seconds=float(Config.CONFIRM_POLL_INTERVAL_SECONDS),
            throttle_timeout_seconds=float(Config.SIGNER_THROTTLE_TIMEOUT_SECONDS),
        )


@dataclass(frozen=True)
class UpdateContext:
    """Explicit dependencies of the proof-gated update protocol."""

    signer: Signer
    ledger: LedgerClient
    index: ProofIndexClient
    content_store: ContentStoreClient
    throttle: SignerThrottle
    settings: ProtocolSettings = field(default_factory=ProtocolSettings.from_config)
    builder: MetadataBuilder = field(default_factory=MetadataBuilder)

    @property
    def throttle_key(self) -> str:
        return f"signer:{self.signer.public_key}"
