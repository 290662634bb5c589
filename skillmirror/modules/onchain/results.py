"""
Tagged results for external collaborator calls.

Every client call returns exactly one of:

- ``Ok(value)``      the call succeeded
- ``NotFound``       the collaborator has no record of the subject
- ``Stale``          the ledger rejected the update because the tree root moved
- ``TooLarge``       the request exceeded a size ceiling
- ``Transient``      timeout, partition, 5xx, throttling: try again later

Callers branch on the tag with ``isinstance`` and must handle every case;
collaborators never signal these outcomes by raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Generic, Optional, Tuple, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    reason: str = "not found"


@dataclass(frozen=True)
class Stale:
    reason: str = "stale_root"


@dataclass(frozen=True)
class TooLarge:
    reason: str = "oversized"


@dataclass(frozen=True)
class Transient:
    reason: str
    status_code: Optional[int] = None


Result = Union[Ok[T], NotFound, Stale, TooLarge, Transient]


# ============================================================================
# Payload types carried by Ok
# ============================================================================


@dataclass(frozen=True)
class MerkleProof:
    """
    Membership proof for a compressed asset leaf.

    Valid only until the tree root changes; never persisted.
    """

    asset_id: str
    root: str
    proof: Tuple[str, ...]
    data_hash: str
    creator_hash: str
    leaf_index: int
    tree_id: str

    def truncated(self, canopy_depth: int) -> Tuple[str, ...]:
        """Proof path without the nodes the on-chain canopy already stores."""
        if canopy_depth <= 0:
            return self.proof
        keep = max(len(self.proof) - canopy_depth, 0)
        return self.proof[:keep]


@dataclass(frozen=True)
class SubmitReceipt:
    signature: str


@dataclass(frozen=True)
class TransactionStatus:
    status: str
    reason: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == "confirmed"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


@dataclass(frozen=True)
class Capabilities:
    version: str
    features: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def major_version(self) -> Optional[int]:
        head = self.version.split(".", 1)[0].lstrip("v")
        return int(head) if head.isdigit() else None
