"""
Proof-Gated Update Protocol
===========================

Purpose
-------
Mirror one asset's authoritative state onto its compressed on-chain record.

State Machine (per attempt)
---------------------------
::

    FETCH_PROOF -> BUILD_TX -> SUBMIT -> CONFIRMED
                                      -> STALE_PROOF        (refetch, bounded, jittered)
                                      -> SIZE_EXCEEDED      (step down the detail ladder)
                                      -> TRANSIENT_FAILURE  (raise; reconciliation backs off)

Run Outline
-----------
1. Snapshot the asset (asset row first, then skill rows) and remember its
   ``state_version``.
2. Upload the full document to the content store once.
3. Loop over the state machine until confirmation or a terminal error.
4. Compare-and-swap commit: record the signature, and clear the pending
   flags only if ``state_version`` is unchanged. Otherwise the run is
   superseded and the asset stays pending for the next run.

Errors Raised
-------------
- ``TransientNetworkError``: collaborator failure, throttled signer,
  confirmation timeout
- ``StaleProofError``: root moved on every one of K attempts
- ``PayloadTooLargeError``: even URI_ONLY does not fit
- ``UnresolvedAssetError``: implausible id, or the index has no proof
- ``NotFoundError``: no character row for the id

The caller (the reconciliation loop) owns backoff and escalation; nothing
here sleeps longer than one stale-proof backoff or one confirmation window.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from skillmirror.core.database.base import utcnow
from skillmirror.core.database.retry_policy import DatabaseRetryPolicy
from skillmirror.core.database.service import DatabaseService
from skillmirror.core.logging.logger import LogContext, get_logger
from skillmirror.database.models import CharacterAsset, SkillRecord
from skillmirror.modules.assets.identifiers import is_plausible_asset_id
from skillmirror.modules.assets.repository import CharacterAssetRepository
from skillmirror.modules.metadata.builder import (
    AssetSnapshot,
    DetailLevel,
    MetadataPayload,
    canonical_json,
)
from skillmirror.modules.onchain.context import UpdateContext
from skillmirror.modules.onchain.results import (
    MerkleProof,
    NotFound,
    Ok,
    Result,
    Stale,
    TooLarge,
    Transient,
)
from skillmirror.modules.progression.repository import SkillRecordRepository
from skillmirror.modules.shared.exceptions import (
    NotFoundError,
    PayloadTooLargeError,
    StaleProofError,
    TransientNetworkError,
    UnresolvedAssetError,
)

if TYPE_CHECKING:
    from logging import Logger

HASH_BYTES = 32


class UpdateStatus(str, Enum):
    CONFIRMED = "confirmed"
    SUPERSEDED = "superseded"
    NOOP = "noop"


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of one protocol run."""

    asset_id: str
    status: UpdateStatus
    state_version: int
    signature: Optional[str] = None
    metadata_uri: Optional[str] = None
    detail: Optional[DetailLevel] = None
    attempts: int = 0


class UpdateProtocol:
    """
    Drives one asset through proof fetch, submission and commit.

    Runs for the same asset must not overlap; the reconciliation loop's
    lease guarantees that.
    """

    def __init__(
        self,
        context: UpdateContext,
        logger: Optional[Logger] = None,
        retry_policy: Optional[DatabaseRetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.context = context
        self.settings = context.settings
        self.log = logger or get_logger(__name__)
        self._retry = retry_policy or DatabaseRetryPolicy.from_config()
        self._sleep = sleep

        self._assets = CharacterAssetRepository(
            CharacterAsset, get_logger(f"{__name__}.CharacterAssetRepository")
        )
        self._skills = SkillRecordRepository(
            SkillRecord, get_logger(f"{__name__}.SkillRecordRepository")
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def run(self, asset_id: str) -> UpdateOutcome:
        """
        Mirror the current state of ``asset_id``.

        Returns NOOP when the asset is no longer pending, CONFIRMED when the
        pending flag was cleared, SUPERSEDED when a newer mutation landed
        while the update was in flight.
        """
        with LogContext(asset_id=asset_id, component="update_protocol", operation="onchain_update"):
            if not is_plausible_asset_id(asset_id):
                raise UnresolvedAssetError(asset_id, "implausible asset id")

            snapshot = await self._snapshot(asset_id)
            if snapshot is None:
                self.log.debug("Asset no longer pending; nothing to mirror")
                return UpdateOutcome(asset_id=asset_id, status=UpdateStatus.NOOP, state_version=0)

            uri = await self._upload_document(snapshot)
            signature, payload, attempts = await self._submit_until_confirmed(snapshot, uri)

            status = await self._retry.execute(
                lambda: self._commit(snapshot, signature, uri),
                operation_name="onchain.commit",
                context={"asset_id": asset_id},
            )

            self.log.info(
                "On-chain update confirmed",
                extra={
                    "asset_id": asset_id,
                    "signature": signature,
                    "state_version": snapshot.state_version,
                    "outcome": status.value,
                    "detail": payload.detail.value,
                    "attempts": attempts,
                },
            )
            return UpdateOutcome(
                asset_id=asset_id,
                status=status,
                state_version=snapshot.state_version,
                signature=signature,
                metadata_uri=uri,
                detail=payload.detail,
                attempts=attempts,
            )

    # ========================================================================
    # Snapshot and upload
    # ========================================================================

    async def _snapshot(self, asset_id: str) -> Optional[AssetSnapshot]:
        # Asset row first: skill rows read after it are at least as new as its state_version.
        async with DatabaseService.get_session() as session:
            asset = await self._assets.get_by_asset_id(session, asset_id)
            if asset is None:
                raise NotFoundError("CharacterAsset", asset_id)
            if not asset.pending_onchain_update:
                return None
            records = await self._skills.for_asset(session, asset_id)
            return AssetSnapshot.from_models(asset, records)

    async def _upload_document(self, snapshot: AssetSnapshot) -> str:
        document = self.context.builder.encode_document(snapshot)
        result = await self.context.content_store.upload(document)
        if isinstance(result, Ok):
            return result.value
        if isinstance(result, TooLarge):
            raise PayloadTooLargeError(snapshot.asset_id, len(document), self.settings.max_tx_bytes)
        raise TransientNetworkError("content_store", result.reason)

    # ========================================================================
    # State machine
    # ========================================================================

    async def _submit_until_confirmed(
        self, snapshot: AssetSnapshot, uri: str
    ) -> tuple[str, MetadataPayload, int]:
        detail: Optional[DetailLevel] = self.context.builder.settings.initial_detail
        stale_count = 0
        attempts = 0

        while True:
            attempts += 1
            proof = await self._fetch_proof(snapshot.asset_id)
            payload = self._build_tx(snapshot, uri, proof, detail)
            detail = payload.detail

            result = await self._submit(proof, payload)
            if isinstance(result, Ok):
                return result.value, payload, attempts

            if isinstance(result, TooLarge):
                detail = payload.detail.smaller()
                if detail is None:
                    raise PayloadTooLargeError(
                        snapshot.asset_id,
                        self.estimate_size(proof, payload),
                        self.settings.max_tx_bytes,
                    )
                self.log.warning(
                    "Ledger rejected payload as oversized; shrinking",
                    extra={"from_detail": payload.detail.value, "to_detail": detail.value},
                )
                continue

            if isinstance(result, Stale):
                stale_count += 1
                if stale_count >= self.settings.stale_max_attempts:
                    raise StaleProofError(snapshot.asset_id, stale_count)
                delay = self._stale_backoff(stale_count)
                self.log.info(
                    "Proof went stale; refetching",
                    extra={"stale_count": stale_count, "backoff_seconds": round(delay, 3)},
                )
                await self._sleep(delay)
                continue

            raise TransientNetworkError("ledger", result.reason)

    async def _fetch_proof(self, asset_id: str) -> MerkleProof:
        result = await self.context.index.get_asset_proof(asset_id)
        if isinstance(result, Ok):
            return result.value
        if isinstance(result, NotFound):
            raise UnresolvedAssetError(asset_id, f"index has no proof: {result.reason}")
        raise TransientNetworkError("index", result.reason)

    def estimate_size(self, proof: MerkleProof, payload: MetadataPayload) -> int:
        """Encoded transaction size: fixed overhead, proof path, payload."""
        path = proof.truncated(self.settings.canopy_depth)
        return self.settings.fixed_overhead_bytes + HASH_BYTES * len(path) + payload.size

    def _build_tx(
        self,
        snapshot: AssetSnapshot,
        uri: str,
        proof: MerkleProof,
        detail: Optional[DetailLevel],
    ) -> MetadataPayload:
        builder = self.context.builder
        size = 0
        for rung in builder.ladder(detail):
            payload = builder.build_payload(snapshot, uri, rung)
            size = self.estimate_size(proof, payload)
            if size <= self.settings.max_tx_bytes:
                if detail is not None and rung is not detail:
                    self.log.info(
                        "Payload shrunk to fit transaction ceiling",
                        extra={"from_detail": detail.value, "to_detail": rung.value, "size_bytes": size},
                    )
                return payload

        raise PayloadTooLargeError(snapshot.asset_id, size, self.settings.max_tx_bytes)

    def build_transaction(self, proof: MerkleProof, payload: MetadataPayload) -> Dict[str, Any]:
        return {
            "asset_id": proof.asset_id,
            "tree_id": proof.tree_id,
            "root": proof.root,
            "data_hash": proof.data_hash,
            "creator_hash": proof.creator_hash,
            "leaf_index": proof.leaf_index,
            "proof": list(proof.truncated(self.settings.canopy_depth)),
            "metadata": payload.to_dict(),
        }

    async def _submit(self, proof: MerkleProof, payload: MetadataPayload) -> Result[str]:
        allowed = await self.context.throttle.acquire(
            self.context.throttle_key,
            timeout=self.settings.throttle_timeout_seconds,
        )
        if not allowed:
            raise TransientNetworkError("signer", "signer rate limit not acquired in time")

        transaction = self.build_transaction(proof, payload)
        body = {
            "transaction": transaction,
            "signer": self.context.signer.public_key,
            "signature": self.context.signer.sign(canonical_json(transaction)),
        }

        submitted = await self.context.ledger.submit_update(body)
        if not isinstance(submitted, Ok):
            return submitted
        return await self._await_confirmation(submitted.value.signature)

    async def _await_confirmation(self, signature: str) -> Result[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.confirm_timeout_seconds

        while True:
            result = await self.context.ledger.get_transaction_status(signature)
            if isinstance(result, Ok):
                status = result.value
                if status.is_confirmed:
                    return Ok(signature)
                if status.is_failed:
                    if status.reason == "stale_root":
                        return Stale(status.reason)
                    return Transient(f"transaction failed: {status.reason or 'unknown'}")
            elif isinstance(result, Transient):
                self.log.debug(
                    "Transaction status poll failed; retrying",
                    extra={"signature": signature, "reason": result.reason},
                )

            if loop.time() >= deadline:
                return Transient(f"confirmation of {signature} timed out")
            await self._sleep(self.settings.confirm_poll_interval_seconds)

    def _stale_backoff(self, stale_count: int) -> float:
        base_ms = self.settings.stale_backoff_ms * (2 ** (stale_count - 1))
        jitter_ms = random.uniform(0, self.settings.stale_jitter_ms)
        return (base_ms + jitter_ms) / 1000.0

    # ========================================================================
    # Compare-and-swap commit
    # ========================================================================

    async def _commit(self, snapshot: AssetSnapshot, signature: str, uri: str) -> UpdateStatus:
        async with DatabaseService.get_transaction() as session:
            # Skill rows then asset row: same order as awards.
            records = await self._skills.for_asset(session, snapshot.asset_id, for_update=True)
            asset = await self._assets.get_by_asset_id(session, snapshot.asset_id, for_update=True)
            if asset is None:
                raise NotFoundError("CharacterAsset", snapshot.asset_id)

            asset.last_committed_signature = signature
            asset.last_metadata_uri = uri
            asset.onchain_attempt_count = 0
            asset.next_retry_at = None
            asset.lease_expires_at = None
            asset.last_error = None
            asset.updated_at = utcnow()

            mirrored = {s.name: s.experience for s in snapshot.skills}
            if asset.state_version == snapshot.state_version:
                asset.pending_onchain_update = False
                asset.pending_since = None
                asset.last_confirmed_state_version = snapshot.state_version
                for record in records:
                    record.pending_onchain_update = False
                return UpdateStatus.CONFIRMED

            # Superseded: skills untouched since the snapshot are mirrored.
            for record in records:
                if mirrored.get(record.skill_name) == record.experience:
                    record.pending_onchain_update = False

            self.log.info(
                "Newer mutation landed during update; asset stays pending",
                extra={
                    "observed_state_version": snapshot.state_version,
                    "current_state_version": asset.state_version,
                },
            )
            return UpdateStatus.SUPERSEDED
