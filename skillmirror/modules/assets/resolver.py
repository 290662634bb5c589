"""
Asset Resolver
==============

Purpose
-------
Turn a creation receipt (the signature of the mint transaction) into the
stable on-chain asset id the indexer derives for it some time later.

Resolution Paths
----------------
1. **Lookup** (primary): a push-style parser keyed by the receipt. One call;
   if it knows the asset id, resolution is immediate.
2. **Index poll** (fallback): search the read index for the owner's assets
   (narrowed to the collection when configured), skip ids already bound to
   another character, and confirm a candidate by finding the receipt in its
   signature history. Bounded by attempts and by a wall-clock timeout.

Exhaustion is not an error: creation already succeeded, ``asset_id`` stays
null and the periodic sweep (``resolve_pending``) tries again.

Binding
-------
``asset_id`` is written exactly once with ``UPDATE ... WHERE asset_id IS NULL``.
The winner of a resolution race seeds the full skill catalog; losers read
back the bound id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from skillmirror.core.config.config import Config
from skillmirror.core.database.service import DatabaseService
from skillmirror.core.logging.logger import LogContext, get_logger
from skillmirror.database.models import CharacterAsset, SkillRecord
from skillmirror.modules.assets.identifiers import is_plausible_asset_id
from skillmirror.modules.assets.repository import CharacterAssetRepository
from skillmirror.modules.onchain.clients import LookupClient, ProofIndexClient
from skillmirror.modules.onchain.results import Ok
from skillmirror.modules.progression.repository import SkillRecordRepository
from skillmirror.modules.shared.base_service import BaseService
from skillmirror.modules.shared.exceptions import (
    NotFoundError,
    SkillMirrorDomainException,
)
from skillmirror.modules.shared.formulas import combat_level, total_level

if TYPE_CHECKING:
    from logging import Logger


@dataclass(frozen=True)
class ResolverSettings:
    poll_attempts: int = 20
    poll_interval_seconds: float = 3.0
    timeout_seconds: float = 60.0
    sweep_batch_size: int = 20
    collection_address: Optional[str] = None

    @classmethod
    def from_config(cls) -> ResolverSettings:
        return cls(
            poll_attempts=Config.RESOLVER_POLL_ATTEMPTS,
            poll_interval_seconds=float(Config.RESOLVER_POLL_INTERVAL_SECONDS),
            timeout_seconds=float(Config.RESOLVER_TIMEOUT_SECONDS),
            sweep_batch_size=Config.RESOLVER_SWEEP_BATCH_SIZE,
            collection_address=Config.COLLECTION_ADDRESS or None,
        )


class AssetResolver(BaseService):
    """
    Records creation events and binds their on-chain asset ids.

    Public Methods
    --------------
    - register_creation() -> Record a new character with a null asset id
    - resolve() -> Resolve one creation receipt
    - resolve_pending() -> Sweep unresolved creations
    """

    def __init__(
        self,
        index: ProofIndexClient,
        lookup: Optional[LookupClient] = None,
        settings: Optional[ResolverSettings] = None,
        config: type[Config] = Config,
        logger: Optional[Logger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__(config, logger or get_logger(__name__))
        self.index = index
        self.lookup = lookup
        self.settings = settings or ResolverSettings.from_config()
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

    async def register_creation(
        self,
        name: str,
        owner_address: str,
        creation_signature: str,
        image_uri: Optional[str] = None,
    ) -> int:
        """
        Record a successful mint whose asset id is not known yet.

        Registering the same receipt twice returns the existing row.

        Returns:
            Surrogate id of the character row
        """
        name = self.validate_non_empty(name, "name", max_length=64)
        owner_address = self.validate_non_empty(owner_address, "owner_address", max_length=64)
        creation_signature = self.validate_non_empty(
            creation_signature, "creation_signature", max_length=128
        )

        try:
            async with DatabaseService.get_transaction() as session:
                asset = CharacterAsset(
                    name=name,
                    owner_address=owner_address,
                    creation_signature=creation_signature,
                    image_uri=image_uri,
                    combat_level=combat_level({}),
                    total_level=total_level({}),
                )
                self._assets.add(session, asset)
                await self._assets.flush(session)
                pk = asset.id
        except IntegrityError:
            async with DatabaseService.get_session() as session:
                existing = await self._assets.get_by_creation_signature(session, creation_signature)
            if existing is None:
                raise
            self.log.info(
                "Creation already registered",
                extra={"creation_signature": creation_signature, "id": existing.id},
            )
            return existing.id

        self.log.info(
            "Creation registered",
            extra={"creation_signature": creation_signature, "id": pk, "owner": owner_address},
        )
        return pk

    async def resolve(self, creation_signature: str) -> Optional[str]:
        """
        Resolve and bind the asset id for ``creation_signature``.

        Returns:
            The bound asset id, or None if no index knows it yet

        Raises:
            NotFoundError: No creation was registered under the receipt
        """
        with LogContext(component="asset_resolver", operation="resolve"):
            async with DatabaseService.get_session() as session:
                asset = await self._assets.get_by_creation_signature(session, creation_signature)
            if asset is None:
                raise NotFoundError("CharacterAsset", creation_signature)
            if asset.asset_id is not None:
                return asset.asset_id

            candidate = await self._lookup(creation_signature)
            if candidate is None:
                candidate = await self._poll_index(asset)
            if candidate is None:
                self.log.warning(
                    "Asset id not resolved; will retry on the next sweep",
                    extra={"creation_signature": creation_signature, "id": asset.id},
                )
                return None

            return await self._bind(asset, candidate)

    async def resolve_pending(self, limit: Optional[int] = None) -> List[str]:
        """
        Retry resolution for unresolved creations, oldest first.

        One failing creation never stops the sweep.

        Returns:
            Asset ids bound during this sweep
        """
        async with DatabaseService.get_session() as session:
            pending = await self._assets.list_unresolved(session, limit or self.settings.sweep_batch_size)

        resolved: List[str] = []
        for asset in pending:
            try:
                asset_id = await self.resolve(asset.creation_signature)
            except SkillMirrorDomainException as exc:
                self.log.warning(
                    "Resolution failed for creation",
                    extra={
                        "creation_signature": asset.creation_signature,
                        "error": exc.message,
                        "error_type": type(exc).__name__,
                    },
                )
                continue
            except SQLAlchemyError as exc:
                self.log.error(
                    "Database error while resolving creation",
                    extra={
                        "creation_signature": asset.creation_signature,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
                continue
            if asset_id is not None:
                resolved.append(asset_id)

        if pending:
            self.log.info(
                "Resolver sweep finished",
                extra={"checked": len(pending), "resolved": len(resolved)},
            )
        return resolved

    # ========================================================================
    # Resolution paths
    # ========================================================================

    async def _lookup(self, creation_signature: str) -> Optional[str]:
        if self.lookup is None:
            return None

        result = await self.lookup.lookup_asset_ids(creation_signature)
        if not isinstance(result, Ok):
            self.log.debug(
                "Lookup did not resolve receipt; falling back to index poll",
                extra={"creation_signature": creation_signature, "result": type(result).__name__},
            )
            return None

        candidates = await self._unbound_plausible(result.value)
        return candidates[0] if candidates else None

    async def _poll_index(self, asset: CharacterAsset) -> Optional[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.timeout_seconds

        for attempt in range(1, self.settings.poll_attempts + 1):
            found = await self._search_once(asset)
            if found is not None:
                self.log.debug(
                    "Asset id found by index poll",
                    extra={"creation_signature": asset.creation_signature, "attempt": attempt},
                )
                return found

            if attempt >= self.settings.poll_attempts or loop.time() >= deadline:
                break
            await self._sleep(self.settings.poll_interval_seconds)

        return None

    async def _search_once(self, asset: CharacterAsset) -> Optional[str]:
        result = await self.index.search_assets(
            asset.owner_address,
            collection=self.settings.collection_address,
        )
        if not isinstance(result, Ok):
            return None

        for candidate in await self._unbound_plausible(result.value):
            history = await self.index.get_signatures_for_asset(candidate)
            if isinstance(history, Ok) and asset.creation_signature in history.value:
                return candidate
        return None

    async def _unbound_plausible(self, candidates: Iterable[str]) -> List[str]:
        plausible = [c for c in candidates if is_plausible_asset_id(c)]
        if not plausible:
            return []
        async with DatabaseService.get_session() as session:
            taken = await self._assets.bound_asset_ids(session, plausible)
        return [c for c in plausible if c not in taken]

    # ========================================================================
    # Binding
    # ========================================================================

    async def _bind(self, asset: CharacterAsset, candidate: str) -> Optional[str]:
        try:
            async with DatabaseService.get_transaction() as session:
                bound = await self._assets.bind_asset_id(session, asset.id, candidate)
                if bound:
                    await self._skills.seed(session, candidate)
        except IntegrityError:
            self.log.warning(
                "Asset id already bound to another character",
                extra={"asset_id": candidate, "id": asset.id},
            )
            return None

        if bound:
            self.log.info(
                "Asset id bound",
                extra={"asset_id": candidate, "id": asset.id},
            )
            return candidate

        async with DatabaseService.get_session() as session:
            current = await self._assets.get(session, asset.id)
        return current.asset_id if current else None
