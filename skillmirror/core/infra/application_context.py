"""
Application Context
===================

Purpose
-------
Build every long-lived component of the worker in dependency order and
tear them down in reverse.

Initialization Order
--------------------
1. Config validation
2. DatabaseService
3. RedisService (signer throttle)
4. Collaborator HTTP clients
5. CapabilityCheck (fail fast on incompatible backends)
6. UpdateContext
7. Services: skill ledger, asset resolver, update protocol, reconciliation loop

Shutdown Order (reverse)
------------------------
1. HTTP clients
2. RedisService
3. DatabaseService

Nothing here contains business logic.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from skillmirror.core.config.config import Config
from skillmirror.core.database.service import DatabaseService
from skillmirror.core.logging.logger import get_logger, get_logging_health
from skillmirror.core.redis.service import RedisService
from skillmirror.modules.assets.resolver import AssetResolver
from skillmirror.modules.metadata.builder import MetadataBuilder
from skillmirror.modules.onchain.capabilities import CapabilityCheck
from skillmirror.modules.onchain.clients import (
    ContentStoreClient,
    HttpCollaborator,
    LedgerClient,
    LookupClient,
    ProofIndexClient,
)
from skillmirror.modules.onchain.context import ProtocolSettings, Signer, UpdateContext
from skillmirror.modules.onchain.protocol import UpdateProtocol
from skillmirror.modules.progression.service import SkillLedgerService
from skillmirror.modules.reconciliation.loop import ReconciliationLoop

logger = get_logger(__name__)


class ApplicationContext:
    """
    Owner of the worker's infrastructure and services.

    Usage:
        context = ApplicationContext()
        await context.initialize()
        ...
        await context.shutdown()
    """

    def __init__(self) -> None:
        self.ledger_client: Optional[LedgerClient] = None
        self.index_client: Optional[ProofIndexClient] = None
        self.lookup_client: Optional[LookupClient] = None
        self.content_store: Optional[ContentStoreClient] = None

        self.update_context: Optional[UpdateContext] = None
        self.skill_ledger: Optional[SkillLedgerService] = None
        self.resolver: Optional[AssetResolver] = None
        self.protocol: Optional[UpdateProtocol] = None
        self.reconciliation: Optional[ReconciliationLoop] = None

        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ========================================================================
    # INITIALIZATION
    # ========================================================================

    async def initialize(self) -> None:
        """
        Raises:
            RuntimeError: If already initialized or any step fails. The
                underlying error (for example ``IncompatibleBackendError``)
                is chained as ``__cause__``.
        """
        if self._initialized:
            raise RuntimeError("ApplicationContext already initialized")

        logger.info("Application context initialization started")
        start_time = time.perf_counter()

        try:
            Config.validate()
            logger.info("Configuration validated", extra={"environment": Config.ENVIRONMENT})

            await DatabaseService.initialize()
            await RedisService.initialize()

            await self._open_clients()
            await self.verify_collaborators()

            self.update_context = UpdateContext(
                signer=self._load_signer(),
                ledger=self.ledger_client,
                index=self.index_client,
                content_store=self.content_store,
                throttle=RedisService.get_rate_limiter(),
                settings=ProtocolSettings.from_config(),
                builder=MetadataBuilder(),
            )

            self.skill_ledger = SkillLedgerService()
            self.resolver = AssetResolver(index=self.index_client, lookup=self.lookup_client)
            self.protocol = UpdateProtocol(self.update_context)
            self.reconciliation = ReconciliationLoop(self.protocol)

        except Exception as exc:
            logger.critical(
                "Application context initialization failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            await self.shutdown()
            raise RuntimeError("Failed to initialize application context") from exc

        self._initialized = True
        logger.info(
            "Application context initialized",
            extra={
                "signer": self.update_context.signer.public_key,
                "total_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )

    async def _open_clients(self) -> None:
        timeout = Config.HTTP_TIMEOUT_SECONDS
        self.ledger_client = LedgerClient(Config.LEDGER_API_URL, timeout=timeout)
        self.index_client = ProofIndexClient(Config.INDEXER_RPC_URL, timeout=timeout)
        self.content_store = ContentStoreClient(Config.CONTENT_STORE_URL, timeout=timeout)
        if Config.LOOKUP_API_URL:
            self.lookup_client = LookupClient(Config.LOOKUP_API_URL, timeout=timeout)

        for client in self._clients():
            await client.open()

    async def verify_collaborators(self) -> None:
        """
        Run the capability check against the open clients.

        A lookup service that fails the check is closed and dropped, so the
        resolver falls back to polling the index from the start.

        Raises:
            IncompatibleBackendError: A required collaborator failed the check
        """
        verified = await CapabilityCheck.for_clients(
            ledger=self.ledger_client,
            index=self.index_client,
            content_store=self.content_store,
            lookup=self.lookup_client,
        ).verify()

        if self.lookup_client is not None and "lookup" not in verified:
            lookup, self.lookup_client = self.lookup_client, None
            await lookup.aclose()
            logger.warning("Lookup service disabled; resolver will poll the index")

    @staticmethod
    def _load_signer() -> Signer:
        if Config.SIGNER_PRIVATE_KEY:
            return Signer.from_hex(Config.SIGNER_PRIVATE_KEY)
        signer = Signer.generate()
        logger.warning(
            "SIGNER_PRIVATE_KEY not set; using an ephemeral signing key",
            extra={"signer": signer.public_key},
        )
        return signer

    async def health(self) -> Dict[str, Any]:
        """Check the database and Redis and collect logging queue stats."""
        logging_health = get_logging_health()
        return {
            "database": {
                "reachable": await DatabaseService.health_check(),
                "circuit": DatabaseService.get_circuit_breaker_metrics(),
            },
            "redis": {
                "reachable": await RedisService.health_check(),
                **RedisService.get_status(),
            },
            "logging": {
                "queue_size": logging_health.queue_size,
                "records_dropped": logging_health.records_dropped,
            },
        }

    async def log_health(self) -> None:
        report = await self.health()
        healthy = report["database"]["reachable"] and report["redis"]["reachable"]
        if healthy:
            logger.info("Health check ok", extra={"health": report})
        else:
            logger.warning("Health check degraded", extra={"health": report})

    def _clients(self) -> List[HttpCollaborator]:
        candidates = [self.ledger_client, self.index_client, self.lookup_client, self.content_store]
        return [c for c in candidates if c is not None]

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    async def shutdown(self) -> None:
        """Release everything; safe after a partial initialize."""
        logger.info("Application context shutdown started")

        for client in reversed(self._clients()):
            try:
                await client.aclose()
            except Exception as exc:
                logger.error(
                    "HTTP client close failed",
                    extra={"client": type(client).__name__, "error": str(exc)},
                    exc_info=True,
                )

        try:
            await RedisService.shutdown()
        except Exception as exc:
            logger.error("RedisService shutdown error", extra={"error": str(exc)}, exc_info=True)

        try:
            await DatabaseService.shutdown()
        except Exception as exc:
            logger.error("DatabaseService shutdown error", extra={"error": str(exc)}, exc_info=True)

        self._initialized = False
        logger.info("Application context shutdown complete")
