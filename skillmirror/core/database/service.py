"""
Async engine and session lifecycle for the skill ledger.

All writers (award application, the update protocol's snapshot and CAS
commit, resolver binding, reconciliation claims) go through
``DatabaseService.get_transaction()``, which commits on clean exit and
rolls back on any exception. Repositories take row locks with
``SELECT ... FOR UPDATE`` inside that transaction; the locks live until it
ends.

Backends:
    postgresql+asyncpg  production; pooled, per-transaction statement_timeout
    sqlite+aiosqlite    test suite; NullPool, every transaction opens with
                        ``BEGIN IMMEDIATE`` so writers serialize on the file lock

A ``CircuitBreaker`` guards transactions. Operational driver errors count as
failures; integrity violations are ordinary outcomes (duplicate award keys)
and count as successes, as does any other exception raised by the caller
inside the block. A cancelled transaction hands its half-open slot back.

Settings read from ``Config``: DATABASE_URL, DATABASE_POOL_SIZE,
DATABASE_MAX_OVERFLOW, DATABASE_POOL_RECYCLE, DATABASE_POOL_TIMEOUT,
DATABASE_STATEMENT_TIMEOUT_MS, DATABASE_ECHO.

>>> async with DatabaseService.get_transaction() as session:
...     asset = await repo.get_for_update(session, pk)
...     asset.needs_attention = False
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from skillmirror.core.config.config import Config
from skillmirror.core.database.base import Base
from skillmirror.core.database.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
)
from skillmirror.core.logging.logger import get_logger

logger = get_logger(__name__)


class DatabaseInitializationError(RuntimeError):
    """Engine could not be created from the configured URL."""


class DatabaseNotInitializedError(RuntimeError):
    """A session was requested before ``initialize()``."""


@dataclass(frozen=True)
class _EngineSettings:
    url: str
    echo: bool
    pooled: bool
    pool_size: int
    max_overflow: int
    pool_recycle: int
    pool_timeout: int
    statement_timeout_ms: int

    @classmethod
    def resolve(cls, database_url: Optional[str]) -> "_EngineSettings":
        url = database_url or getattr(Config, "DATABASE_URL", None)
        if not isinstance(url, str) or not url:
            raise DatabaseInitializationError("DATABASE_URL is not configured")
        return cls(
            url=url,
            echo=bool(getattr(Config, "DATABASE_ECHO", False)),
            pooled=not (Config.is_testing() or url.startswith("sqlite")),
            pool_size=int(getattr(Config, "DATABASE_POOL_SIZE", 5)),
            max_overflow=int(getattr(Config, "DATABASE_MAX_OVERFLOW", 10)),
            pool_recycle=int(getattr(Config, "DATABASE_POOL_RECYCLE", 1800)),
            pool_timeout=int(getattr(Config, "DATABASE_POOL_TIMEOUT", 30)),
            statement_timeout_ms=int(getattr(Config, "DATABASE_STATEMENT_TIMEOUT_MS", 30_000)),
        )

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql://", "postgresql+asyncpg://"))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def scheme(self) -> str:
        return self.url.partition(":")[0] or "unknown"

    def engine_kwargs(self) -> dict[str, Any]:
        if not self.pooled:
            kwargs: dict[str, Any] = {"poolclass": NullPool}
        else:
            kwargs = {
                "poolclass": AsyncAdaptedQueuePool,
                "pool_size": self.pool_size,
                "max_overflow": self.max_overflow,
                "pool_recycle": self.pool_recycle,
                "pool_timeout": self.pool_timeout,
                "pool_pre_ping": True,
            }
        if self.is_sqlite:
            kwargs["connect_args"] = {"timeout": 30}
        kwargs["echo"] = self.echo
        return kwargs


class DatabaseService:
    """
    Process-wide engine holder; every member is a classmethod.

    ``initialize``/``shutdown`` bracket the worker's lifetime (and each
    test). Writers use ``get_transaction``; health checks and read-only
    listings use ``get_session``.
    """

    _engine: Optional[AsyncEngine] = None
    _session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    _settings: Optional[_EngineSettings] = None
    _init_lock: asyncio.Lock = asyncio.Lock()
    _circuit_breaker: Optional[CircuitBreaker] = None

    @classmethod
    async def initialize(cls, database_url: Optional[str] = None) -> None:
        """
        Create the engine once; later calls are no-ops until ``shutdown()``.

        ``database_url`` takes precedence over ``Config.DATABASE_URL``.
        """
        async with cls._init_lock:
            if cls._engine is not None:
                return

            settings = _EngineSettings.resolve(database_url)
            try:
                engine = create_async_engine(settings.url, **settings.engine_kwargs())
            except Exception as exc:
                logger.error(
                    "Could not create database engine",
                    extra={"url_scheme": settings.scheme, "error_type": type(exc).__name__},
                    exc_info=True,
                )
                raise DatabaseInitializationError(f"Database initialization failed: {exc}") from exc

            if settings.is_sqlite:
                cls._install_sqlite_locking(engine)

            cls._engine = engine
            cls._settings = settings
            cls._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            cls._circuit_breaker = CircuitBreaker.from_config("database")
            logger.info(
                "Database engine ready",
                extra={"url_scheme": settings.scheme, "pooled": settings.pooled},
            )

    @staticmethod
    def _install_sqlite_locking(engine: AsyncEngine) -> None:
        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # noqa: ARG001
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @classmethod
    async def shutdown(cls) -> None:
        """Dispose the engine. A no-op when nothing is initialized."""
        async with cls._init_lock:
            engine = cls._engine
            if engine is None:
                return
            cls._engine = None
            cls._session_factory = None
            cls._settings = None
            cls._circuit_breaker = None
            await engine.dispose()
            logger.info("Database engine disposed")

    @classmethod
    async def create_schema(cls) -> None:
        """Create missing tables for every mapped model."""
        engine = cls._require_engine()

        import skillmirror.database.models  # noqa: F401  (populates Base.metadata)

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    @classmethod
    async def drop_schema(cls) -> None:
        engine = cls._require_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    @classmethod
    async def health_check(cls) -> bool:
        """``SELECT 1`` round trip. Returns False instead of raising."""
        if cls._engine is None:
            return False

        started = time.perf_counter()
        try:
            async with cls._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (DBAPIError, OSError) as exc:
            logger.warning(
                "Database health check failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )
            return False
        logger.debug(
            "Database health check ok",
            extra={"latency_ms": round((time.perf_counter() - started) * 1000.0, 2)},
        )
        return True

    @classmethod
    def _require_engine(cls) -> AsyncEngine:
        if cls._engine is None or cls._session_factory is None:
            raise DatabaseNotInitializedError(
                "DatabaseService.initialize() must run before sessions are opened"
            )
        return cls._engine

    @classmethod
    async def _prepare(cls, session: AsyncSession) -> None:
        settings = cls._settings
        if settings is not None and settings.is_postgres:
            await session.execute(text(f"SET LOCAL statement_timeout = {settings.statement_timeout_ms}"))

    @classmethod
    @asynccontextmanager
    async def get_session(cls) -> AsyncGenerator[AsyncSession, None]:
        """Session for reads; uncommitted work is discarded on close."""
        cls._require_engine()
        assert cls._session_factory is not None

        async with cls._session_factory() as session:
            await cls._prepare(session)
            yield session

    @classmethod
    @asynccontextmanager
    async def get_transaction(cls) -> AsyncGenerator[AsyncSession, None]:
        """
        Unit of work for every state change.

        Commits when the block exits cleanly and rolls back otherwise; the
        original exception always propagates. Raises
        ``CircuitBreakerOpenError`` without touching the database while the
        breaker is open.
        """
        cls._require_engine()
        assert cls._session_factory is not None and cls._circuit_breaker is not None

        breaker = cls._circuit_breaker
        if not await breaker.allow_request():
            logger.warning("Database circuit open; transaction refused")
            raise CircuitBreakerOpenError("database", breaker.consecutive_failures)

        started = time.perf_counter()
        async with cls._session_factory() as session:
            try:
                await cls._prepare(session)
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                # Constraint violations never trip the breaker.
                await breaker.record_success()
                raise
            except DBAPIError as exc:
                await session.rollback()
                await breaker.record_failure()
                logger.error(
                    "Transaction rolled back after driver error",
                    extra={
                        "error_type": type(exc).__name__,
                        "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
                    },
                    exc_info=True,
                )
                raise
            except Exception:
                await session.rollback()
                # Caller errors count as a database success.
                await breaker.record_success()
                raise
            except BaseException:
                await session.rollback()
                await breaker.release_half_open_slot()
                raise
            else:
                await breaker.record_success()

    @classmethod
    def get_circuit_breaker_metrics(cls) -> dict[str, Any]:
        if cls._circuit_breaker is None:
            return {"state": "not_initialized"}
        metrics = cls._circuit_breaker.get_metrics()
        return {
            "state": metrics.state.value,
            "consecutive_failures": metrics.consecutive_failures,
            "total_requests": metrics.total_requests,
            "rejected_requests": metrics.rejected_requests,
        }
