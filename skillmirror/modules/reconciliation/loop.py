"""
Reconciliation Loop
===================

Purpose
-------
Drive every asset with ``pending_onchain_update = true`` through the update
protocol, on a schedule, with per-task backoff and operator escalation.

Scan
----
1. Claim up to ``RECONCILE_BATCH_SIZE`` tasks, oldest pending first. Each
   claimed row gets a lease (``lease_expires_at``) inside the claiming
   transaction, so no other worker or scan picks it up; rows locked by
   another worker are skipped. The in-process in-flight set covers
   overlapping scans of the same process.
2. Run the claimed tasks with at most ``RECONCILE_MAX_CONCURRENCY`` in
   flight.
3. Record each task's result on its own row. One task failing never stops
   its siblings.

Failure Handling
----------------
- Retryable failures (transient network, stale proof, unresolved asset,
  database hiccups) bump ``onchain_attempt_count`` and push
  ``next_retry_at`` out by ``min(base * 2^(attempt-1), max) + jitter``.
- After ``RECONCILE_MAX_ATTEMPTS`` the task is flagged ``needs_attention``
  with an ``ExhaustedRetriesError``.
- ``PayloadTooLargeError`` flags the task at once.
- Flagged tasks stay pending; ``requeue`` puts them back in rotation.

Usage
-----
>>> loop = ReconciliationLoop(UpdateProtocol(context))
>>> report = await loop.run_once()
>>> task = asyncio.create_task(loop.run_forever(stop_event=stop_event))
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from skillmirror.core.config.config import Config
from skillmirror.core.database.base import utcnow
from skillmirror.core.database.service import DatabaseService
from skillmirror.core.exceptions import (
    SkillMirrorInfrastructureException,
    is_transient_error,
    should_alert,
)
from skillmirror.core.logging.logger import LogContext, get_logger
from skillmirror.database.models import CharacterAsset
from skillmirror.modules.assets.repository import CharacterAssetRepository
from skillmirror.modules.onchain.protocol import UpdateOutcome, UpdateProtocol, UpdateStatus
from skillmirror.modules.shared.exceptions import (
    ExhaustedRetriesError,
    NotFoundError,
    PayloadTooLargeError,
    SkillMirrorDomainException,
)

if TYPE_CHECKING:
    from logging import Logger

MAX_ERROR_LENGTH = 500


@dataclass(frozen=True)
class ReconciliationSettings:
    interval_seconds: float = 15.0
    batch_size: int = 25
    max_concurrency: int = 4
    max_attempts: int = 8
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 900.0
    backoff_jitter_seconds: float = 3.0
    lease_seconds: int = 300

    @classmethod
    def from_config(cls) -> ReconciliationSettings:
        return cls(
            interval_seconds=float(Config.RECONCILE_INTERVAL_SECONDS),
            batch_size=Config.RECONCILE_BATCH_SIZE,
            max_concurrency=Config.RECONCILE_MAX_CONCURRENCY,
            max_attempts=Config.RECONCILE_MAX_ATTEMPTS,
            backoff_base_seconds=float(Config.RECONCILE_BACKOFF_BASE_SECONDS),
            backoff_max_seconds=float(Config.RECONCILE_BACKOFF_MAX_SECONDS),
            backoff_jitter_seconds=float(Config.RECONCILE_BACKOFF_JITTER_SECONDS),
            lease_seconds=Config.RECONCILE_LEASE_SECONDS,
        )


@dataclass(frozen=True)
class PendingUpdateTask:
    """Reconciliation view of one pending asset."""

    asset_id: str
    attempt_count: int
    next_retry_at: Optional[datetime]
    pending_since: Optional[datetime] = None
    needs_attention: bool = False
    last_error: Optional[str] = None

    @classmethod
    def from_model(cls, asset: CharacterAsset) -> PendingUpdateTask:
        return cls(
            asset_id=asset.asset_id or "",
            attempt_count=asset.onchain_attempt_count,
            next_retry_at=asset.next_retry_at,
            pending_since=asset.pending_since,
            needs_attention=asset.needs_attention,
            last_error=asset.last_error,
        )


@dataclass
class ReconciliationReport:
    """Counts for one scan, plus the errors that escaped to operators."""

    claimed: int = 0
    processed: int = 0
    confirmed: int = 0
    superseded: int = 0
    noop: int = 0
    retried: int = 0
    escalated: int = 0
    errors: List[SkillMirrorDomainException] = field(default_factory=list)

    def record(self, outcome: UpdateOutcome) -> None:
        if outcome.status is UpdateStatus.CONFIRMED:
            self.confirmed += 1
        elif outcome.status is UpdateStatus.SUPERSEDED:
            self.superseded += 1
        else:
            self.noop += 1

    def as_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "processed": self.processed,
            "confirmed": self.confirmed,
            "superseded": self.superseded,
            "noop": self.noop,
            "retried": self.retried,
            "escalated": self.escalated,
            "errors": [e.error_code for e in self.errors],
        }


class ReconciliationLoop:
    """
    Periodic driver of pending on-chain updates.

    Public API
    ----------
    - run_once() -> One scan; returns a ReconciliationReport
    - run_forever(stop_event) -> Scan every interval until stopped
    - list_pending_tasks() / list_attention_tasks() -> Operator views
    - requeue(asset_id) -> Clear escalation and retry immediately
    """

    def __init__(
        self,
        protocol: UpdateProtocol,
        settings: Optional[ReconciliationSettings] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        self.protocol = protocol
        self.settings = settings or ReconciliationSettings.from_config()
        self.log = logger or get_logger(__name__)
        self._in_flight: Set[str] = set()
        self._assets = CharacterAssetRepository(
            CharacterAsset, get_logger(f"{__name__}.CharacterAssetRepository")
        )

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    # ========================================================================
    # Scan
    # ========================================================================

    async def run_once(self) -> ReconciliationReport:
        report = ReconciliationReport()
        tasks = await self._claim()
        report.claimed = len(tasks)
        if not tasks:
            return report

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def _guarded(task: PendingUpdateTask) -> None:
            async with semaphore:
                try:
                    await self._process(task, report)
                except Exception as exc:
                    # Bookkeeping failed too; the lease expiry returns the task to rotation.
                    self.log.error(
                        "Reconciliation bookkeeping failed",
                        extra={
                            "asset_id": task.asset_id,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                        exc_info=True,
                    )
                finally:
                    self._in_flight.discard(task.asset_id)
                    report.processed += 1

        await asyncio.gather(*(_guarded(task) for task in tasks))

        self.log.info("Reconciliation scan finished", extra=report.as_dict())
        return report

    async def _claim(self) -> List[PendingUpdateTask]:
        now = utcnow()
        lease_until = now + timedelta(seconds=self.settings.lease_seconds)
        async with DatabaseService.get_transaction() as session:
            assets = await self._assets.find_claimable(
                session,
                now,
                self.settings.batch_size,
                exclude=self._in_flight,
            )
            tasks = []
            for asset in assets:
                asset.lease_expires_at = lease_until
                tasks.append(PendingUpdateTask.from_model(asset))

        self._in_flight.update(task.asset_id for task in tasks)
        return tasks

    async def _process(self, task: PendingUpdateTask, report: ReconciliationReport) -> None:
        with LogContext(asset_id=task.asset_id, component="reconciliation", operation="reconcile"):
            try:
                outcome = await self.protocol.run(task.asset_id)
            except PayloadTooLargeError as exc:
                await self._escalate(task, exc, task.attempt_count + 1)
                report.escalated += 1
                report.errors.append(exc)
                return
            except Exception as exc:
                await self._handle_failure(task, exc, report)
                return

            report.record(outcome)
            if outcome.status is UpdateStatus.NOOP:
                await self._release(task.asset_id)

    async def _handle_failure(
        self,
        task: PendingUpdateTask,
        exc: Exception,
        report: ReconciliationReport,
    ) -> None:
        attempts = task.attempt_count + 1
        extra = {
            "asset_id": task.asset_id,
            "attempt": attempts,
            "error": getattr(exc, "message", str(exc)),
            "error_type": type(exc).__name__,
            "retryable": is_transient_error(exc),
        }
        if should_alert(exc):
            self.log.error("Update attempt failed", extra=extra, exc_info=True)
        else:
            self.log.warning("Update attempt failed", extra=extra)

        if attempts >= self.settings.max_attempts:
            exhausted = ExhaustedRetriesError(task.asset_id, attempts, _describe(exc))
            await self._escalate(task, exhausted, attempts)
            report.escalated += 1
            report.errors.append(exhausted)
            return

        await self._schedule_retry(task.asset_id, attempts, exc)
        report.retried += 1

    # ========================================================================
    # Row bookkeeping
    # ========================================================================

    def backoff_seconds(self, attempt: int) -> float:
        base = self.settings.backoff_base_seconds * (2 ** (max(attempt, 1) - 1))
        capped = min(base, self.settings.backoff_max_seconds)
        return capped + random.uniform(0, self.settings.backoff_jitter_seconds)

    async def _schedule_retry(self, asset_id: str, attempts: int, exc: BaseException) -> None:
        delay = self.backoff_seconds(attempts)
        async with DatabaseService.get_transaction() as session:
            asset = await self._assets.get_by_asset_id(session, asset_id, for_update=True)
            if asset is None:
                return
            asset.onchain_attempt_count = attempts
            asset.next_retry_at = utcnow() + timedelta(seconds=delay)
            asset.lease_expires_at = None
            asset.last_error = _describe(exc)

        self.log.info(
            "Update retry scheduled",
            extra={"asset_id": asset_id, "attempt": attempts, "backoff_seconds": round(delay, 3)},
        )

    async def _escalate(
        self,
        task: PendingUpdateTask,
        exc: SkillMirrorDomainException,
        attempts: int,
    ) -> None:
        async with DatabaseService.get_transaction() as session:
            asset = await self._assets.get_by_asset_id(session, task.asset_id, for_update=True)
            if asset is None:
                return
            asset.needs_attention = True
            asset.onchain_attempt_count = attempts
            asset.next_retry_at = None
            asset.lease_expires_at = None
            asset.last_error = _describe(exc)

        self.log.error(
            "Update task needs operator attention",
            extra={
                "asset_id": task.asset_id,
                "attempts": attempts,
                "error": exc.message,
                "error_type": type(exc).__name__,
                "error_code": exc.error_code,
            },
        )

    async def _release(self, asset_id: str) -> None:
        async with DatabaseService.get_transaction() as session:
            asset = await self._assets.get_by_asset_id(session, asset_id, for_update=True)
            if asset is not None:
                asset.lease_expires_at = None

    # ========================================================================
    # Operator API
    # ========================================================================

    async def list_pending_tasks(self, limit: int = 100) -> List[PendingUpdateTask]:
        async with DatabaseService.get_session() as session:
            assets = await self._assets.find_many_where(
                session,
                CharacterAsset.pending_onchain_update.is_(True),
                CharacterAsset.asset_id.is_not(None),
                order_by=[CharacterAsset.pending_since, CharacterAsset.id],
                limit=limit,
            )
        return [PendingUpdateTask.from_model(a) for a in assets]

    async def list_attention_tasks(self) -> List[PendingUpdateTask]:
        async with DatabaseService.get_session() as session:
            assets = await self._assets.list_attention(session)
        return [PendingUpdateTask.from_model(a) for a in assets]

    async def requeue(self, asset_id: str) -> PendingUpdateTask:
        """
        Clear escalation and backoff so the next scan picks the task up.

        Raises:
            NotFoundError: No character is bound to ``asset_id``
        """
        async with DatabaseService.get_transaction() as session:
            asset = await self._assets.get_by_asset_id(session, asset_id, for_update=True)
            if asset is None:
                raise NotFoundError("CharacterAsset", asset_id)
            asset.needs_attention = False
            asset.onchain_attempt_count = 0
            asset.next_retry_at = None
            asset.lease_expires_at = None
            asset.last_error = None
            task = PendingUpdateTask.from_model(asset)

        self.log.info("Update task requeued", extra={"asset_id": asset_id})
        return task

    # ========================================================================
    # Background driver
    # ========================================================================

    async def run_forever(self, *, stop_event: asyncio.Event) -> None:
        self.log.info(
            "Reconciliation loop started",
            extra={
                "interval_seconds": self.settings.interval_seconds,
                "batch_size": self.settings.batch_size,
                "max_concurrency": self.settings.max_concurrency,
            },
        )
        try:
            while not stop_event.is_set():
                try:
                    await self.run_once()
                except (SQLAlchemyError, SkillMirrorInfrastructureException) as exc:
                    self.log.error(
                        "Reconciliation scan failed; retrying next interval",
                        extra={"error": str(exc), "error_type": type(exc).__name__},
                        exc_info=True,
                    )

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.settings.interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.log.info("Reconciliation loop stopped")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, SkillMirrorDomainException):
        text = f"{exc.error_code}: {exc.message}"
    else:
        text = f"{type(exc).__name__}: {exc}"
    return text[:MAX_ERROR_LENGTH]
