"""
SkillMirror worker entry point.

Lifecycle
---------
1. Set up logging
2. Initialize the application context (config, database, redis, clients,
   capability check, services)
3. Run the reconciliation loop, the resolver sweep and the health check as tracked
   background tasks
4. On SIGINT/SIGTERM, signal the tasks to stop, wait for them, shut down
"""

from __future__ import annotations

import asyncio
import functools
import signal
import sys
from typing import Any, Awaitable, Callable, Set

from sqlalchemy.exc import SQLAlchemyError

from skillmirror.core.config.config import Config
from skillmirror.core.exceptions import SkillMirrorInfrastructureException
from skillmirror.core.infra.application_context import ApplicationContext
from skillmirror.core.logging.logger import get_logger, setup_logging, shutdown_logging

logger = get_logger(__name__)


async def _periodic(
    name: str,
    operation: Callable[[], Awaitable[Any]],
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    logger.info(f"{name} started", extra={"interval_seconds": interval_seconds})
    try:
        while not stop_event.is_set():
            try:
                await operation()
            except (SQLAlchemyError, SkillMirrorInfrastructureException) as exc:
                logger.error(
                    f"{name} iteration failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
    finally:
        logger.info(f"{name} stopped")


def _supervise(task: "asyncio.Task[Any]", stop_event: asyncio.Event) -> None:
    """Stop the worker when a background task ends before shutdown was requested."""
    if task.cancelled() or stop_event.is_set():
        return
    exc = task.exception()
    if exc is not None:
        logger.critical(
            "Background task crashed; stopping worker",
            extra={"task": task.get_name(), "error": str(exc), "error_type": type(exc).__name__},
            exc_info=exc,
        )
    else:
        logger.error("Background task exited unexpectedly; stopping worker", extra={"task": task.get_name()})
    stop_event.set()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug(f"{sig.name} handler not supported on this platform")


async def main() -> None:
    context = ApplicationContext()
    stop_event = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)

    background: Set[asyncio.Task[Any]] = set()
    try:
        await context.initialize()

        tasks = [
            asyncio.create_task(
                context.reconciliation.run_forever(stop_event=stop_event),
                name="reconciliation",
            ),
            asyncio.create_task(
                _periodic(
                    "Resolver sweep",
                    context.resolver.resolve_pending,
                    Config.RESOLVER_SWEEP_INTERVAL_SECONDS,
                    stop_event,
                ),
                name="resolver-sweep",
            ),
            asyncio.create_task(
                _periodic(
                    "Health check",
                    context.log_health,
                    Config.HEALTH_LOG_INTERVAL_SECONDS,
                    stop_event,
                ),
                name="health-check",
            ),
        ]
        for task in tasks:
            background.add(task)
            task.add_done_callback(background.discard)
            task.add_done_callback(functools.partial(_supervise, stop_event=stop_event))

        logger.info("SkillMirror worker running")
        await stop_event.wait()
        logger.info("Shutdown signal received")

    finally:
        stop_event.set()
        if background:
            results = await asyncio.gather(*background, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "Background task ended with an error",
                        extra={"error": str(result), "error_type": type(result).__name__},
                    )
        await context.shutdown()


def run() -> None:
    """Console script entry point (``skillmirror-worker``)."""
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped via keyboard interrupt")
    except Exception as exc:
        logger.critical(f"Worker failure: {exc}", exc_info=True)
        shutdown_logging()
        sys.exit(1)
    shutdown_logging()


if __name__ == "__main__":
    run()
