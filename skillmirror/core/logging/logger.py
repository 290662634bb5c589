"""
Structured logging for the SkillMirror worker.

Every record is stamped with the ambient asset context (asset id, skill,
correlation id, operation) held in a ContextVar, so concurrent update runs
interleave in the output without mixing their fields. Records are handed
to a bounded in-memory queue and written by a background listener thread;
the event loop never waits on stdout or the log file.

Sinks:
    console  JSON in production, colored text on a TTY, plain text otherwise
    file     ``<LOGS_DIR>/skillmirror_daily.json.log``, JSON, rotated at UTC
             midnight with one backup kept

Typical use::

    log = get_logger(__name__)
    async with LogContext(asset_id=asset_id, operation="onchain.update"):
        log.info("Submitting update", extra={"state_version": 7})
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from skillmirror.core.config.config import Config

_UNSET = "N/A"

# Fields LogContext manages; everything else passed via ``extra`` is free-form.
_CONTEXT_FIELDS = ("asset_id", "skill", "correlation_id", "request_id", "component", "operation")

# Attributes every LogRecord carries; they never leak into the "extra" block.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("skillmirror_log_context", default={})


@dataclass(frozen=True, slots=True)
class LoggerConfig:
    """Logging knobs derived from ``Config`` at setup time."""

    CONSOLE_FORMAT: str = "%(asctime)s | %(levelname)-8s | %(name)-36s | %(message)s"
    DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    DAILY_BASENAME: str = "skillmirror_daily.json.log"
    DAILY_BACKUP_COUNT: int = 1
    QUEUE_MAX_SIZE: int = 10_000

    @property
    def environment(self) -> str:
        return str(getattr(Config, "ENVIRONMENT", "development")).lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def logs_dir(self) -> Path:
        return Path(Config.LOGS_DIR).resolve()

    @property
    def log_level(self) -> int:
        name = getattr(Config, "LOG_LEVEL", "INFO")
        level = logging.getLevelName(name.upper()) if isinstance(name, str) else None
        return level if isinstance(level, int) else logging.INFO

    @property
    def use_json(self) -> bool:
        flag = getattr(Config, "LOG_JSON", None)
        return self.is_production if flag is None else bool(flag)

    @property
    def use_colors(self) -> bool:
        return not self.use_json and sys.stdout.isatty()


LOGGER_CONFIG = LoggerConfig()


@dataclass(frozen=True, slots=True)
class LoggingHealth:
    initialized: bool
    queue_size: int
    queue_max_size: int
    records_enqueued: int
    records_dropped: int
    listener_errors: int


@dataclass(slots=True)
class _LoggingState:
    """Module-wide state owned by setup_logging/shutdown_logging."""

    initialized: bool = False
    log_queue: Optional["queue.Queue[logging.LogRecord]"] = None
    listener: Optional[QueueListener] = None
    counters: Dict[str, int] = field(
        default_factory=lambda: {"enqueued": 0, "dropped": 0, "listener_errors": 0}
    )


_state = _LoggingState()


class AssetContextFilter(logging.Filter):
    """Copy the current LogContext onto the record before it is queued."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        ctx = _log_context.get()
        correlation = ctx.get("correlation_id") or ctx.get("request_id") or _UNSET
        defaults = {
            "asset_id": ctx.get("asset_id") or _UNSET,
            "skill": ctx.get("skill") or _UNSET,
            "correlation_id": correlation,
            "request_id": ctx.get("request_id") or correlation,
            "component": ctx.get("component") or record.name.rsplit(".", 1)[-1],
            "operation": ctx.get("operation") or _UNSET,
        }
        # Values passed explicitly through ``extra`` win over the context.
        for key, value in defaults.items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)

        for key, value in ctx.items():
            if key not in _CONTEXT_FIELDS and not hasattr(record, key):
                setattr(record, key, value)
        return True


class ColoredFormatter(logging.Formatter):
    _PALETTE = {
        logging.DEBUG: "\033[90m",
        logging.INFO: "\033[94m",
        logging.WARNING: "\033[93m",
        logging.ERROR: "\033[91m",
        logging.CRITICAL: "\033[1;91m",
    }

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        color = self._PALETTE.get(record.levelno)
        if color is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{color}{plain}\033[0m"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


class JSONFormatter(logging.Formatter):
    """One JSON object per line; unset context fields are omitted."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update(
            (name, getattr(record, name))
            for name in _CONTEXT_FIELDS
            if getattr(record, name, _UNSET) not in (None, _UNSET)
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in _CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, ensure_ascii=False, default=str)


class _BoundedQueueHandler(QueueHandler):
    """Drop records instead of blocking when the listener falls behind."""

    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _state.counters["enqueued"] += 1
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            _state.counters["dropped"] += 1
            sys.stderr.write("skillmirror: log queue full, record dropped\n")


class _CountingListener(QueueListener):
    def handleError(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _state.counters["listener_errors"] += 1
        sys.stderr.write(f"skillmirror: failed to emit log record from {record.name}\n")


def _console_handler(cfg: LoggerConfig) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if cfg.use_json:
        formatter: logging.Formatter = JSONFormatter()
    elif cfg.use_colors:
        formatter = ColoredFormatter(cfg.CONSOLE_FORMAT, cfg.DATE_FORMAT)
    else:
        formatter = logging.Formatter(cfg.CONSOLE_FORMAT, cfg.DATE_FORMAT)
    handler.setFormatter(formatter)
    handler.setLevel(cfg.log_level)
    return handler


def _file_handler(cfg: LoggerConfig) -> logging.Handler:
    cfg.logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        cfg.logs_dir / cfg.DAILY_BASENAME,
        when="midnight",
        backupCount=cfg.DAILY_BACKUP_COUNT,
        encoding="utf-8",
        utc=True,
    )
    handler.setFormatter(JSONFormatter())
    handler.setLevel(cfg.log_level)
    return handler


def setup_logging() -> None:
    """Install the queue-backed handlers on the root logger. Idempotent."""
    if _state.initialized:
        return

    cfg = LOGGER_CONFIG
    root = logging.getLogger()
    root.handlers.clear()
    root.filters.clear()
    root.setLevel(cfg.log_level)

    _state.counters = {"enqueued": 0, "dropped": 0, "listener_errors": 0}
    _state.log_queue = queue.Queue(cfg.QUEUE_MAX_SIZE)
    _state.listener = _CountingListener(
        _state.log_queue,
        _console_handler(cfg),
        _file_handler(cfg),
        respect_handler_level=True,
    )
    _state.listener.start()

    # The filter sits on the producer side: ContextVars are not visible
    # from the listener thread.
    producer = _BoundedQueueHandler(_state.log_queue)
    producer.setLevel(cfg.log_level)
    producer.addFilter(AssetContextFilter())
    root.addHandler(producer)

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _state.initialized = True
    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "environment": cfg.environment,
            "log_level": logging.getLevelName(cfg.log_level),
            "json": cfg.use_json,
            "logs_dir": str(cfg.logs_dir),
        },
    )


def shutdown_logging() -> None:
    """Drain the queue, stop the listener and detach root handlers."""
    if not _state.initialized:
        return

    logging.getLogger(__name__).info("Logging shutting down")
    listener, _state.listener = _state.listener, None
    if listener is not None:
        listener.stop()

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.filters.clear()

    _state.log_queue = None
    _state.initialized = False


def get_logging_health() -> LoggingHealth:
    q = _state.log_queue
    return LoggingHealth(
        initialized=_state.initialized,
        queue_size=q.qsize() if q is not None else 0,
        queue_max_size=q.maxsize if q is not None else 0,
        records_enqueued=_state.counters["enqueued"],
        records_dropped=_state.counters["dropped"],
        listener_errors=_state.counters["listener_errors"],
    )


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Bind asset fields to every record logged inside the block.

    Works as a sync or async context manager. Nested contexts replace the
    outer one for their duration and restore it on exit. A short
    correlation id is generated when none is supplied.
    """

    def __init__(
        self,
        asset_id: Optional[str] = None,
        skill: Optional[str] = None,
        component: Optional[str] = None,
        operation: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        correlation = correlation_id or request_id or uuid.uuid4().hex[:8]
        self.context: Dict[str, Any] = {
            **extra,
            "asset_id": asset_id,
            "skill": skill,
            "component": component,
            "operation": operation,
            "correlation_id": correlation,
            "request_id": request_id or correlation,
        }
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        self._token = _log_context.set(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def set_log_context(**fields: Any) -> None:
    """Merge ``fields`` into the current context; ``None`` values are ignored."""
    merged = dict(_log_context.get())
    merged.update({key: value for key, value in fields.items() if value is not None})
    if "request_id" in fields and not merged.get("correlation_id"):
        merged["correlation_id"] = merged.get("request_id")
    _log_context.set(merged)


def clear_log_context() -> None:
    _log_context.set({})


setup_logging()
