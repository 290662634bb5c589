"""
Infrastructure exceptions.

These cover failures of the worker's own plumbing: configuration, backend
compatibility at startup, Redis, and the database circuit breaker. Domain
outcomes (stale proofs, oversized payloads, unresolved assets) live in
``skillmirror.modules.shared.exceptions`` and share the same metadata:
``message``, ``details``, ``severity``, ``is_retryable`` and ``error_code``.

``is_transient_error``, ``get_error_severity`` and ``should_alert`` read that
metadata from either hierarchy, so callers can decide how loudly to log
without caring which layer raised.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorSeverity(Enum):
    DEBUG = "debug"  # expected, e.g. a duplicate award delivery
    INFO = "info"  # caller mistake, e.g. validation
    WARNING = "warning"  # handled and retried
    ERROR = "error"
    CRITICAL = "critical"  # worker cannot run


class SkillMirrorInfrastructureException(Exception):
    """
    Root of the infrastructure hierarchy.

    Subclasses set ``DEFAULT_SEVERITY`` / ``DEFAULT_RETRYABLE``; both can be
    overridden per instance.
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.severity = severity or self.DEFAULT_SEVERITY
        self.is_retryable = self.DEFAULT_RETRYABLE if is_retryable is None else is_retryable
        self.error_code = error_code or type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.error_code}] {self.message}"
        return f"[{self.error_code}] {self.message} | Details: {self.details}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, error_code={self.error_code!r})"


class ConfigurationError(SkillMirrorInfrastructureException):
    """A setting is missing or malformed (for example the signer seed)."""

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            details={"config_key": config_key},
            error_code="CONFIG_ERROR",
        )


class IncompatibleBackendError(SkillMirrorInfrastructureException):
    """
    A collaborator failed the startup capability check.

    ``backend`` is the logical name ("ledger", "index", "content_store",
    "lookup"); ``missing`` lists features it did not advertise.
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(
        self,
        backend: str,
        reason: str,
        missing: Optional[Iterable[str]] = None,
    ) -> None:
        self.backend = backend
        self.reason = reason
        self.missing = sorted(missing or [])
        super().__init__(
            f"Incompatible {backend} backend: {reason}",
            details={"backend": backend, "reason": reason, "missing": self.missing},
            error_code="INCOMPATIBLE_BACKEND",
        )


class RedisConnectionError(SkillMirrorInfrastructureException):
    """Redis was unreachable while ``operation`` ran."""

    DEFAULT_RETRYABLE = True

    def __init__(self, operation: str, original_error: Exception) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(
            f"Redis error during {operation}: {original_error}",
            details={"operation": operation, "error_type": type(original_error).__name__},
            error_code="REDIS_ERROR",
        )


class CircuitBreakerError(SkillMirrorInfrastructureException):
    """Calls to ``service`` are being refused until the breaker half-opens."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, service: str, failure_count: int = 0) -> None:
        self.service = service
        self.failure_count = failure_count
        super().__init__(
            f"Circuit breaker open for {service} after {failure_count} consecutive failures",
            details={"service": service, "failure_count": failure_count},
            error_code="CIRCUIT_BREAKER_OPEN",
        )


def is_transient_error(exc: BaseException) -> bool:
    """True only for exceptions that carry ``is_retryable=True`` metadata."""
    return bool(getattr(exc, "is_retryable", False)) if hasattr(exc, "error_code") else False


def get_error_severity(exc: BaseException) -> ErrorSeverity:
    severity = getattr(exc, "severity", None)
    return severity if isinstance(severity, ErrorSeverity) else ErrorSeverity.ERROR


def should_alert(exc: BaseException) -> bool:
    return get_error_severity(exc) in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)
