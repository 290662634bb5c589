"""
Domain exceptions for SkillMirror.

Purpose
-------
Define the structured, domain-specific exception hierarchy for the skill
ledger, the asset resolver and the on-chain mirror pipeline. Services raise
these for business rule violations and for the well-defined failure modes
of the update protocol.

Propagation
-----------
- ``TransientNetworkError``, ``StaleProofError`` and ``UnresolvedAssetError``
  are retryable. The update protocol and the reconciliation loop absorb them.
- ``DuplicateAwardError`` never reaches callers of the ledger; the prior
  result is returned instead.
- ``PayloadTooLargeError`` and ``ExhaustedRetriesError`` are the only errors
  that escape the mirror subsystem, as operator-visible task state.

Design Notes
------------
- All domain exceptions inherit from ``SkillMirrorDomainException``.
- Each exception carries ``message``, ``details``, ``severity``,
  ``is_retryable`` and ``error_code``, the same shape as the infrastructure
  hierarchy in ``skillmirror.core.exceptions``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from skillmirror.core.exceptions import (
    ErrorSeverity,
    get_error_severity,
    is_transient_error,
    should_alert,
)


class SkillMirrorDomainException(Exception):
    """
    Base exception for all SkillMirror domain-level errors.

    Args:
        message: Human-readable error message
        details: Additional structured data about the error (dict-like)
        severity: Error severity level for logging handlers
        is_retryable: Whether the operation can be retried
        error_code: Optional code for programmatic handling
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
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        self.severity: ErrorSeverity = severity or self.DEFAULT_SEVERITY
        self.is_retryable: bool = (
            is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        )
        self.error_code: str = error_code or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"severity={self.severity.value!r}, "
            f"is_retryable={self.is_retryable!r}"
            ")"
        )


# ============================================================================
# Generic business errors
# ============================================================================


class ValidationError(SkillMirrorDomainException):
    """
    Raised when input fails domain validation (non-positive gain, unknown
    skill, gain above the per-award cap, malformed identifiers).

    Args:
        field: Name of the field that failed validation
        message: Explanation of why validation failed
    """

    DEFAULT_SEVERITY = ErrorSeverity.INFO

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.validation_message = message
        super().__init__(
            f"Validation error for {field}: {message}",
            details={"field": field, "validation_message": message},
            error_code=f"VALIDATION_{field.upper()}",
        )


class NotFoundError(SkillMirrorDomainException):
    """
    Raised when a requested entity does not exist.

    Args:
        resource_type: Type of resource (e.g., "CharacterAsset")
        identifier: Optional identifier for the missing resource
    """

    DEFAULT_SEVERITY = ErrorSeverity.INFO

    def __init__(self, resource_type: str, identifier: Optional[Any] = None) -> None:
        self.resource_type = resource_type
        self.identifier = identifier
        if identifier is not None:
            message = f"{resource_type} not found: {identifier}"
        else:
            message = f"{resource_type} not found"
        super().__init__(
            message,
            details={"resource_type": resource_type, "identifier": identifier},
            error_code=f"{resource_type.upper()}_NOT_FOUND",
        )


# ============================================================================
# Mirror pipeline errors
# ============================================================================


class TransientNetworkError(SkillMirrorDomainException):
    """
    A collaborator call failed for a reason expected to clear on its own
    (timeout, 5xx, partition, signer throttled, unfunded payer).

    Args:
        service: Collaborator name ("ledger", "index", "content_store", ...)
        reason: Short description of the failure
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(
            f"Transient failure talking to {service}: {reason}",
            details={"service": service, "reason": reason},
            error_code="TRANSIENT_NETWORK",
        )


class StaleProofError(SkillMirrorDomainException):
    """
    The ledger kept rejecting the update because the tree root moved
    between proof fetch and submission, more times than allowed in one run.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, asset_id: str, attempts: int) -> None:
        self.asset_id = asset_id
        self.attempts = attempts
        super().__init__(
            f"Proof for {asset_id} went stale {attempts} times in a row",
            details={"asset_id": asset_id, "attempts": attempts},
            error_code="STALE_PROOF",
        )


class PayloadTooLargeError(SkillMirrorDomainException):
    """
    Even the smallest metadata payload does not fit the transaction ceiling.
    Not retryable as-is; the task is escalated to operators.
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR

    def __init__(self, asset_id: str, size_bytes: int, limit_bytes: int) -> None:
        self.asset_id = asset_id
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Update for {asset_id} needs {size_bytes} bytes; ceiling is {limit_bytes}",
            details={
                "asset_id": asset_id,
                "size_bytes": size_bytes,
                "limit_bytes": limit_bytes,
            },
            error_code="PAYLOAD_TOO_LARGE",
        )


class DuplicateAwardError(SkillMirrorDomainException):
    """
    The idempotency key was already recorded. Internal to the ledger, which
    turns it into the prior result.
    """

    DEFAULT_SEVERITY = ErrorSeverity.DEBUG

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Award already applied for key {idempotency_key}",
            details={"idempotency_key": idempotency_key},
            error_code="DUPLICATE_AWARD",
        )


class UnresolvedAssetError(SkillMirrorDomainException):
    """
    The asset has no usable on-chain identity yet (index has no proof for
    it, or the identifier is implausible). Deferred and retried later.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, asset_id: Optional[str], reason: str) -> None:
        self.asset_id = asset_id
        self.reason = reason
        super().__init__(
            f"Asset {asset_id!r} is not resolvable yet: {reason}",
            details={"asset_id": asset_id, "reason": reason},
            error_code="UNRESOLVED_ASSET",
        )


class ExhaustedRetriesError(SkillMirrorDomainException):
    """
    A reconciliation task failed too many times. The asset stays pending
    and is flagged for operators.
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR

    def __init__(self, asset_id: str, attempts: int, last_error: Optional[str] = None) -> None:
        self.asset_id = asset_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up mirroring {asset_id} after {attempts} attempts",
            details={"asset_id": asset_id, "attempts": attempts, "last_error": last_error},
            error_code="EXHAUSTED_RETRIES",
        )


__all__ = [
    "ErrorSeverity",
    "SkillMirrorDomainException",
    "ValidationError",
    "NotFoundError",
    "TransientNetworkError",
    "StaleProofError",
    "PayloadTooLargeError",
    "DuplicateAwardError",
    "UnresolvedAssetError",
    "ExhaustedRetriesError",
    "is_transient_error",
    "get_error_severity",
    "should_alert",
]
