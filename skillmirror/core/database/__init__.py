"""
Database subsystem for SkillMirror.

Provides the async SQLAlchemy engine, session and transaction management,
retry policy and circuit breaker, plus the ORM base used by every model.
"""

from skillmirror.core.database.base import Base, IdMixin, TimestampMixin, UTCDateTime, utcnow
from skillmirror.core.database.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerSettings,
    CircuitState,
)
from skillmirror.core.database.retry_policy import DatabaseRetryConfig, DatabaseRetryPolicy
from skillmirror.core.database.service import (
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    DatabaseService,
)

__all__ = [
    # ORM Base & Mixins
    "Base",
    "IdMixin",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    # Main service
    "DatabaseService",
    # Exceptions
    "DatabaseInitializationError",
    "DatabaseNotInitializedError",
    "CircuitBreakerOpenError",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerSettings",
    "CircuitState",
    "DatabaseRetryConfig",
    "DatabaseRetryPolicy",
]
