"""
Base Service Foundation

Purpose
-------
Foundational class for SkillMirror domain services. Services implement
business logic, own their transactions through DatabaseService, enforce
business rules and raise domain exceptions.

Design Notes
------------
This base class provides:
- A structured logger bound to the service
- Safe config access
- Validation helpers that raise ``ValidationError``

What this class does NOT do:
- Manage database transactions (that's DatabaseService's job)
- Handle SQLAlchemy sessions
- Talk to external collaborators

Usage
-----
    class SkillLedgerService(BaseService):
        def __init__(self, config=Config, logger=None):
            super().__init__(config, logger or get_logger(__name__))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from skillmirror.core.exceptions import ConfigurationError
from skillmirror.modules.shared.exceptions import ValidationError

if TYPE_CHECKING:
    from logging import Logger

    from skillmirror.core.config.config import Config


class BaseService:
    """
    Base class for all domain services.

    Args:
        config: The ``Config`` class (or a stand-in exposing the same attributes)
        logger: Structured logger instance
    """

    def __init__(self, config: type[Config], logger: Logger) -> None:
        self._config = config
        self.log = logger

    def get_config(self, key: str, default: Optional[Any] = None, required: bool = False) -> Any:
        """
        Read a configuration attribute.

        Raises:
            ConfigurationError: If required=True and the value is missing
        """
        value = getattr(self._config, key, default)
        if required and value in (None, ""):
            raise ConfigurationError(key, f"Required configuration key '{key}' is missing")
        return value

    def validate_positive_int(self, value: int, name: str) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(name, f"{name} must be a positive integer, got {value!r}")

    def validate_non_empty(self, value: Optional[str], name: str, max_length: int = 128) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(name, f"{name} must be a non-empty string")
        if len(value) > max_length:
            raise ValidationError(name, f"{name} must be at most {max_length} characters")
        return value
