"""
Static configuration for SkillMirror.

- **config.py**: environment-backed ``Config`` singleton and ``Environment``
"""

from skillmirror.core.config.config import Config, Environment

__all__ = ["Config", "Environment"]
