"""
Process lifecycle: builds and tears down the worker's components.
"""

from .application_context import ApplicationContext

__all__ = ["ApplicationContext"]
