"""
Providers for generation backends.

Provider-agnostic architecture: Protocol defines WHAT, implementations define HOW.
"""

from .base import Provider
from .local import LocalProvider
from .remote import RemoteProvider

__all__ = ["Provider", "LocalProvider", "RemoteProvider"]
