"""OAuth provider implementations.

This module contains concrete implementations of the ``ProviderAdapter`` contract.
"""

from .dummy import DummyProviderAdapter
from .gitlab import GitLabProviderAdapter

__all__ = [
    "DummyProviderAdapter",
    "GitLabProviderAdapter",
]
