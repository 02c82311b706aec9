"""Pluggable persistence for the session store.

Three interchangeable backends implement ``StorageBackend``:

- ``MemoryStorageBackend``: volatile, lost on restart
- ``FileStorageBackend``: one JSON document, for a single instance
- ``SqliteStorageBackend``: relational, shareable between instances

Pick one with ``create_storage_backend``; callers never branch on the type.
"""

from .base import StorageBackend, StorageError
from .factory import create_storage_backend
from .file import STORAGE_DATA_VERSION, FileStorageBackend
from .memory import MemoryStorageBackend
from .sqlite import SqliteStorageBackend

__all__ = [
    "FileStorageBackend",
    "MemoryStorageBackend",
    "STORAGE_DATA_VERSION",
    "SqliteStorageBackend",
    "StorageBackend",
    "StorageError",
    "create_storage_backend",
]
