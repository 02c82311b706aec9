"""
Global pytest configuration and fixtures.
"""

from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from gitlab_mcp.sdk.auth.storage import (
    FileStorageBackend,
    MemoryStorageBackend,
    SqliteStorageBackend,
    StorageBackend,
)


def _memory_backend_factory(tmp_path: Path) -> StorageBackend:
    return MemoryStorageBackend()


def _file_backend_factory(tmp_path: Path) -> StorageBackend:
    # Long timers: tests flush explicitly through close().
    return FileStorageBackend(
        tmp_path / "oauth-sessions.json", save_interval_ms=60_000, debounce_ms=60_000
    )


def _sqlite_backend_factory(tmp_path: Path) -> StorageBackend:
    return SqliteStorageBackend(tmp_path / "oauth.db", encryption_key=Fernet.generate_key().decode())


BACKEND_FACTORIES: list[Callable[[Path], StorageBackend]] = [
    _memory_backend_factory,
    _file_backend_factory,
    _sqlite_backend_factory,
]


@pytest.fixture(params=BACKEND_FACTORIES, ids=["memory", "file", "sqlite"])
async def storage_backend(request, tmp_path: Path) -> AsyncIterator[StorageBackend]:
    """Parametrized storage backend fixture to exercise all backends uniformly."""
    backend: StorageBackend = request.param(tmp_path)
    await backend.initialize()
    try:
        yield backend
    finally:
        await backend.close()
