"""Build the configured storage backend."""

import logging

from ..models import StorageConfigModel
from .base import StorageBackend
from .file import DEFAULT_MAX_SESSION_AGE_MS, FileStorageBackend
from .memory import MemoryStorageBackend
from .sqlite import SqliteStorageBackend

logger = logging.getLogger(__name__)


def create_storage_backend(
    config: StorageConfigModel, *, max_session_age_ms: int = DEFAULT_MAX_SESSION_AGE_MS
) -> StorageBackend:
    """Instantiate the backend selected by ``config.type``.

    The returned backend is not initialized; the session store does that on start.
    """
    backend: StorageBackend
    if config.type == "file":
        backend = FileStorageBackend(
            config.file.path,
            save_interval_ms=config.file.save_interval_ms,
            debounce_ms=config.file.debounce_ms,
            pretty_print=config.file.pretty_print,
            max_session_age_ms=max_session_age_ms,
        )
    elif config.type == "sqlite":
        backend = SqliteStorageBackend(config.sqlite.path, encryption_key=config.sqlite.encryption_key)
    else:
        backend = MemoryStorageBackend()

    logger.info("Created OAuth storage backend", extra={"backend": backend.name})
    return backend


__all__ = ["create_storage_backend"]
