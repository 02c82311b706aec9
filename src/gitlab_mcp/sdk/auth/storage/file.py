"""Single-instance durable backend that snapshots to one JSON document.

The working set lives in a ``MemoryStorageBackend``. Every mutation marks the
snapshot dirty and schedules a debounced save; a periodic task saves whatever
is still dirty. Saves write ``<path>.tmp`` and rename it over the target, so a
crash never leaves a half-written document behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..records import (
    AuthCodeFlowState,
    AuthorizationCode,
    CleanupResult,
    DeviceFlowState,
    OAuthSession,
    StorageSnapshot,
    StorageStats,
)
from ..tokens import now_ms
from .base import StorageBackend, StorageError
from .memory import MemoryStorageBackend

logger = logging.getLogger(__name__)

STORAGE_DATA_VERSION = 2
DEFAULT_MAX_SESSION_AGE_MS = 7 * 24 * 60 * 60 * 1000


class FileStorageBackend(StorageBackend):
    """JSON-file backed storage with debounced and periodic atomic saves."""

    name = "file"

    def __init__(
        self,
        path: str | Path,
        *,
        save_interval_ms: int = 30_000,
        debounce_ms: int = 1_000,
        pretty_print: bool = False,
        max_session_age_ms: int = DEFAULT_MAX_SESSION_AGE_MS,
    ) -> None:
        self.path = Path(path)
        self.save_interval_ms = save_interval_ms
        self.debounce_ms = debounce_ms
        self.pretty_print = pretty_print
        self.max_session_age_ms = max_session_age_ms
        self._memory = MemoryStorageBackend()
        self._dirty = False
        self._save_lock = asyncio.Lock()
        self._debounce_task: asyncio.Task[None] | None = None
        self._write_future: asyncio.Future[None] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._initialized = False

    @property
    def is_durable(self) -> bool:
        return True

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    async def initialize(self) -> None:
        if self._initialized:
            return
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, self._read_snapshot)
        await self._memory.import_snapshot(snapshot)
        self._periodic_task = asyncio.create_task(self._periodic_save_loop())
        self._initialized = True
        logger.info(
            "File storage backend initialized",
            extra={
                "path": str(self.path),
                "sessions": len(snapshot.sessions),
                "device_flows": len(snapshot.device_flows),
            },
        )

    async def close(self) -> None:
        for task in (self._debounce_task, self._periodic_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._debounce_task = None
        self._periodic_task = None
        if self._initialized:
            await self.flush()
        self._initialized = False

    async def flush(self) -> None:
        """Write the current state to disk now, regardless of pending timers."""
        async with self._save_lock:
            await self._wait_for_inflight_write()
            self._dirty = False
            snapshot = await self._memory.load_snapshot()
            document = self._build_document(snapshot)
            loop = asyncio.get_running_loop()
            # A cancelled save leaves its executor write running; the next
            # flush waits for it so only one thread touches the temp file.
            self._write_future = loop.run_in_executor(None, self._write_document, document)
            try:
                await asyncio.shield(self._write_future)
            except OSError:
                self._dirty = True
                logger.exception("Failed to save OAuth storage file", extra={"path": str(self.path)})
                raise

    async def _wait_for_inflight_write(self) -> None:
        write = self._write_future
        if write is None or write.done():
            return
        try:
            await write
        except OSError:
            logger.warning(
                "Interrupted save failed; writing again", extra={"path": str(self.path)}
            )

    # ── Sessions ───────────────────────────────────────────────────────────────
    async def create_session(self, session: OAuthSession) -> None:
        await self._memory.create_session(session)
        self._mark_dirty()

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return await self._memory.get_session(session_id)

    async def get_session_by_token(self, access_token: str) -> OAuthSession | None:
        return await self._memory.get_session_by_token(access_token)

    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        return await self._memory.get_session_by_refresh_token(refresh_token)

    async def update_session(
        self, session_id: str, updates: Mapping[str, Any]
    ) -> OAuthSession | None:
        updated = await self._memory.update_session(session_id, updates)
        if updated is not None:
            self._mark_dirty()
        return updated

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self._memory.delete_session(session_id)
        if deleted:
            self._mark_dirty()
        return deleted

    # ── Device flows ───────────────────────────────────────────────────────────
    async def store_device_flow(self, flow: DeviceFlowState) -> None:
        await self._memory.store_device_flow(flow)
        self._mark_dirty()

    async def get_device_flow(self, flow_id: str) -> DeviceFlowState | None:
        return await self._memory.get_device_flow(flow_id)

    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        return await self._memory.get_device_flow_by_device_code(device_code)

    async def delete_device_flow(self, flow_id: str) -> bool:
        deleted = await self._memory.delete_device_flow(flow_id)
        if deleted:
            self._mark_dirty()
        return deleted

    # ── Auth-code flows ────────────────────────────────────────────────────────
    async def store_auth_code_flow(self, flow: AuthCodeFlowState) -> None:
        await self._memory.store_auth_code_flow(flow)
        self._mark_dirty()

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        return await self._memory.get_auth_code_flow(internal_state)

    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        deleted = await self._memory.delete_auth_code_flow(internal_state)
        if deleted:
            self._mark_dirty()
        return deleted

    # ── Authorization codes ────────────────────────────────────────────────────
    async def store_auth_code(self, code: AuthorizationCode) -> None:
        await self._memory.store_auth_code(code)
        self._mark_dirty()

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return await self._memory.get_auth_code(code)

    async def delete_auth_code(self, code: str) -> bool:
        deleted = await self._memory.delete_auth_code(code)
        if deleted:
            self._mark_dirty()
        return deleted

    # ── External session mappings ──────────────────────────────────────────────
    async def associate_external_session(
        self, external_session_id: str, session_id: str, created_at: int
    ) -> None:
        await self._memory.associate_external_session(external_session_id, session_id, created_at)
        self._mark_dirty()

    async def get_session_by_external_id(self, external_session_id: str) -> OAuthSession | None:
        return await self._memory.get_session_by_external_id(external_session_id)

    async def remove_external_session(self, external_session_id: str) -> bool:
        removed = await self._memory.remove_external_session(external_session_id)
        if removed:
            self._mark_dirty()
        return removed

    # ── Bulk / maintenance ─────────────────────────────────────────────────────
    async def load_snapshot(self) -> StorageSnapshot:
        return await self._memory.load_snapshot()

    async def cleanup(self, max_session_age_ms: int, now: int | None = None) -> CleanupResult:
        result = await self._memory.cleanup(max_session_age_ms, now)
        if result.total:
            self._mark_dirty()
        return result

    async def get_stats(self) -> StorageStats:
        stats = await self._memory.get_stats()
        return stats.model_copy(update={"backend": self.name})

    # ── Save scheduling ────────────────────────────────────────────────────────
    def _mark_dirty(self) -> None:
        self._dirty = True
        if not self._initialized:
            return
        if self._debounce_task is None or self._debounce_task.done():
            self._debounce_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.debounce_ms / 1000)
        await self._save_if_dirty()

    async def _periodic_save_loop(self) -> None:
        while True:
            await asyncio.sleep(self.save_interval_ms / 1000)
            await self._save_if_dirty()

    async def _save_if_dirty(self) -> None:
        if not self._dirty:
            return
        try:
            await self.flush()
        except OSError:
            # Already logged; the next timer retries.
            pass

    # ── Document I/O (runs in the default executor) ────────────────────────────
    def _build_document(self, snapshot: StorageSnapshot) -> dict[str, Any]:
        document: dict[str, Any] = {
            "version": STORAGE_DATA_VERSION,
            "exported_at": now_ms(),
        }
        document.update(snapshot.model_dump(mode="json"))
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        indent = 2 if self.pretty_print else None
        with open(self.temp_path, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=indent)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(self.temp_path, self.path)

    def _read_snapshot(self) -> StorageSnapshot:
        if not self.path.exists():
            logger.info("No OAuth storage file found, starting empty", extra={"path": str(self.path)})
            return StorageSnapshot()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot read OAuth storage file {self.path}: {exc}") from exc

        try:
            document = json.loads(raw)
            if not isinstance(document, dict):
                raise ValueError("storage document is not a JSON object")
            document = migrate_document(document)
            snapshot = StorageSnapshot.model_validate(
                {key: document.get(key, []) for key in StorageSnapshot.model_fields}
            )
        except (ValueError, ValidationError) as exc:
            corrupt_path = self.path.with_name(self.path.name + ".corrupt")
            logger.error(
                "OAuth storage file is corrupt, starting empty",
                extra={"path": str(self.path), "moved_to": str(corrupt_path), "error": str(exc)},
            )
            try:
                os.replace(self.path, corrupt_path)
            except OSError:
                logger.warning("Could not move corrupt storage file aside", exc_info=True)
            return StorageSnapshot()

        return self._drop_expired(snapshot)

    def _drop_expired(self, snapshot: StorageSnapshot) -> StorageSnapshot:
        current = now_ms()
        sessions = [
            s for s in snapshot.sessions if current - s.created_at <= self.max_session_age_ms
        ]
        live_ids = {s.session_id for s in sessions}
        kept = StorageSnapshot(
            sessions=sessions,
            device_flows=[f for f in snapshot.device_flows if current <= f.expires_at],
            auth_code_flows=[f for f in snapshot.auth_code_flows if current <= f.expires_at],
            auth_codes=[c for c in snapshot.auth_codes if current <= c.expires_at],
            session_mappings=[m for m in snapshot.session_mappings if m.session_id in live_ids],
        )
        dropped = (
            len(snapshot.sessions)
            - len(kept.sessions)
            + len(snapshot.device_flows)
            - len(kept.device_flows)
            + len(snapshot.auth_code_flows)
            - len(kept.auth_code_flows)
            + len(snapshot.auth_codes)
            - len(kept.auth_codes)
        )
        if dropped:
            logger.info("Dropped expired records while loading storage file", extra={"dropped": dropped})
        return kept


def migrate_document(document: dict[str, Any]) -> dict[str, Any]:
    """Upgrade an older storage document to the current layout.

    Version 1 documents predate the redirect flow and transport session
    mappings; both collections start empty.
    """
    version = document.get("version", 1)
    if not isinstance(version, int):
        raise ValueError(f"invalid storage document version: {version!r}")
    if version > STORAGE_DATA_VERSION:
        logger.warning(
            "Storage file was written by a newer version; loading known fields only",
            extra={"version": version},
        )
        return document
    migrated = dict(document)
    if version < 2:
        migrated.setdefault("auth_code_flows", [])
        migrated.setdefault("session_mappings", [])
        migrated["version"] = STORAGE_DATA_VERSION
        logger.info("Migrated OAuth storage document", extra={"from_version": version})
    return migrated


__all__ = ["FileStorageBackend", "STORAGE_DATA_VERSION", "migrate_document"]
