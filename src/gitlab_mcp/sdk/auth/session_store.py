"""In-process session store with write-behind replication to a storage backend.

The store's cache is the source of truth for serving requests. Every mutating
method updates the cache synchronously and returns; the matching backend write
is queued and applied by a single worker task, in issue order, so a newer state
is never overwritten by an older one. Backend failures are logged and counted
but never raised into the request that caused them.

Sessions are indexed by id, by current gateway access token and by current
gateway refresh token. Index updates happen in the same synchronous block as
the primary map update, so no coroutine can observe them out of step.

Lifecycle:

    store = SessionStore(create_storage_backend(config.storage))
    await store.start()      # warm cache from durable backends, start workers
    ...
    await store.stop()       # drain queued writes, close backend
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from gitlab_mcp.sdk.telemetry import record_counter

from .records import (
    AuthCodeFlowState,
    AuthorizationCode,
    CleanupResult,
    DeviceFlowState,
    OAuthSession,
    SessionMapping,
    StorageSnapshot,
    StorageStats,
)
from .storage.base import StorageBackend, validate_session_updates
from .tokens import now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSION_AGE_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60
DEFAULT_REPLICATION_QUEUE_SIZE = 1000
SWEEP_BATCH_SIZE = 500


@dataclass(frozen=True)
class _ReplicationOp:
    operation: str
    apply: Callable[[StorageBackend], Awaitable[Any]]


class SessionStore:
    """Authoritative index over sessions, in-flight flows and authorization codes."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        max_session_age_ms: int = DEFAULT_MAX_SESSION_AGE_MS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        replication_queue_size: int = DEFAULT_REPLICATION_QUEUE_SIZE,
    ):
        self.backend = backend
        self.max_session_age_ms = max_session_age_ms
        self.cleanup_interval_seconds = cleanup_interval_seconds

        self._sessions: dict[str, OAuthSession] = {}
        self._token_index: dict[str, str] = {}
        self._refresh_index: dict[str, str] = {}
        self._device_flows: dict[str, DeviceFlowState] = {}
        self._device_code_index: dict[str, str] = {}
        self._auth_code_flows: dict[str, AuthCodeFlowState] = {}
        self._auth_codes: dict[str, AuthorizationCode] = {}
        self._mappings: dict[str, SessionMapping] = {}

        self._queue: asyncio.Queue[_ReplicationOp] = asyncio.Queue(maxsize=replication_queue_size)
        self._worker: asyncio.Task[None] | None = None
        self._sweeper: asyncio.Task[None] | None = None
        self._running = False

    # ── Lifecycle ──────────────────────────────────────────────────────────────
    async def start(self) -> None:
        """Initialize the backend, warm the cache and start background tasks.

        A backend read failure here propagates: starting with a silently empty
        cache would log every user out.
        """
        if self._running:
            return
        await self.backend.initialize()
        if self.backend.is_durable:
            snapshot = await self.backend.load_snapshot()
            self._load_snapshot(snapshot)
            logger.info(
                "Session store warmed from backend",
                extra={
                    "backend": self.backend.name,
                    "sessions": len(self._sessions),
                    "device_flows": len(self._device_flows),
                    "auth_codes": len(self._auth_codes),
                },
            )
        self._running = True
        self._worker = asyncio.create_task(self._replication_worker())
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweep, drain queued backend writes and close the backend."""
        if not self._running:
            return
        self._running = False
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.backend.close()
        logger.info("Session store stopped", extra={"backend": self.backend.name})

    async def drain(self) -> None:
        """Wait until every queued backend write has been applied."""
        await self._queue.join()

    @property
    def pending_replications(self) -> int:
        return self._queue.qsize()

    # ── Sessions ───────────────────────────────────────────────────────────────
    def create_session(self, session: OAuthSession) -> OAuthSession:
        self._cache_session(session)
        self._replicate("create_session", lambda b: b.create_session(session))
        logger.info(
            "Created session",
            extra={"session_prefix": session.session_id[:8], "client_id": session.client_id},
        )
        return session

    def get_session(self, session_id: str) -> OAuthSession | None:
        return self._live_session(self._sessions.get(session_id))

    def get_session_by_token(self, access_token: str) -> OAuthSession | None:
        if not access_token:
            return None
        session_id = self._token_index.get(access_token)
        return self.get_session(session_id) if session_id else None

    def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        if not refresh_token:
            return None
        session_id = self._refresh_index.get(refresh_token)
        return self.get_session(session_id) if session_id else None

    def update_session(self, session_id: str, **updates: Any) -> OAuthSession | None:
        """Apply ``updates`` and stamp ``updated_at``; token changes repoint the indexes."""
        validate_session_updates(updates)
        existing = self._sessions.get(session_id)
        if existing is None:
            return None
        changes = {"updated_at": now_ms(), **updates}
        updated = existing.model_copy(update=changes)
        self._uncache_session(existing)
        self._cache_session(updated)
        self._replicate("update_session", lambda b: b.update_session(session_id, changes))
        return updated

    def delete_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._remove_session(session)
        self._replicate("delete_session", lambda b: b.delete_session(session_id))
        logger.info("Deleted session", extra={"session_prefix": session_id[:8]})
        return True

    def iter_sessions(self) -> Iterable[OAuthSession]:
        return list(self._sessions.values())

    # ── Device flows ───────────────────────────────────────────────────────────
    def store_device_flow(self, flow: DeviceFlowState) -> None:
        existing = self._device_flows.get(flow.flow_id)
        if existing is not None:
            self._device_code_index.pop(existing.device_code, None)
        self._device_flows[flow.flow_id] = flow
        self._device_code_index[flow.device_code] = flow.flow_id
        self._replicate("store_device_flow", lambda b: b.store_device_flow(flow))

    def get_device_flow(self, flow_id: str) -> DeviceFlowState | None:
        """Return the flow even if expired; the poll endpoint reports expiry itself."""
        return self._device_flows.get(flow_id)

    def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        flow_id = self._device_code_index.get(device_code)
        flow = self._device_flows.get(flow_id) if flow_id else None
        if flow is None or now_ms() > flow.expires_at:
            return None
        return flow

    def delete_device_flow(self, flow_id: str) -> bool:
        flow = self._device_flows.pop(flow_id, None)
        if flow is None:
            return False
        self._device_code_index.pop(flow.device_code, None)
        self._replicate("delete_device_flow", lambda b: b.delete_device_flow(flow_id))
        return True

    # ── Auth-code flows ────────────────────────────────────────────────────────
    def store_auth_code_flow(self, flow: AuthCodeFlowState) -> None:
        self._auth_code_flows[flow.internal_state] = flow
        self._replicate("store_auth_code_flow", lambda b: b.store_auth_code_flow(flow))

    def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        flow = self._auth_code_flows.get(internal_state)
        if flow is None or now_ms() > flow.expires_at:
            return None
        return flow

    def delete_auth_code_flow(self, internal_state: str) -> bool:
        if self._auth_code_flows.pop(internal_state, None) is None:
            return False
        self._replicate("delete_auth_code_flow", lambda b: b.delete_auth_code_flow(internal_state))
        return True

    # ── Authorization codes ────────────────────────────────────────────────────
    def store_auth_code(self, code: AuthorizationCode) -> None:
        self._auth_codes[code.code] = code
        self._replicate("store_auth_code", lambda b: b.store_auth_code(code))

    def get_auth_code(self, code: str) -> AuthorizationCode | None:
        record = self._auth_codes.get(code)
        if record is None or now_ms() > record.expires_at:
            return None
        return record

    def delete_auth_code(self, code: str) -> bool:
        if self._auth_codes.pop(code, None) is None:
            return False
        self._replicate("delete_auth_code", lambda b: b.delete_auth_code(code))
        return True

    # ── External session mappings ──────────────────────────────────────────────
    def associate_external_session(self, external_session_id: str, session_id: str) -> bool:
        """Map a transport session id to a gateway session; False if the session is unknown."""
        if self.get_session(session_id) is None:
            return False
        created_at = now_ms()
        self._mappings[external_session_id] = SessionMapping(
            external_session_id=external_session_id, session_id=session_id, created_at=created_at
        )
        self._replicate(
            "associate_external_session",
            lambda b: b.associate_external_session(external_session_id, session_id, created_at),
        )
        return True

    def get_session_by_external_id(self, external_session_id: str) -> OAuthSession | None:
        mapping = self._mappings.get(external_session_id)
        return self.get_session(mapping.session_id) if mapping else None

    def remove_external_session(self, external_session_id: str) -> bool:
        if self._mappings.pop(external_session_id, None) is None:
            return False
        self._replicate(
            "remove_external_session", lambda b: b.remove_external_session(external_session_id)
        )
        return True

    # ── Sweep ──────────────────────────────────────────────────────────────────
    async def cleanup(self) -> CleanupResult:
        """Remove expired records from the cache, then expire them in the backend.

        Each entity class is swept independently; a failure in one is logged
        and does not stop the others.
        """
        now = now_ms()
        counts: dict[str, int] = {}
        mappings_before = len(self._mappings)

        sweeps: list[tuple[str, Callable[[int], Awaitable[int]]]] = [
            ("sessions", self._sweep_sessions),
            ("device_flows", self._sweep_device_flows),
            ("auth_code_flows", self._sweep_auth_code_flows),
            ("auth_codes", self._sweep_auth_codes),
        ]
        for entity, sweep in sweeps:
            try:
                counts[entity] = await sweep(now)
            except Exception:
                logger.exception("Session store sweep failed", extra={"entity": entity})
                counts[entity] = 0

        result = CleanupResult(
            session_mappings=max(0, mappings_before - len(self._mappings)), **counts
        )
        max_age = self.max_session_age_ms
        self._replicate("cleanup", lambda b: b.cleanup(max_age, now))

        if result.total:
            logger.info("Session store sweep removed expired records", extra=result.model_dump())
        return result

    async def _sweep_sessions(self, now: int) -> int:
        expired = [
            session
            for session in self._sessions.values()
            if now - session.created_at > self.max_session_age_ms
        ]
        for batch in _batches(expired):
            for session in batch:
                if self._sessions.get(session.session_id) is session:
                    self._remove_session(session)
            await asyncio.sleep(0)
        return len(expired)

    async def _sweep_device_flows(self, now: int) -> int:
        expired = [flow for flow in self._device_flows.values() if now > flow.expires_at]
        for batch in _batches(expired):
            for flow in batch:
                if self._device_flows.pop(flow.flow_id, None) is not None:
                    self._device_code_index.pop(flow.device_code, None)
            await asyncio.sleep(0)
        return len(expired)

    async def _sweep_auth_code_flows(self, now: int) -> int:
        expired = [key for key, flow in self._auth_code_flows.items() if now > flow.expires_at]
        for batch in _batches(expired):
            for key in batch:
                self._auth_code_flows.pop(key, None)
            await asyncio.sleep(0)
        return len(expired)

    async def _sweep_auth_codes(self, now: int) -> int:
        expired = [key for key, code in self._auth_codes.items() if now > code.expires_at]
        for batch in _batches(expired):
            for key in batch:
                self._auth_codes.pop(key, None)
            await asyncio.sleep(0)
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            await self.cleanup()

    # ── Stats ──────────────────────────────────────────────────────────────────
    def get_stats(self) -> StorageStats:
        return StorageStats(
            backend=self.backend.name,
            sessions=len(self._sessions),
            device_flows=len(self._device_flows),
            auth_code_flows=len(self._auth_code_flows),
            auth_codes=len(self._auth_codes),
            session_mappings=len(self._mappings),
        )

    # ── Cache internals ────────────────────────────────────────────────────────
    def _live_session(self, session: OAuthSession | None) -> OAuthSession | None:
        if session is None or now_ms() - session.created_at > self.max_session_age_ms:
            return None
        return session

    def _cache_session(self, session: OAuthSession) -> None:
        existing = self._sessions.get(session.session_id)
        if existing is not None and existing is not session:
            self._uncache_session(existing)
        self._sessions[session.session_id] = session
        if session.access_token:
            self._token_index[session.access_token] = session.session_id
        if session.refresh_token:
            self._refresh_index[session.refresh_token] = session.session_id

    def _uncache_session(self, session: OAuthSession) -> None:
        if session.access_token:
            self._token_index.pop(session.access_token, None)
        if session.refresh_token:
            self._refresh_index.pop(session.refresh_token, None)

    def _remove_session(self, session: OAuthSession) -> None:
        self._sessions.pop(session.session_id, None)
        self._uncache_session(session)
        for external_id in [
            key for key, mapping in self._mappings.items() if mapping.session_id == session.session_id
        ]:
            del self._mappings[external_id]

    def _load_snapshot(self, snapshot: StorageSnapshot) -> None:
        for session in snapshot.sessions:
            self._cache_session(session)
        for flow in snapshot.device_flows:
            self._device_flows[flow.flow_id] = flow
            self._device_code_index[flow.device_code] = flow.flow_id
        for auth_code_flow in snapshot.auth_code_flows:
            self._auth_code_flows[auth_code_flow.internal_state] = auth_code_flow
        for code in snapshot.auth_codes:
            self._auth_codes[code.code] = code
        for mapping in snapshot.session_mappings:
            if mapping.session_id in self._sessions:
                self._mappings[mapping.external_session_id] = mapping

    # ── Replication ────────────────────────────────────────────────────────────
    def _replicate(self, operation: str, apply: Callable[[StorageBackend], Awaitable[Any]]) -> None:
        try:
            self._queue.put_nowait(_ReplicationOp(operation=operation, apply=apply))
        except asyncio.QueueFull:
            logger.error(
                "Storage replication queue full; dropping backend write",
                extra={"operation": operation, "backend": self.backend.name},
            )
            record_counter(
                "gitlab_mcp.storage.replication_errors_total",
                attributes={"operation": operation, "reason": "queue_full"},
                description="Backend writes that failed or were dropped",
            )

    async def _replication_worker(self) -> None:
        while True:
            op = await self._queue.get()
            try:
                await op.apply(self.backend)
            except Exception:
                logger.exception(
                    "Storage backend write failed",
                    extra={"operation": op.operation, "backend": self.backend.name},
                )
                record_counter(
                    "gitlab_mcp.storage.replication_errors_total",
                    attributes={"operation": op.operation, "reason": "backend_error"},
                    description="Backend writes that failed or were dropped",
                )
            finally:
                self._queue.task_done()


def _batches(items: list[Any], size: int = SWEEP_BATCH_SIZE) -> Iterable[list[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


__all__ = ["DEFAULT_MAX_SESSION_AGE_MS", "SessionStore"]
