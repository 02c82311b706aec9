"""Volatile in-process storage backend.

Data is lost on restart. The file backend uses this class as its working set.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..records import (
    AuthCodeFlowState,
    AuthorizationCode,
    CleanupResult,
    DeviceFlowState,
    OAuthSession,
    SessionMapping,
    StorageSnapshot,
    StorageStats,
)
from ..tokens import now_ms
from .base import StorageBackend, validate_session_updates

logger = logging.getLogger(__name__)


class MemoryStorageBackend(StorageBackend):
    """Dict-backed storage with secondary indexes on tokens and device codes."""

    name = "memory"

    def __init__(self) -> None:
        self._sessions: dict[str, OAuthSession] = {}
        self._token_index: dict[str, str] = {}
        self._refresh_index: dict[str, str] = {}
        self._device_flows: dict[str, DeviceFlowState] = {}
        self._device_code_index: dict[str, str] = {}
        self._auth_code_flows: dict[str, AuthCodeFlowState] = {}
        self._auth_codes: dict[str, AuthorizationCode] = {}
        self._mappings: dict[str, SessionMapping] = {}

    async def initialize(self) -> None:
        logger.debug("Memory storage backend initialized")

    async def close(self) -> None:
        pass

    # ── Sessions ───────────────────────────────────────────────────────────────
    async def create_session(self, session: OAuthSession) -> None:
        existing = self._sessions.get(session.session_id)
        if existing is not None:
            self._unindex_session(existing)
        self._sessions[session.session_id] = session
        self._index_session(session)

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return self._sessions.get(session_id)

    async def get_session_by_token(self, access_token: str) -> OAuthSession | None:
        session_id = self._token_index.get(access_token)
        return self._sessions.get(session_id) if session_id else None

    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        session_id = self._refresh_index.get(refresh_token)
        return self._sessions.get(session_id) if session_id else None

    async def update_session(
        self, session_id: str, updates: Mapping[str, Any]
    ) -> OAuthSession | None:
        validate_session_updates(updates)
        existing = self._sessions.get(session_id)
        if existing is None:
            return None
        updated = existing.model_copy(update=dict(updates))
        self._unindex_session(existing)
        self._sessions[session_id] = updated
        self._index_session(updated)
        return updated

    async def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._unindex_session(session)
        for external_id in [
            key for key, mapping in self._mappings.items() if mapping.session_id == session_id
        ]:
            del self._mappings[external_id]
        return True

    def _index_session(self, session: OAuthSession) -> None:
        if session.access_token:
            self._token_index[session.access_token] = session.session_id
        if session.refresh_token:
            self._refresh_index[session.refresh_token] = session.session_id

    def _unindex_session(self, session: OAuthSession) -> None:
        if session.access_token:
            self._token_index.pop(session.access_token, None)
        if session.refresh_token:
            self._refresh_index.pop(session.refresh_token, None)

    # ── Device flows ───────────────────────────────────────────────────────────
    async def store_device_flow(self, flow: DeviceFlowState) -> None:
        existing = self._device_flows.get(flow.flow_id)
        if existing is not None:
            self._device_code_index.pop(existing.device_code, None)
        self._device_flows[flow.flow_id] = flow
        self._device_code_index[flow.device_code] = flow.flow_id

    async def get_device_flow(self, flow_id: str) -> DeviceFlowState | None:
        return self._device_flows.get(flow_id)

    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        flow_id = self._device_code_index.get(device_code)
        return self._device_flows.get(flow_id) if flow_id else None

    async def delete_device_flow(self, flow_id: str) -> bool:
        flow = self._device_flows.pop(flow_id, None)
        if flow is None:
            return False
        self._device_code_index.pop(flow.device_code, None)
        return True

    # ── Auth-code flows ────────────────────────────────────────────────────────
    async def store_auth_code_flow(self, flow: AuthCodeFlowState) -> None:
        self._auth_code_flows[flow.internal_state] = flow

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        return self._auth_code_flows.get(internal_state)

    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        return self._auth_code_flows.pop(internal_state, None) is not None

    # ── Authorization codes ────────────────────────────────────────────────────
    async def store_auth_code(self, code: AuthorizationCode) -> None:
        self._auth_codes[code.code] = code

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        return self._auth_codes.get(code)

    async def delete_auth_code(self, code: str) -> bool:
        return self._auth_codes.pop(code, None) is not None

    # ── External session mappings ──────────────────────────────────────────────
    async def associate_external_session(
        self, external_session_id: str, session_id: str, created_at: int
    ) -> None:
        self._mappings[external_session_id] = SessionMapping(
            external_session_id=external_session_id,
            session_id=session_id,
            created_at=created_at,
        )

    async def get_session_by_external_id(self, external_session_id: str) -> OAuthSession | None:
        mapping = self._mappings.get(external_session_id)
        return self._sessions.get(mapping.session_id) if mapping else None

    async def remove_external_session(self, external_session_id: str) -> bool:
        return self._mappings.pop(external_session_id, None) is not None

    # ── Bulk / maintenance ─────────────────────────────────────────────────────
    async def load_snapshot(self) -> StorageSnapshot:
        return StorageSnapshot(
            sessions=[self._sessions[key] for key in sorted(self._sessions)],
            device_flows=[self._device_flows[key] for key in sorted(self._device_flows)],
            auth_code_flows=[self._auth_code_flows[key] for key in sorted(self._auth_code_flows)],
            auth_codes=[self._auth_codes[key] for key in sorted(self._auth_codes)],
            session_mappings=[self._mappings[key] for key in sorted(self._mappings)],
        )

    async def import_snapshot(self, snapshot: StorageSnapshot) -> None:
        """Add every record in ``snapshot``, rebuilding the indexes."""
        for session in snapshot.sessions:
            await self.create_session(session)
        for flow in snapshot.device_flows:
            await self.store_device_flow(flow)
        for auth_code_flow in snapshot.auth_code_flows:
            await self.store_auth_code_flow(auth_code_flow)
        for code in snapshot.auth_codes:
            await self.store_auth_code(code)
        for mapping in snapshot.session_mappings:
            if mapping.session_id in self._sessions:
                self._mappings[mapping.external_session_id] = mapping

    async def cleanup(self, max_session_age_ms: int, now: int | None = None) -> CleanupResult:
        current = now_ms() if now is None else now
        mappings_before = len(self._mappings)

        expired_sessions = [
            session_id
            for session_id, session in self._sessions.items()
            if current - session.created_at > max_session_age_ms
        ]
        for session_id in expired_sessions:
            await self.delete_session(session_id)

        expired_device = [
            flow_id for flow_id, flow in self._device_flows.items() if current > flow.expires_at
        ]
        for flow_id in expired_device:
            await self.delete_device_flow(flow_id)

        expired_auth_flows = [
            key for key, flow in self._auth_code_flows.items() if current > flow.expires_at
        ]
        for key in expired_auth_flows:
            del self._auth_code_flows[key]

        expired_codes = [key for key, code in self._auth_codes.items() if current > code.expires_at]
        for key in expired_codes:
            del self._auth_codes[key]

        return CleanupResult(
            sessions=len(expired_sessions),
            device_flows=len(expired_device),
            auth_code_flows=len(expired_auth_flows),
            auth_codes=len(expired_codes),
            session_mappings=mappings_before - len(self._mappings),
        )

    async def get_stats(self) -> StorageStats:
        return StorageStats(
            backend=self.name,
            sessions=len(self._sessions),
            device_flows=len(self._device_flows),
            auth_code_flows=len(self._auth_code_flows),
            auth_codes=len(self._auth_codes),
            session_mappings=len(self._mappings),
        )


__all__ = ["MemoryStorageBackend"]
