"""Relational storage backend on SQLite.

Each entity is a row. The database runs in WAL mode, so several gateway
processes can share one file. All statements run on a single worker thread
behind an ``RLock``; ``cleanup`` removes expired rows from every table in one
transaction.

Gateway tokens are looked up by SHA-256 hash. When an encryption key is
configured, token values (gateway and GitLab) are stored Fernet-encrypted.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypeVar

from cryptography.fernet import Fernet, InvalidToken

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
from .base import StorageBackend, StorageError, validate_session_updates

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS oauth_sessions (
        session_id TEXT PRIMARY KEY,
        access_token_hash TEXT,
        access_token TEXT NOT NULL,
        refresh_token_hash TEXT,
        refresh_token TEXT NOT NULL,
        token_expiry INTEGER NOT NULL,
        provider_access_token TEXT NOT NULL,
        provider_refresh_token TEXT NOT NULL,
        provider_token_expiry INTEGER NOT NULL,
        provider_user_id TEXT NOT NULL,
        provider_username TEXT NOT NULL,
        client_id TEXT NOT NULL,
        scopes TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_oauth_sessions_access "
    "ON oauth_sessions(access_token_hash) WHERE access_token_hash IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_oauth_sessions_refresh "
    "ON oauth_sessions(refresh_token_hash) WHERE refresh_token_hash IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_oauth_sessions_created ON oauth_sessions(created_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_device_flows (
        flow_id TEXT PRIMARY KEY,
        device_code TEXT NOT NULL UNIQUE,
        user_code TEXT NOT NULL,
        verification_uri TEXT NOT NULL,
        verification_uri_complete TEXT,
        expires_at INTEGER NOT NULL,
        interval INTEGER NOT NULL,
        client_id TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        state TEXT,
        redirect_uri TEXT,
        scopes TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_auth_code_flows (
        internal_state TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        client_state TEXT,
        client_redirect_uri TEXT NOT NULL,
        callback_uri TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        scopes TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_auth_codes (
        code TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        redirect_uri TEXT,
        expires_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_session_mappings (
        external_session_id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_oauth_session_mappings_session "
    "ON oauth_session_mappings(session_id)",
)

_ENCRYPTED_SESSION_FIELDS = (
    "access_token",
    "refresh_token",
    "provider_access_token",
    "provider_refresh_token",
)


class SqliteStorageBackend(StorageBackend):
    """SQLite-backed storage shared safely between gateway processes."""

    name = "sqlite"

    def __init__(self, db_path: str | Path, encryption_key: str | bytes | None = None) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._executor: ThreadPoolExecutor | None = None
        self._initialized = False
        self._fernet = self._build_fernet(encryption_key) if encryption_key else None
        if self._fernet is None:
            logger.warning(
                "Storing OAuth tokens in plaintext because no encryption key was provided",
                extra={"path": str(self.db_path)},
            )

    @property
    def is_durable(self) -> bool:
        return True

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._run(self._sync_initialize)

    async def close(self) -> None:
        if self._executor:
            await self._run(self._sync_close)
            self._executor.shutdown(wait=True)
        self._executor = None
        self._initialized = False

    # ── Sessions ───────────────────────────────────────────────────────────────
    async def create_session(self, session: OAuthSession) -> None:
        await self._run(self._sync_upsert_session, session)

    async def get_session(self, session_id: str) -> OAuthSession | None:
        return await self._run(
            self._sync_fetch_session, "SELECT * FROM oauth_sessions WHERE session_id = ?", session_id
        )

    async def get_session_by_token(self, access_token: str) -> OAuthSession | None:
        if not access_token:
            return None
        return await self._run(
            self._sync_fetch_session,
            "SELECT * FROM oauth_sessions WHERE access_token_hash = ?",
            self._hash_token(access_token),
        )

    async def get_session_by_refresh_token(self, refresh_token: str) -> OAuthSession | None:
        if not refresh_token:
            return None
        return await self._run(
            self._sync_fetch_session,
            "SELECT * FROM oauth_sessions WHERE refresh_token_hash = ?",
            self._hash_token(refresh_token),
        )

    async def update_session(
        self, session_id: str, updates: Mapping[str, Any]
    ) -> OAuthSession | None:
        validate_session_updates(updates)
        return await self._run(self._sync_update_session, session_id, dict(updates))

    async def delete_session(self, session_id: str) -> bool:
        return await self._run(self._sync_delete_session, session_id)

    # ── Device flows ───────────────────────────────────────────────────────────
    async def store_device_flow(self, flow: DeviceFlowState) -> None:
        row = flow.model_dump()
        row["scopes"] = json.dumps(flow.scopes)
        await self._run(self._sync_insert, "oauth_device_flows", row)

    async def get_device_flow(self, flow_id: str) -> DeviceFlowState | None:
        row = await self._run(
            self._sync_fetch_one, "SELECT * FROM oauth_device_flows WHERE flow_id = ?", flow_id
        )
        return self._row_to_device_flow(row) if row else None

    async def get_device_flow_by_device_code(self, device_code: str) -> DeviceFlowState | None:
        row = await self._run(
            self._sync_fetch_one,
            "SELECT * FROM oauth_device_flows WHERE device_code = ?",
            device_code,
        )
        return self._row_to_device_flow(row) if row else None

    async def delete_device_flow(self, flow_id: str) -> bool:
        return await self._run(
            self._sync_delete, "DELETE FROM oauth_device_flows WHERE flow_id = ?", flow_id
        )

    # ── Auth-code flows ────────────────────────────────────────────────────────
    async def store_auth_code_flow(self, flow: AuthCodeFlowState) -> None:
        row = flow.model_dump()
        row["scopes"] = json.dumps(flow.scopes)
        await self._run(self._sync_insert, "oauth_auth_code_flows", row)

    async def get_auth_code_flow(self, internal_state: str) -> AuthCodeFlowState | None:
        row = await self._run(
            self._sync_fetch_one,
            "SELECT * FROM oauth_auth_code_flows WHERE internal_state = ?",
            internal_state,
        )
        return self._row_to_auth_code_flow(row) if row else None

    async def delete_auth_code_flow(self, internal_state: str) -> bool:
        return await self._run(
            self._sync_delete,
            "DELETE FROM oauth_auth_code_flows WHERE internal_state = ?",
            internal_state,
        )

    # ── Authorization codes ────────────────────────────────────────────────────
    async def store_auth_code(self, code: AuthorizationCode) -> None:
        await self._run(self._sync_insert, "oauth_auth_codes", code.model_dump())

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        row = await self._run(
            self._sync_fetch_one, "SELECT * FROM oauth_auth_codes WHERE code = ?", code
        )
        return AuthorizationCode.model_validate(dict(row)) if row else None

    async def delete_auth_code(self, code: str) -> bool:
        return await self._run(self._sync_delete, "DELETE FROM oauth_auth_codes WHERE code = ?", code)

    # ── External session mappings ──────────────────────────────────────────────
    async def associate_external_session(
        self, external_session_id: str, session_id: str, created_at: int
    ) -> None:
        mapping = SessionMapping(
            external_session_id=external_session_id, session_id=session_id, created_at=created_at
        )
        await self._run(self._sync_insert, "oauth_session_mappings", mapping.model_dump())

    async def get_session_by_external_id(self, external_session_id: str) -> OAuthSession | None:
        return await self._run(
            self._sync_fetch_session,
            "SELECT s.* FROM oauth_sessions s "
            "JOIN oauth_session_mappings m ON m.session_id = s.session_id "
            "WHERE m.external_session_id = ?",
            external_session_id,
        )

    async def remove_external_session(self, external_session_id: str) -> bool:
        return await self._run(
            self._sync_delete,
            "DELETE FROM oauth_session_mappings WHERE external_session_id = ?",
            external_session_id,
        )

    # ── Bulk / maintenance ─────────────────────────────────────────────────────
    async def load_snapshot(self) -> StorageSnapshot:
        return await self._run(self._sync_load_snapshot)

    async def cleanup(self, max_session_age_ms: int, now: int | None = None) -> CleanupResult:
        current = now_ms() if now is None else now
        return await self._run(self._sync_cleanup, current, max_session_age_ms)

    async def get_stats(self) -> StorageStats:
        counts = await self._run(self._sync_counts)
        return StorageStats(backend=self.name, **counts)

    # ── Internals (sync) ───────────────────────────────────────────────────────
    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        executor = self._ensure_executor()
        return await asyncio.get_running_loop().run_in_executor(executor, func, *args)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oauth-sqlite")
        return self._executor

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("SQLite storage backend is not initialized")
        return self._conn

    def _sync_initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA busy_timeout=5000")
                with conn:
                    for statement in _SCHEMA:
                        conn.execute(statement)
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot open OAuth database {self.db_path}: {exc}") from exc
            self._conn = conn
            self._initialized = True
            logger.info("SQLite storage backend initialized", extra={"path": str(self.db_path)})

    def _sync_close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
            self._initialized = False

    def _sync_insert(self, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join(f":{column}" for column in row)
        conn = self._connection()
        with self._lock, conn:
            conn.execute(f"INSERT OR REPLACE INTO {table} ({columns}) VALUES ({placeholders})", row)

    def _sync_fetch_one(self, query: str, *params: Any) -> sqlite3.Row | None:
        conn = self._connection()
        with self._lock:
            row: sqlite3.Row | None = conn.execute(query, params).fetchone()
            return row

    def _sync_fetch_session(self, query: str, *params: Any) -> OAuthSession | None:
        row = self._sync_fetch_one(query, *params)
        return self._row_to_session(row) if row else None

    def _sync_delete(self, query: str, *params: Any) -> bool:
        conn = self._connection()
        with self._lock, conn:
            return conn.execute(query, params).rowcount > 0

    def _sync_upsert_session(self, session: OAuthSession) -> None:
        self._sync_insert("oauth_sessions", self._session_to_row(session))

    def _sync_update_session(self, session_id: str, updates: dict[str, Any]) -> OAuthSession | None:
        conn = self._connection()
        with self._lock, conn:
            row = conn.execute(
                "SELECT * FROM oauth_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            updated = self._row_to_session(row).model_copy(update=updates)
            values = self._session_to_row(updated)
            assignments = ", ".join(f"{column} = :{column}" for column in values if column != "session_id")
            conn.execute(f"UPDATE oauth_sessions SET {assignments} WHERE session_id = :session_id", values)
            return updated

    def _sync_delete_session(self, session_id: str) -> bool:
        conn = self._connection()
        with self._lock, conn:
            conn.execute("DELETE FROM oauth_session_mappings WHERE session_id = ?", (session_id,))
            return (
                conn.execute("DELETE FROM oauth_sessions WHERE session_id = ?", (session_id,)).rowcount
                > 0
            )

    def _sync_load_snapshot(self) -> StorageSnapshot:
        conn = self._connection()
        with self._lock:
            sessions = conn.execute("SELECT * FROM oauth_sessions ORDER BY session_id").fetchall()
            device_flows = conn.execute("SELECT * FROM oauth_device_flows ORDER BY flow_id").fetchall()
            auth_code_flows = conn.execute(
                "SELECT * FROM oauth_auth_code_flows ORDER BY internal_state"
            ).fetchall()
            auth_codes = conn.execute("SELECT * FROM oauth_auth_codes ORDER BY code").fetchall()
            mappings = conn.execute(
                "SELECT * FROM oauth_session_mappings ORDER BY external_session_id"
            ).fetchall()
        return StorageSnapshot(
            sessions=[self._row_to_session(row) for row in sessions],
            device_flows=[self._row_to_device_flow(row) for row in device_flows],
            auth_code_flows=[self._row_to_auth_code_flow(row) for row in auth_code_flows],
            auth_codes=[AuthorizationCode.model_validate(dict(row)) for row in auth_codes],
            session_mappings=[SessionMapping.model_validate(dict(row)) for row in mappings],
        )

    def _sync_cleanup(self, now: int, max_session_age_ms: int) -> CleanupResult:
        conn = self._connection()
        with self._lock:
            try:
                with conn:
                    mappings = conn.execute(
                        "DELETE FROM oauth_session_mappings WHERE session_id IN "
                        "(SELECT session_id FROM oauth_sessions WHERE created_at < ?)",
                        (now - max_session_age_ms,),
                    ).rowcount
                    sessions = conn.execute(
                        "DELETE FROM oauth_sessions WHERE created_at < ?",
                        (now - max_session_age_ms,),
                    ).rowcount
                    device_flows = conn.execute(
                        "DELETE FROM oauth_device_flows WHERE expires_at < ?", (now,)
                    ).rowcount
                    auth_code_flows = conn.execute(
                        "DELETE FROM oauth_auth_code_flows WHERE expires_at < ?", (now,)
                    ).rowcount
                    auth_codes = conn.execute(
                        "DELETE FROM oauth_auth_codes WHERE expires_at < ?", (now,)
                    ).rowcount
            except sqlite3.Error as exc:
                logger.error("OAuth storage cleanup rolled back", extra={"error": str(exc)})
                raise StorageError(f"Cleanup failed: {exc}") from exc
        return CleanupResult(
            sessions=sessions,
            device_flows=device_flows,
            auth_code_flows=auth_code_flows,
            auth_codes=auth_codes,
            session_mappings=mappings,
        )

    def _sync_counts(self) -> dict[str, int]:
        conn = self._connection()
        tables = {
            "sessions": "oauth_sessions",
            "device_flows": "oauth_device_flows",
            "auth_code_flows": "oauth_auth_code_flows",
            "auth_codes": "oauth_auth_codes",
            "session_mappings": "oauth_session_mappings",
        }
        with self._lock:
            return {
                key: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for key, table in tables.items()
            }

    # ── Row mapping ────────────────────────────────────────────────────────────
    def _session_to_row(self, session: OAuthSession) -> dict[str, Any]:
        row = session.model_dump()
        row["access_token_hash"] = (
            self._hash_token(session.access_token) if session.access_token else None
        )
        row["refresh_token_hash"] = (
            self._hash_token(session.refresh_token) if session.refresh_token else None
        )
        for field in _ENCRYPTED_SESSION_FIELDS:
            row[field] = self._encrypt(row[field])
        row["scopes"] = json.dumps(session.scopes)
        return row

    def _row_to_session(self, row: sqlite3.Row) -> OAuthSession:
        data = dict(row)
        data.pop("access_token_hash")
        data.pop("refresh_token_hash")
        for field in _ENCRYPTED_SESSION_FIELDS:
            data[field] = self._decrypt(data[field])
        data["scopes"] = json.loads(data["scopes"])
        return OAuthSession.model_validate(data)

    def _row_to_device_flow(self, row: sqlite3.Row) -> DeviceFlowState:
        data = dict(row)
        data["scopes"] = json.loads(data["scopes"])
        return DeviceFlowState.model_validate(data)

    def _row_to_auth_code_flow(self, row: sqlite3.Row) -> AuthCodeFlowState:
        data = dict(row)
        data["scopes"] = json.loads(data["scopes"])
        return AuthCodeFlowState.model_validate(data)

    # ── Utility helpers ────────────────────────────────────────────────────────
    def _hash_token(self, token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def _build_fernet(self, encryption_key: str | bytes) -> Fernet:
        """Normalize and validate a Fernet key (accepts bytes or str)."""
        key_bytes = (
            encryption_key.encode("utf-8") if isinstance(encryption_key, str) else encryption_key
        )
        try:
            return Fernet(key_bytes)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                "Invalid Fernet key: expected urlsafe base64-encoded 32-byte value. "
                "Generate one with Fernet.generate_key()."
            ) from exc

    def _encrypt(self, value: str) -> str:
        if self._fernet and value:
            return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        return value

    def _decrypt(self, value: str) -> str:
        if self._fernet and value:
            try:
                return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
            except InvalidToken as exc:
                raise StorageError("Failed to decrypt stored token") from exc
        return value


__all__ = ["SqliteStorageBackend"]
