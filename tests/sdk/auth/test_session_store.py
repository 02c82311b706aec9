from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from gitlab_mcp.sdk.auth.records import OAuthSession, StorageSnapshot
from gitlab_mcp.sdk.auth.session_store import SessionStore
from gitlab_mcp.sdk.auth.storage import (
    FileStorageBackend,
    MemoryStorageBackend,
    StorageBackend,
    StorageError,
)
from gitlab_mcp.sdk.auth.tokens import now_ms

from tests.sdk.auth.factories import (
    DAY_MS,
    WEEK_MS,
    make_auth_code,
    make_auth_code_flow,
    make_device_flow,
    make_session,
)


class _FailingWritesBackend(MemoryStorageBackend):
    async def create_session(self, session: OAuthSession) -> None:
        raise StorageError("disk on fire")


class _UnreadableBackend(MemoryStorageBackend):
    @property
    def is_durable(self) -> bool:
        return True

    async def load_snapshot(self) -> StorageSnapshot:
        raise StorageError("cannot read")


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[SessionStore, None]:
    session_store = SessionStore(MemoryStorageBackend(), max_session_age_ms=WEEK_MS)
    await session_store.start()
    yield session_store
    await session_store.stop()


@pytest.mark.asyncio
async def test_token_indexes_follow_rotation(store: SessionStore) -> None:
    # After rotation only the current tokens resolve to the session.
    store.create_session(make_session())

    updated = store.update_session("s-1", access_token="at-2", refresh_token="rt-2")

    assert updated is not None
    assert updated.updated_at >= updated.created_at
    assert store.get_session_by_token("at-s-1") is None
    assert store.get_session_by_refresh_token("rt-s-1") is None
    assert store.get_session_by_token("at-2").session_id == "s-1"
    assert store.get_session_by_refresh_token("rt-2").session_id == "s-1"


@pytest.mark.asyncio
async def test_update_session_rejects_identity_changes(store: SessionStore) -> None:
    store.create_session(make_session())
    with pytest.raises(StorageError):
        store.update_session("s-1", session_id="s-2")
    assert store.update_session("missing", access_token="x") is None


@pytest.mark.asyncio
async def test_sessions_older_than_max_age_are_invisible(store: SessionStore) -> None:
    store.create_session(make_session("old", created_at=now_ms() - 8 * DAY_MS))

    assert store.get_session("old") is None
    assert store.get_session_by_token("at-old") is None
    assert store.get_session_by_refresh_token("rt-old") is None


@pytest.mark.asyncio
async def test_expired_codes_and_flows_are_invisible(store: SessionStore) -> None:
    expired_at = now_ms() - 1
    store.store_auth_code(make_auth_code("code-old", expires_at=expired_at))
    store.store_auth_code_flow(make_auth_code_flow("st-old", expires_at=expired_at))
    store.store_device_flow(make_device_flow("f-old", expires_at=expired_at))

    assert store.get_auth_code("code-old") is None
    assert store.get_auth_code_flow("st-old") is None
    assert store.get_device_flow_by_device_code("dc-f-old") is None
    # The poll endpoint needs the raw flow to report expiry.
    assert store.get_device_flow("f-old") is not None


@pytest.mark.asyncio
async def test_delete_session_drops_indexes_and_mappings(store: SessionStore) -> None:
    store.create_session(make_session())
    assert store.associate_external_session("mcp-1", "s-1") is True

    assert store.delete_session("s-1") is True

    assert store.get_session_by_token("at-s-1") is None
    assert store.get_session_by_external_id("mcp-1") is None
    assert store.get_stats().session_mappings == 0
    assert store.delete_session("s-1") is False


@pytest.mark.asyncio
async def test_associate_unknown_session_is_rejected(store: SessionStore) -> None:
    assert store.associate_external_session("mcp-1", "missing") is False


@pytest.mark.asyncio
async def test_cleanup_sweeps_cache_and_backend(store: SessionStore) -> None:
    now = now_ms()
    store.create_session(make_session("old", created_at=now - 8 * DAY_MS))
    store.create_session(make_session("fresh"))
    store.associate_external_session("mcp-fresh", "fresh")
    store.store_auth_code(make_auth_code("gone", expires_at=now - 1))
    store.store_device_flow(make_device_flow("gone", expires_at=now - 1))
    store.store_auth_code_flow(make_auth_code_flow("gone", expires_at=now - 1))

    result = await store.cleanup()
    await store.drain()

    assert result.sessions == 1
    assert result.auth_codes == 1
    assert result.device_flows == 1
    assert result.auth_code_flows == 1
    stats = store.get_stats()
    assert stats.sessions == 1
    assert stats.session_mappings == 1
    backend_stats = await store.backend.get_stats()
    assert backend_stats.sessions == 1
    assert backend_stats.auth_codes == 0


@pytest.mark.asyncio
async def test_writes_replicate_to_backend_in_order(storage_backend: StorageBackend) -> None:
    session_store = SessionStore(storage_backend)
    await session_store.start()
    try:
        session_store.create_session(make_session())
        session_store.update_session("s-1", access_token="at-2")
        session_store.store_auth_code(make_auth_code())
        session_store.delete_auth_code("code-1")
        await session_store.drain()

        persisted = await storage_backend.get_session("s-1")
        assert persisted is not None
        assert persisted.access_token == "at-2"
        assert await storage_backend.get_auth_code("code-1") is None
        assert session_store.pending_replications == 0
    finally:
        await session_store.stop()


@pytest.mark.asyncio
async def test_backend_failures_do_not_reach_callers() -> None:
    session_store = SessionStore(_FailingWritesBackend())
    await session_store.start()
    try:
        session_store.create_session(make_session())
        await session_store.drain()
        assert session_store.get_session("s-1") is not None
    finally:
        await session_store.stop()


@pytest.mark.asyncio
async def test_full_replication_queue_drops_writes() -> None:
    session_store = SessionStore(MemoryStorageBackend(), replication_queue_size=1)
    # Not started: nothing consumes the queue.
    session_store.create_session(make_session("a"))
    session_store.create_session(make_session("b"))

    assert session_store.pending_replications == 1
    assert session_store.get_session("b") is not None


@pytest.mark.asyncio
async def test_start_warms_cache_from_durable_backend(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    first = SessionStore(FileStorageBackend(path))
    await first.start()
    first.create_session(make_session())
    first.associate_external_session("mcp-1", "s-1")
    await first.stop()

    second = SessionStore(FileStorageBackend(path))
    await second.start()
    try:
        assert second.get_session_by_token("at-s-1").session_id == "s-1"
        assert second.get_session_by_external_id("mcp-1").session_id == "s-1"
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_start_propagates_snapshot_failure() -> None:
    with pytest.raises(StorageError):
        await SessionStore(_UnreadableBackend()).start()
