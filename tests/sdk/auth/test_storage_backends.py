"""Behaviour every StorageBackend must share (memory, file, sqlite)."""

import pytest

from gitlab_mcp.sdk.auth.storage import StorageBackend, StorageError
from gitlab_mcp.sdk.auth.tokens import now_ms

from tests.sdk.auth.factories import (
    DAY_MS,
    WEEK_MS,
    make_auth_code,
    make_auth_code_flow,
    make_device_flow,
    make_session,
)


@pytest.mark.asyncio
async def test_session_round_trip_and_token_lookups(storage_backend: StorageBackend) -> None:
    # Sessions are retrievable by id, access token and refresh token with all fields intact.
    session = make_session()
    await storage_backend.create_session(session)

    assert await storage_backend.get_session("s-1") == session
    assert await storage_backend.get_session_by_token("at-s-1") == session
    assert await storage_backend.get_session_by_refresh_token("rt-s-1") == session
    assert await storage_backend.get_session("missing") is None
    assert await storage_backend.get_session_by_token("missing") is None


@pytest.mark.asyncio
async def test_update_session_repoints_token_indexes(storage_backend: StorageBackend) -> None:
    # Rotating tokens makes the old tokens unresolvable and the new ones resolvable.
    await storage_backend.create_session(make_session())

    updated = await storage_backend.update_session(
        "s-1", {"access_token": "at-new", "refresh_token": "rt-new", "updated_at": now_ms() + 1}
    )

    assert updated is not None
    assert updated.access_token == "at-new"
    assert await storage_backend.get_session_by_token("at-s-1") is None
    assert await storage_backend.get_session_by_refresh_token("rt-s-1") is None
    assert (await storage_backend.get_session_by_token("at-new")).session_id == "s-1"
    assert (await storage_backend.get_session_by_refresh_token("rt-new")).session_id == "s-1"


@pytest.mark.asyncio
async def test_update_session_rejects_identity_fields(storage_backend: StorageBackend) -> None:
    await storage_backend.create_session(make_session())

    with pytest.raises(StorageError):
        await storage_backend.update_session("s-1", {"session_id": "other"})
    with pytest.raises(StorageError):
        await storage_backend.update_session("s-1", {"created_at": 0})


@pytest.mark.asyncio
async def test_update_unknown_session_returns_none(storage_backend: StorageBackend) -> None:
    assert await storage_backend.update_session("missing", {"access_token": "x"}) is None


@pytest.mark.asyncio
async def test_delete_session_removes_mappings(storage_backend: StorageBackend) -> None:
    await storage_backend.create_session(make_session())
    await storage_backend.associate_external_session("mcp-1", "s-1", now_ms())
    assert (await storage_backend.get_session_by_external_id("mcp-1")).session_id == "s-1"

    assert await storage_backend.delete_session("s-1") is True
    assert await storage_backend.delete_session("s-1") is False

    assert await storage_backend.get_session_by_external_id("mcp-1") is None
    stats = await storage_backend.get_stats()
    assert stats.sessions == 0
    assert stats.session_mappings == 0


@pytest.mark.asyncio
async def test_device_flow_lookup_by_device_code(storage_backend: StorageBackend) -> None:
    flow = make_device_flow()
    await storage_backend.store_device_flow(flow)

    assert await storage_backend.get_device_flow("f-1") == flow
    assert await storage_backend.get_device_flow_by_device_code("dc-f-1") == flow

    assert await storage_backend.delete_device_flow("f-1") is True
    assert await storage_backend.get_device_flow_by_device_code("dc-f-1") is None


@pytest.mark.asyncio
async def test_auth_code_and_flow_round_trip(storage_backend: StorageBackend) -> None:
    code = make_auth_code()
    flow = make_auth_code_flow()
    await storage_backend.store_auth_code(code)
    await storage_backend.store_auth_code_flow(flow)

    assert await storage_backend.get_auth_code("code-1") == code
    assert await storage_backend.get_auth_code_flow("st-1") == flow

    assert await storage_backend.delete_auth_code("code-1") is True
    assert await storage_backend.delete_auth_code("code-1") is False
    assert await storage_backend.delete_auth_code_flow("st-1") is True
    assert await storage_backend.get_auth_code("code-1") is None


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_records(storage_backend: StorageBackend) -> None:
    # An 8-day-old session and records that expired 1ms ago go; fresh ones stay.
    now = now_ms()
    await storage_backend.create_session(make_session("old", created_at=now - 8 * DAY_MS))
    await storage_backend.create_session(make_session("fresh", created_at=now))
    await storage_backend.associate_external_session("mcp-old", "old", now)
    await storage_backend.store_device_flow(make_device_flow("gone", expires_at=now - 1))
    await storage_backend.store_device_flow(make_device_flow("live"))
    await storage_backend.store_auth_code_flow(make_auth_code_flow("gone", expires_at=now - 1))
    await storage_backend.store_auth_code(make_auth_code("gone", expires_at=now - 1))
    await storage_backend.store_auth_code(make_auth_code("live"))

    result = await storage_backend.cleanup(WEEK_MS, now)

    assert result.sessions == 1
    assert result.device_flows == 1
    assert result.auth_code_flows == 1
    assert result.auth_codes == 1
    assert result.session_mappings == 1
    assert await storage_backend.get_session("old") is None
    assert await storage_backend.get_session("fresh") is not None
    assert await storage_backend.get_device_flow("live") is not None
    assert await storage_backend.get_auth_code("live") is not None


@pytest.mark.asyncio
async def test_load_snapshot_is_ordered_by_key(storage_backend: StorageBackend) -> None:
    for session_id in ("s-c", "s-a", "s-b"):
        await storage_backend.create_session(make_session(session_id))
    await storage_backend.store_auth_code(make_auth_code("z"))
    await storage_backend.store_auth_code(make_auth_code("a"))

    snapshot = await storage_backend.load_snapshot()

    assert [s.session_id for s in snapshot.sessions] == ["s-a", "s-b", "s-c"]
    assert [c.code for c in snapshot.auth_codes] == ["a", "z"]


@pytest.mark.asyncio
async def test_stats_report_backend_name(storage_backend: StorageBackend) -> None:
    await storage_backend.create_session(make_session())
    stats = await storage_backend.get_stats()
    assert stats.backend == storage_backend.name
    assert stats.sessions == 1
