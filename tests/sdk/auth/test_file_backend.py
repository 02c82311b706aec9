import asyncio
import json
import threading
import time
from pathlib import Path

import pytest

from gitlab_mcp.sdk.auth.storage import STORAGE_DATA_VERSION, FileStorageBackend
from gitlab_mcp.sdk.auth.storage.file import migrate_document
from gitlab_mcp.sdk.auth.tokens import now_ms

from tests.sdk.auth.factories import DAY_MS, make_auth_code, make_device_flow, make_session


def _backend(path: Path, **kwargs) -> FileStorageBackend:
    return FileStorageBackend(path, save_interval_ms=60_000, debounce_ms=60_000, **kwargs)


@pytest.mark.asyncio
async def test_close_flushes_and_reload_restores_state(tmp_path: Path) -> None:
    # Records written before close are visible to a fresh backend on the same file.
    path = tmp_path / "store.json"
    backend = _backend(path)
    await backend.initialize()
    await backend.create_session(make_session())
    await backend.store_auth_code(make_auth_code())
    await backend.close()

    assert path.exists()
    assert not backend.temp_path.exists()
    document = json.loads(path.read_text())
    assert document["version"] == STORAGE_DATA_VERSION
    assert set(document) >= {
        "exported_at",
        "sessions",
        "device_flows",
        "auth_code_flows",
        "auth_codes",
        "session_mappings",
    }

    reloaded = _backend(path)
    await reloaded.initialize()
    try:
        assert (await reloaded.get_session_by_token("at-s-1")).session_id == "s-1"
        assert await reloaded.get_auth_code("code-1") is not None
    finally:
        await reloaded.close()


@pytest.mark.asyncio
async def test_flush_writes_immediately(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    backend = _backend(path, pretty_print=True)
    await backend.initialize()
    try:
        await backend.create_session(make_session())
        await backend.flush()
        text = path.read_text()
        assert "\n  " in text
        assert json.loads(text)["sessions"][0]["session_id"] == "s-1"
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_close_waits_for_interrupted_save(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "store.json"
    backend = FileStorageBackend(path, save_interval_ms=60_000, debounce_ms=10)
    write_document = backend._write_document
    guard = threading.Lock()
    active = 0
    peak = 0
    writes = 0

    def slow_write(document: dict) -> None:
        nonlocal active, peak, writes
        with guard:
            active += 1
            peak = max(peak, active)
        try:
            time.sleep(0.2)
            write_document(document)
        finally:
            with guard:
                active -= 1
                writes += 1

    monkeypatch.setattr(backend, "_write_document", slow_write)
    await backend.initialize()
    await backend.create_session(make_session())
    # Let the debounced save start writing before shutting down.
    await asyncio.sleep(0.05)
    await backend.close()

    assert peak == 1
    assert writes == 2
    assert not backend.temp_path.exists()
    assert json.loads(path.read_text())["sessions"][0]["session_id"] == "s-1"


@pytest.mark.asyncio
async def test_missing_file_starts_empty(tmp_path: Path) -> None:
    backend = _backend(tmp_path / "nested" / "store.json")
    await backend.initialize()
    try:
        stats = await backend.get_stats()
        assert stats.backend == "file"
        assert stats.sessions == 0
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_corrupt_file_is_moved_aside(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json")

    backend = _backend(path)
    await backend.initialize()
    try:
        assert (await backend.get_stats()).sessions == 0
        assert (tmp_path / "store.json.corrupt").read_text() == "{not json"
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_expired_records_are_dropped_on_load(tmp_path: Path) -> None:
    now = now_ms()
    path = tmp_path / "store.json"
    document = {
        "version": STORAGE_DATA_VERSION,
        "exported_at": now,
        "sessions": [
            make_session("old", created_at=now - 8 * DAY_MS).model_dump(),
            make_session("fresh").model_dump(),
        ],
        "device_flows": [make_device_flow("gone", expires_at=now - 1).model_dump()],
        "auth_code_flows": [],
        "auth_codes": [make_auth_code("live").model_dump()],
        "session_mappings": [],
    }
    path.write_text(json.dumps(document))

    backend = _backend(path)
    await backend.initialize()
    try:
        snapshot = await backend.load_snapshot()
        assert [s.session_id for s in snapshot.sessions] == ["fresh"]
        assert snapshot.device_flows == []
        assert [c.code for c in snapshot.auth_codes] == ["live"]
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_version_1_document_is_migrated(tmp_path: Path) -> None:
    path = tmp_path / "store.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "exported_at": now_ms(),
                "sessions": [make_session().model_dump()],
                "device_flows": [],
                "auth_codes": [],
            }
        )
    )

    backend = _backend(path)
    await backend.initialize()
    try:
        assert await backend.get_session("s-1") is not None
    finally:
        await backend.close()

    assert json.loads(path.read_text())["version"] == STORAGE_DATA_VERSION


def test_migrate_document_defaults_new_collections() -> None:
    migrated = migrate_document({"version": 1, "sessions": []})
    assert migrated["version"] == STORAGE_DATA_VERSION
    assert migrated["auth_code_flows"] == []
    assert migrated["session_mappings"] == []


def test_migrate_document_rejects_non_integer_version() -> None:
    with pytest.raises(ValueError):
        migrate_document({"version": "two"})
