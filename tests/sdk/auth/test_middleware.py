"""Tests for bearer authentication on the gateway's MCP endpoints.

The session store is used unstarted here: replication writes simply queue up,
which keeps every cache operation on the TestClient's event loop.
"""

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from gitlab_mcp.sdk.auth import (
    AuthenticationMiddleware,
    AuthService,
    GitLabAuthConfigModel,
    OAuthConfigModel,
    SessionStore,
    get_optional_token_context,
    get_provider_token,
    get_provider_username,
)
from gitlab_mcp.sdk.auth.providers import DummyProviderAdapter
from gitlab_mcp.sdk.auth.storage import MemoryStorageBackend
from gitlab_mcp.sdk.auth.tokens import create_access_token, now_ms

from tests.sdk.auth.factories import make_session

SECRET = "m" * 32


async def _echo(request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "token": get_provider_token(),
            "username": get_provider_username(),
            "state_session": request.state.token_context.session_id,
        }
    )


async def _public(request: Request) -> JSONResponse:
    context = get_optional_token_context()
    return JSONResponse({"username": context.provider_username if context else None})


async def _health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


def _build(adapter: DummyProviderAdapter | None = None) -> tuple[TestClient, SessionStore]:
    store = SessionStore(MemoryStorageBackend())
    service = AuthService(
        provider_adapter=adapter or DummyProviderAdapter(),
        session_store=store,
        config=OAuthConfigModel(
            enabled=True, session_secret=SECRET, gitlab=GitLabAuthConfigModel(client_id="cid")
        ),
    )
    app = Starlette(
        routes=[
            Route("/mcp/echo", _echo),
            Route("/public", _public),
            Route("/health", _health),
        ],
        middleware=[
            Middleware(AuthenticationMiddleware, auth_service=service, optional_paths=("/public",))
        ],
    )
    return TestClient(app), store


def _login(store: SessionStore, secret: str = SECRET, **overrides) -> str:
    session = store.create_session(make_session(**overrides))
    token = create_access_token(session, secret=secret, issuer="http://gw", ttl_seconds=3600)
    store.update_session(session.session_id, access_token=token)
    return token


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_valid_token_binds_gitlab_credential() -> None:
    client, store = _build()
    token = _login(store)

    response = client.get("/mcp/echo", headers=_auth(token))

    assert response.status_code == 200
    assert response.json() == {"token": "glpat-s-1", "username": "alice", "state_session": "s-1"}


def test_missing_header_is_challenged() -> None:
    client, _ = _build()

    response = client.get("/mcp/echo")

    assert response.status_code == 401
    assert response.json() == {
        "error": "invalid_token",
        "error_description": "Missing or invalid Authorization header",
    }
    challenge = response.headers["www-authenticate"]
    assert challenge.startswith('Bearer error="invalid_token"')
    assert 'resource_metadata="http://testserver/.well-known/oauth-protected-resource"' in challenge


@pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer   "])
def test_malformed_authorization_header(header: str) -> None:
    client, _ = _build()
    response = client.get("/mcp/echo", headers={"Authorization": header})
    assert response.status_code == 401


def test_token_signed_with_another_secret_is_rejected() -> None:
    client, store = _build()
    token = _login(store, secret="x" * 32)

    response = client.get("/mcp/echo", headers=_auth(token))

    assert response.status_code == 401
    assert response.json()["error_description"] == "Invalid or expired token"


def test_superseded_token_is_rejected() -> None:
    client, store = _build()
    old_token = _login(store)
    _login(store)

    response = client.get("/mcp/echo", headers=_auth(old_token))

    assert response.status_code == 401
    assert response.json()["error_description"] == "Token has been superseded"


def test_deleted_session_is_rejected() -> None:
    client, store = _build()
    token = _login(store)
    store.delete_session("s-1")

    response = client.get("/mcp/echo", headers=_auth(token))

    assert response.json()["error_description"] == "Session not found"


def test_expiring_gitlab_token_is_refreshed_inline() -> None:
    adapter = DummyProviderAdapter()
    client, store = _build(adapter)
    token = _login(
        store,
        provider_refresh_token="DUMMY_REFRESH_TOKEN",
        provider_token_expiry=now_ms() + 60_000,
    )

    response = client.get("/mcp/echo", headers=_auth(token))

    assert response.status_code == 200
    assert response.json()["token"] == "DUMMY_ACCESS_TOKEN_1"
    assert adapter.refresh_calls == 1
    assert store.get_session("s-1").provider_access_token == "DUMMY_ACCESS_TOKEN_1"


def test_failed_refresh_requires_reauthentication() -> None:
    client, store = _build(DummyProviderAdapter(fail_refresh=True))
    token = _login(store, provider_token_expiry=now_ms() + 60_000)

    response = client.get("/mcp/echo", headers=_auth(token))

    assert response.status_code == 401
    assert response.json()["error_description"] == "GitLab token expired, please re-authenticate"
    assert "www-authenticate" in response.headers


def test_optional_path_allows_anonymous_and_binds_valid_tokens() -> None:
    client, store = _build()
    token = _login(store)

    assert client.get("/public").json() == {"username": None}
    assert client.get("/public", headers=_auth("garbage")).json() == {"username": None}
    assert client.get("/public", headers=_auth(token)).json() == {"username": "alice"}


def test_unprotected_paths_pass_through() -> None:
    client, _ = _build()
    assert client.get("/health").status_code == 200
