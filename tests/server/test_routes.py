"""End-to-end tests for the gateway's HTTP surface.

The app runs in-process through TestClient; ``DummyProviderAdapter`` stands in
for GitLab so no network calls are made.
"""

import re
from collections.abc import Iterator
from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.testclient import TestClient

from gitlab_mcp.sdk.auth import GitLabAuthConfigModel, OAuthConfigModel
from gitlab_mcp.sdk.auth.providers import DummyProviderAdapter
from gitlab_mcp.sdk.auth.tokens import generate_code_challenge, generate_code_verifier
from gitlab_mcp.server.core.config.gateway_config import ConfigError
from gitlab_mcp.server.core.config.models import GatewayConfigModel
from gitlab_mcp.server.interfaces.server.app import create_app

VERIFIER = generate_code_verifier()
CHALLENGE = generate_code_challenge(VERIFIER)
CLIENT_REDIRECT = "http://localhost:3000/cb"


def _config(**overrides) -> GatewayConfigModel:
    oauth = OAuthConfigModel(
        enabled=True, session_secret="r" * 32, gitlab=GitLabAuthConfigModel(client_id="cid")
    )
    return GatewayConfigModel(oauth=oauth, **overrides)


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app(_config(), provider_adapter=DummyProviderAdapter())
    with TestClient(app) as test_client:
        yield test_client


def _authorize_query(**extra: str) -> dict[str, str]:
    return {
        "response_type": "code",
        "client_id": "client-1",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "state": "client-state",
        **extra,
    }


def _query(url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _device_code(client: TestClient) -> str:
    page = client.get("/authorize", params=_authorize_query())
    flow_state = re.search(r"flow_state=([0-9a-f]+)", page.text).group(1)
    poll = client.get("/oauth/poll", params={"flow_state": flow_state})
    assert poll.json()["status"] == "complete"
    return poll.json()["code"]


def test_health_only_when_oauth_disabled() -> None:
    with TestClient(create_app(GatewayConfigModel())) as client:
        assert client.get("/health").json() == {"status": "ok", "oauth_enabled": False}
        assert client.get("/authorize").status_code == 404


def test_enabled_oauth_without_gitlab_app_is_a_config_error() -> None:
    # model_construct skips the validator that normally catches this.
    oauth = OAuthConfigModel.model_construct(enabled=True, session_secret="r" * 32, gitlab=None)

    with pytest.raises(ConfigError) as exc_info:
        create_app(GatewayConfigModel(oauth=oauth))

    assert exc_info.value.problems == ["GITLAB_OAUTH_CLIENT_ID is required when OAuth is enabled"]


def test_health_reports_storage(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["oauth_enabled"] is True
    assert body["storage"]["backend"] == "memory"


def test_authorization_server_metadata(client: TestClient) -> None:
    metadata = client.get("/.well-known/oauth-authorization-server").json()

    assert metadata["issuer"] == "http://testserver"
    assert metadata["authorization_endpoint"] == "http://testserver/authorize"
    assert metadata["token_endpoint"] == "http://testserver/token"
    assert metadata["registration_endpoint"] == "http://testserver/register"
    assert metadata["code_challenge_methods_supported"] == ["S256"]
    assert metadata["grant_types_supported"] == ["authorization_code", "refresh_token"]
    assert metadata["scopes_supported"] == ["mcp:tools", "mcp:resources"]


def test_metadata_honours_forwarded_headers(client: TestClient) -> None:
    metadata = client.get(
        "/.well-known/oauth-protected-resource",
        headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "gw.example.com"},
    ).json()

    assert metadata["resource"] == "https://gw.example.com/mcp"
    assert metadata["authorization_servers"] == ["https://gw.example.com"]


def test_configured_base_url_wins() -> None:
    app = create_app(
        _config(base_url="https://public.example.com/"), provider_adapter=DummyProviderAdapter()
    )
    with TestClient(app) as client:
        metadata = client.get(
            "/.well-known/oauth-authorization-server", headers={"X-Forwarded-Host": "ignored"}
        ).json()
    assert metadata["issuer"] == "https://public.example.com"


def test_register_client(client: TestClient) -> None:
    response = client.post(
        "/register", json={"client_name": "Claude", "redirect_uris": [CLIENT_REDIRECT]}
    )

    assert response.status_code == 201
    assert response.headers["cache-control"] == "no-store"
    body = response.json()
    assert body["redirect_uris"] == [CLIENT_REDIRECT]
    assert body["client_id"]


def test_register_rejects_bad_bodies(client: TestClient) -> None:
    not_json = client.post(
        "/register", content=b"nope", headers={"Content-Type": "application/json"}
    )
    assert not_json.status_code == 400
    assert not_json.json()["error"] == "invalid_client_metadata"

    bad_uri = client.post("/register", json={"redirect_uris": ["http://evil.example.com/cb"]})
    assert bad_uri.json()["error"] == "invalid_redirect_uri"

    bad_auth_method = client.post(
        "/register",
        json={"redirect_uris": [CLIENT_REDIRECT], "token_endpoint_auth_method": 5},
    )
    assert bad_auth_method.status_code == 400
    assert bad_auth_method.json()["error"] == "invalid_client_metadata"


def test_authorize_errors_are_json(client: TestClient) -> None:
    response = client.get("/authorize", params=_authorize_query(code_challenge_method="plain"))

    assert response.status_code == 400
    assert response.json() == {
        "error": "invalid_request",
        "error_description": 'code_challenge_method must be "S256"',
    }


def test_device_flow_end_to_end(client: TestClient) -> None:
    page = client.get("/authorize", params=_authorize_query())
    assert page.status_code == 200
    assert "text/html" in page.headers["content-type"]
    assert "ABCD-1234" in page.text
    assert "https://dummy.provider/device" in page.text

    code = _device_code(client)
    token = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": code, "code_verifier": VERIFIER},
    )
    assert token.status_code == 200
    assert token.headers["cache-control"] == "no-store"
    tokens = token.json()
    assert tokens["token_type"] == "Bearer"

    whoami = client.get(
        "/mcp/whoami", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    assert whoami.status_code == 200
    assert whoami.json()["user_id"] == "4242"
    assert whoami.json()["username"] == "dummy-user"


def test_token_endpoint_accepts_json_bodies(client: TestClient) -> None:
    code = _device_code(client)
    first = client.post(
        "/token",
        json={"grant_type": "authorization_code", "code": code, "code_verifier": VERIFIER},
    ).json()

    refreshed = client.post(
        "/token", json={"grant_type": "refresh_token", "refresh_token": first["refresh_token"]}
    )

    assert refreshed.status_code == 200
    assert refreshed.json()["refresh_token"] != first["refresh_token"]


def test_token_errors(client: TestClient) -> None:
    unsupported = client.post("/token", data={"grant_type": "password"})
    assert unsupported.status_code == 400
    assert unsupported.json()["error"] == "unsupported_grant_type"

    bad_code = client.post(
        "/token",
        data={"grant_type": "authorization_code", "code": "nope", "code_verifier": VERIFIER},
    )
    assert bad_code.json()["error"] == "invalid_grant"

    unknown_refresh = client.post(
        "/token", data={"grant_type": "refresh_token", "refresh_token": "never-issued"}
    )
    assert unknown_refresh.status_code == 400
    assert unknown_refresh.json() == {
        "error": "invalid_grant",
        "error_description": "Invalid refresh token",
    }


def test_poll_requires_flow_state(client: TestClient) -> None:
    response = client.get("/oauth/poll")
    assert response.status_code == 400
    assert response.json() == {"status": "failed", "error": "Missing flow_state"}


def test_redirect_flow_through_callback(client: TestClient) -> None:
    start = client.get(
        "/authorize",
        params=_authorize_query(redirect_uri=CLIENT_REDIRECT),
        follow_redirects=False,
    )
    assert start.status_code == 302
    provider_query = _query(start.headers["location"])
    assert provider_query["redirect_uri"] == "http://testserver/oauth/callback"

    callback = client.get(
        "/oauth/callback",
        params={"code": "TEST_CODE_OK", "state": provider_query["state"]},
        follow_redirects=False,
    )

    assert callback.status_code == 302
    location = callback.headers["location"]
    assert location.startswith(CLIENT_REDIRECT + "?")
    assert _query(location)["state"] == "client-state"


def test_callback_with_unknown_state(client: TestClient) -> None:
    response = client.get(
        "/oauth/callback", params={"code": "x", "state": "forged"}, follow_redirects=False
    )
    assert response.status_code == 400
    assert response.json()["error_description"] == "Invalid or expired state"


def test_mcp_requires_bearer_token(client: TestClient) -> None:
    response = client.get(
        "/mcp/whoami", headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "gw.example.com"}
    )

    assert response.status_code == 401
    assert (
        'resource_metadata="https://gw.example.com/.well-known/oauth-protected-resource"'
        in response.headers["www-authenticate"]
    )
