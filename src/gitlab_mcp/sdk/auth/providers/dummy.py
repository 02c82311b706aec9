"""Deterministic dummy provider for auth flow testing (no network calls)."""

from __future__ import annotations

from collections.abc import Sequence

import httpx

from ..contracts import DeviceAuthorization, GrantResult, ProviderAdapter, ProviderError, UserInfo
from ..tokens import now_ms


class DummyProviderAdapter(ProviderAdapter):
    """In-process provider adapter used for tests and demos.

    ``poll_outcomes`` scripts successive device-token polls: each entry is an
    OAuth error code to raise (``"authorization_pending"``, ``"access_denied"``...),
    ``"network_error"`` to raise a transport error, or ``"ok"`` to grant tokens.
    Once the script is exhausted every poll succeeds.
    """

    provider_name = "dummy"

    def __init__(
        self,
        *,
        expected_code: str = "TEST_CODE_OK",
        poll_outcomes: Sequence[str] | None = None,
        token_lifetime_seconds: int = 3600,
        device_expires_in: int = 300,
        fail_refresh: bool = False,
    ):
        self.expected_code = expected_code
        self.poll_outcomes = list(poll_outcomes or [])
        self.token_lifetime_seconds = token_lifetime_seconds
        self.device_expires_in = device_expires_in
        self.fail_refresh = fail_refresh
        self._access_token = "DUMMY_ACCESS_TOKEN"
        self._refresh_token = "DUMMY_REFRESH_TOKEN"
        self.device_code = "DUMMY_DEVICE_CODE"
        self.user_code = "ABCD-1234"
        self.poll_calls = 0
        self.refresh_calls = 0

    def build_authorize_url(self, *, redirect_uri: str, state: str) -> str:
        """Return a predictable URL that encodes state and redirect."""
        return f"https://dummy.provider/authorize?state={state}&redirect_uri={redirect_uri}"

    async def start_device_authorization(self) -> DeviceAuthorization:
        return DeviceAuthorization(
            device_code=self.device_code,
            user_code=self.user_code,
            verification_uri="https://dummy.provider/device",
            verification_uri_complete=f"https://dummy.provider/device?user_code={self.user_code}",
            expires_in=self.device_expires_in,
            interval=5,
        )

    async def poll_device_token(self, *, device_code: str) -> GrantResult:
        self.poll_calls += 1
        if device_code != self.device_code:
            raise ProviderError("invalid_grant", "Unknown device code", status_code=400)
        outcome = self.poll_outcomes.pop(0) if self.poll_outcomes else "ok"
        if outcome == "network_error":
            raise httpx.ConnectError("dummy provider unreachable")
        if outcome != "ok":
            raise ProviderError(outcome, f"Device authorization {outcome}", status_code=400)
        return self._grant()

    async def exchange_code(self, *, code: str, redirect_uri: str) -> GrantResult:
        """Return fixed tokens when the expected code is presented."""
        if code != self.expected_code:
            raise ProviderError("invalid_grant", "Unknown authorization code", status_code=400)
        return self._grant()

    async def refresh_token(self, *, refresh_token: str) -> GrantResult:
        """Rotate the access token when a valid refresh token is supplied."""
        self.refresh_calls += 1
        if self.fail_refresh or refresh_token != self._refresh_token:
            raise ProviderError("invalid_grant", "Unknown refresh token", status_code=400)
        self._access_token = f"DUMMY_ACCESS_TOKEN_{self.refresh_calls}"
        return self._grant()

    async def fetch_user_info(self, *, access_token: str) -> UserInfo:
        """Return a fixed user profile for recognized tokens."""
        if access_token != self._access_token:
            raise ProviderError("invalid_token", "Access token not recognized", status_code=401)
        return UserInfo(
            provider=self.provider_name,
            user_id="4242",
            username="dummy-user",
            name="Dummy User",
            email="dummy@example.com",
            raw_profile={"id": 4242, "username": "dummy-user"},
        )

    def _grant(self) -> GrantResult:
        return GrantResult(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=now_ms() + self.token_lifetime_seconds * 1000,
            scopes=["api", "read_user"],
        )
