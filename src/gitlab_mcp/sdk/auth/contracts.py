"""Contracts and shared types for the gateway authentication stack."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from gitlab_mcp.sdk.models import SdkBaseModel


class ProviderError(Exception):
    """OAuth-shaped error with HTTP-style status information.

    Raised by provider adapters for upstream failures and by the flow
    orchestrator for protocol and credential errors; routes render it as
    ``{"error": ..., "error_description": ...}``.
    """

    def __init__(self, error: str, description: str | None = None, status_code: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class GrantResult(SdkBaseModel):
    """Result of exchanging, polling for or refreshing a grant with the provider."""

    access_token: str
    refresh_token: str | None = None
    # Milliseconds since the epoch.
    expires_at: int
    scopes: list[str] | None = None
    token_type: str = "Bearer"


class UserInfo(SdkBaseModel):
    """Normalized user information returned by providers."""

    provider: str
    user_id: str
    username: str
    name: str | None = None
    email: str | None = None
    raw_profile: dict[str, Any] | None = None


class DeviceAuthorization(SdkBaseModel):
    """Provider response to a device authorization request (RFC 8628 section 3.2)."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int
    interval: int


@runtime_checkable
class ProviderAdapter(Protocol):
    """Interface all provider adapters must implement.

    Adapters raise ``ProviderError`` carrying the provider's OAuth error code
    (``authorization_pending``, ``slow_down``, ``access_denied``...) so callers
    can decide what is retryable. Transport failures surface as ``httpx.HTTPError``.
    """

    provider_name: str

    def build_authorize_url(self, *, redirect_uri: str, state: str) -> str:
        """Construct the provider authorize URL using the gateway callback."""

    async def start_device_authorization(self) -> DeviceAuthorization:
        """Request a device code and user code from the provider."""

    async def poll_device_token(self, *, device_code: str) -> GrantResult:
        """Poll the token endpoint once for a device code."""

    async def exchange_code(self, *, code: str, redirect_uri: str) -> GrantResult:
        """Exchange an authorization code for provider tokens."""

    async def refresh_token(self, *, refresh_token: str) -> GrantResult:
        """Refresh provider tokens."""

    async def fetch_user_info(self, *, access_token: str) -> UserInfo:
        """Fetch user information associated with a provider access token."""


__all__ = [
    "DeviceAuthorization",
    "GrantResult",
    "ProviderAdapter",
    "ProviderError",
    "UserInfo",
]
