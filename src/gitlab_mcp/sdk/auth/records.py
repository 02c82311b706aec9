"""Records owned by the session store and mirrored by storage backends.

All timestamps and expiries are integer milliseconds since the epoch, which
keeps every backend's round trip exact.
"""

from __future__ import annotations

from pydantic import Field

from gitlab_mcp.sdk.models import SdkBaseModel


class OAuthSession(SdkBaseModel):
    """One user's standing grant.

    Gateway tokens stay empty until the first authorization-code exchange.
    """

    session_id: str
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: int = 0
    provider_access_token: str
    provider_refresh_token: str = ""
    provider_token_expiry: int
    provider_user_id: str
    provider_username: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    created_at: int
    updated_at: int


class DeviceFlowState(SdkBaseModel):
    """An in-flight device authorization, keyed by ``flow_id``."""

    flow_id: str
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_at: int
    interval: int
    client_id: str
    code_challenge: str
    code_challenge_method: str
    state: str | None = None
    redirect_uri: str | None = None
    scopes: list[str] = Field(default_factory=list)


class AuthCodeFlowState(SdkBaseModel):
    """An in-flight browser redirect authorization, keyed by ``internal_state``.

    ``internal_state`` is what GitLab sees as ``state``; ``client_state`` is only
    ever echoed back to the client.
    """

    internal_state: str
    client_id: str
    code_challenge: str
    code_challenge_method: str
    client_state: str | None = None
    client_redirect_uri: str
    callback_uri: str
    expires_at: int
    scopes: list[str] = Field(default_factory=list)


class AuthorizationCode(SdkBaseModel):
    """Single-use code redeemable at the token endpoint."""

    code: str
    session_id: str
    client_id: str
    code_challenge: str
    code_challenge_method: str
    redirect_uri: str | None = None
    expires_at: int


class SessionMapping(SdkBaseModel):
    """Links a transport session id (``Mcp-Session-Id``) to a gateway session."""

    external_session_id: str
    session_id: str
    created_at: int


class StorageSnapshot(SdkBaseModel):
    """Everything a backend holds, used to warm the session store cache."""

    sessions: list[OAuthSession] = Field(default_factory=list)
    device_flows: list[DeviceFlowState] = Field(default_factory=list)
    auth_code_flows: list[AuthCodeFlowState] = Field(default_factory=list)
    auth_codes: list[AuthorizationCode] = Field(default_factory=list)
    session_mappings: list[SessionMapping] = Field(default_factory=list)


class CleanupResult(SdkBaseModel):
    """Number of records removed per entity class."""

    sessions: int = 0
    device_flows: int = 0
    auth_code_flows: int = 0
    auth_codes: int = 0
    session_mappings: int = 0

    @property
    def total(self) -> int:
        return (
            self.sessions
            + self.device_flows
            + self.auth_code_flows
            + self.auth_codes
            + self.session_mappings
        )


class StorageStats(SdkBaseModel):
    """Record counts reported by ``get_stats``."""

    backend: str
    sessions: int = 0
    device_flows: int = 0
    auth_code_flows: int = 0
    auth_codes: int = 0
    session_mappings: int = 0


__all__ = [
    "AuthCodeFlowState",
    "AuthorizationCode",
    "CleanupResult",
    "DeviceFlowState",
    "OAuthSession",
    "SessionMapping",
    "StorageSnapshot",
    "StorageStats",
]
