"""GitLab OAuth ProviderAdapter implementation.

Supports both grants the gateway runs against GitLab: the device authorization
grant (RFC 8628, ``/oauth/authorize_device``) and the authorization-code grant.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

from mcp.shared._httpx_utils import create_mcp_http_client
from pydantic import ConfigDict, ValidationError

from gitlab_mcp.sdk.models import SdkBaseModel

from ..contracts import DeviceAuthorization, GrantResult, ProviderAdapter, ProviderError, UserInfo
from ..models import GitLabAuthConfigModel
from ..tokens import now_ms

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
# GitLab access tokens last two hours unless the instance says otherwise.
DEFAULT_TOKEN_LIFETIME_SECONDS = 7200


class _GitLabTokenResponse(SdkBaseModel):
    """Minimal token endpoint response (successful or error)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str | None = None

    error: str | None = None
    error_description: str | None = None


class _GitLabDeviceResponse(SdkBaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int | None = None
    interval: int | None = None


class _GitLabUserResponse(SdkBaseModel):
    """Minimal ``/api/v4/user`` response used to normalize UserInfo."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: int | str
    username: str
    name: str | None = None
    email: str | None = None


class GitLabProviderAdapter(ProviderAdapter):
    """GitLab OAuth ProviderAdapter that uses real HTTP calls."""

    provider_name = "gitlab"

    def __init__(
        self,
        gitlab_config: GitLabAuthConfigModel,
        *,
        default_device_timeout_seconds: int = 300,
        default_poll_interval_seconds: int = 5,
    ):
        self.config = gitlab_config
        self.client_id = gitlab_config.client_id
        self.client_secret = gitlab_config.client_secret
        self.scope = gitlab_config.scope
        self.default_device_timeout_seconds = default_device_timeout_seconds
        self.default_poll_interval_seconds = default_poll_interval_seconds

    def build_authorize_url(self, *, redirect_uri: str, state: str) -> str:
        params = [
            ("client_id", self.client_id),
            ("redirect_uri", redirect_uri),
            ("response_type", "code"),
            ("scope", self.scope),
            ("state", state),
        ]
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def start_device_authorization(self) -> DeviceAuthorization:
        async with create_mcp_http_client() as client:
            resp = await client.post(
                self.config.device_authorization_url,
                data={"client_id": self.client_id, "scope": self.scope},
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )

        if resp.status_code != 200:
            error_code = self._try_extract_oauth_error_code(resp)
            logger.warning(
                "GitLab device authorization endpoint returned non-200",
                extra={
                    "provider": self.provider_name,
                    "endpoint": "authorize_device",
                    "status_code": resp.status_code,
                    "provider_error": error_code,
                },
            )
            raise ProviderError(
                error_code or "server_error",
                "GitLab device authorization request failed",
                status_code=resp.status_code,
            )

        try:
            parsed = _GitLabDeviceResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderError(
                "server_error",
                "Invalid device authorization response",
                status_code=502,
            ) from exc

        return DeviceAuthorization(
            device_code=parsed.device_code,
            user_code=parsed.user_code,
            verification_uri=parsed.verification_uri,
            verification_uri_complete=parsed.verification_uri_complete,
            expires_in=parsed.expires_in or self.default_device_timeout_seconds,
            interval=parsed.interval or self.default_poll_interval_seconds,
        )

    async def poll_device_token(self, *, device_code: str) -> GrantResult:
        payload = {
            "grant_type": DEVICE_CODE_GRANT_TYPE,
            "device_code": device_code,
            "client_id": self.client_id,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        token = await self._request_token(payload=payload, context="poll_device_token")
        return self._grant_from_token(token)

    async def exchange_code(self, *, code: str, redirect_uri: str) -> GrantResult:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        token = await self._request_token(payload=payload, context="exchange_code")
        return self._grant_from_token(token)

    async def refresh_token(self, *, refresh_token: str) -> GrantResult:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        token = await self._request_token(payload=payload, context="refresh_token")
        grant = self._grant_from_token(token)
        if grant.refresh_token is None:
            # GitLab may omit the refresh token when it is not rotated.
            grant = grant.model_copy(update={"refresh_token": refresh_token})
        return grant

    async def fetch_user_info(self, *, access_token: str) -> UserInfo:
        async with create_mcp_http_client() as client:
            resp = await client.get(
                self.config.user_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )

        if resp.status_code != 200:
            logger.warning(
                "GitLab user endpoint returned non-200",
                extra={
                    "provider": self.provider_name,
                    "endpoint": "user",
                    "status_code": resp.status_code,
                },
            )
            raise ProviderError(
                "invalid_token",
                "GitLab user request failed",
                status_code=resp.status_code,
            )

        try:
            profile = resp.json()
            parsed = _GitLabUserResponse.model_validate(profile)
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "GitLab user endpoint returned an invalid payload",
                extra={"provider": self.provider_name, "endpoint": "user"},
            )
            raise ProviderError(
                "invalid_token",
                "GitLab user response was invalid",
                status_code=resp.status_code,
            ) from exc

        return UserInfo(
            provider=self.provider_name,
            user_id=str(parsed.id),
            username=parsed.username,
            name=parsed.name,
            email=parsed.email,
            raw_profile=profile,
        )

    # ── helpers ──────────────────────────────────────────────────────────────
    def _grant_from_token(self, token: _GitLabTokenResponse) -> GrantResult:
        if not token.access_token:
            raise ProviderError("invalid_grant", "No access_token in response", status_code=400)
        expires_in = token.expires_in or DEFAULT_TOKEN_LIFETIME_SECONDS
        return GrantResult(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=now_ms() + expires_in * 1000,
            scopes=token.scope.split() if token.scope else None,
            token_type=token.token_type or "Bearer",
        )

    async def _request_token(
        self,
        *,
        payload: Mapping[str, str],
        context: str,
    ) -> _GitLabTokenResponse:
        async with create_mcp_http_client() as client:
            resp = await client.post(
                self.config.token_url,
                data=dict(payload),
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        return self._parse_token_response(resp, context=context)

    def _parse_token_response(self, resp: Any, *, context: str) -> _GitLabTokenResponse:
        if resp.status_code != 200:
            error_code = self._try_extract_oauth_error_code(resp)
            # authorization_pending / slow_down are routine while polling.
            log = logger.debug if context == "poll_device_token" else logger.warning
            log(
                "GitLab token endpoint returned non-200",
                extra={
                    "provider": self.provider_name,
                    "endpoint": "token",
                    "context": context,
                    "status_code": resp.status_code,
                    "provider_error": error_code,
                },
            )
            raise ProviderError(
                error_code or _transient_error_code(resp.status_code),
                "GitLab token request failed",
                status_code=resp.status_code,
            )

        try:
            token = _GitLabTokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "GitLab token endpoint returned an invalid payload",
                extra={
                    "provider": self.provider_name,
                    "endpoint": "token",
                    "context": context,
                    "status_code": resp.status_code,
                },
            )
            raise ProviderError(
                "server_error",
                "Invalid token response payload",
                status_code=resp.status_code,
            ) from exc

        if token.error is not None:
            raise ProviderError(
                token.error,
                token.error_description or "GitLab token request failed",
                status_code=resp.status_code,
            )

        return token

    def _try_extract_oauth_error_code(self, resp: Any) -> str | None:
        """Best-effort extraction of OAuth `error` code from a response."""
        try:
            payload = resp.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        return error if isinstance(error, str) and error else None


def _transient_error_code(status_code: int) -> str:
    """Error code for a failed token response that carries no OAuth ``error``.

    Rate limiting and gateway pages are not a verdict on the grant, so a
    device poll keeps waiting instead of failing the flow.
    """
    if status_code == 429:
        return "slow_down"
    return "temporarily_unavailable"
