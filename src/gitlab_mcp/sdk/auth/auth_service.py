"""AuthService orchestrates the gateway's OAuth flows against a provider adapter.

Two grant flows end in the same place, a session holding GitLab tokens plus a
single-use authorization code for the client:

- Device flow (no ``redirect_uri``): the client shows the user a code, then
  polls until GitLab reports the outcome.
- Authorization-code flow (``redirect_uri`` given): the user agent goes to GitLab
  and comes back through the gateway's callback.

The token endpoint then redeems the code (PKCE, S256 only) or a refresh token
for gateway tokens. Both gateway tokens rotate on every issue.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Mapping
from typing import Literal

import httpx
from mcp.server.auth.provider import construct_redirect_uri

from gitlab_mcp.sdk.models import SdkBaseModel
from gitlab_mcp.sdk.telemetry import record_counter, traced_operation

from .clients import ClientRegistry
from .contracts import GrantResult, ProviderAdapter, ProviderError, UserInfo
from .models import OAuthConfigModel
from .records import AuthCodeFlowState, AuthorizationCode, DeviceFlowState, OAuthSession
from .session_store import SessionStore
from .tokens import (
    PKCE_METHOD_S256,
    create_access_token,
    generate_authorization_code,
    generate_refresh_token,
    generate_session_id,
    generate_state,
    is_expiring_soon,
    now_ms,
    verify_code_challenge,
)

logger = logging.getLogger(__name__)

DEVICE_PENDING_ERRORS = frozenset({"authorization_pending", "slow_down"})
DEVICE_TERMINAL_ERRORS = {
    "expired_token": "Device code expired. Please start a new authorization.",
    "access_denied": "User denied the authorization request.",
    "invalid_grant": "Invalid device code or grant.",
}
REFRESH_FAILED_DESCRIPTION = "Failed to refresh underlying GitLab token"


class DeviceAuthorizationResult(SdkBaseModel):
    """What the device-flow page shows the user."""

    flow_state: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int
    interval: int


class AuthCodeRedirect(SdkBaseModel):
    """Where to send the user agent to start the authorization-code flow."""

    url: str


class PollResult(SdkBaseModel):
    """Device-flow poll outcome."""

    status: Literal["pending", "complete", "failed", "expired"]
    code: str | None = None
    redirect_uri: str | None = None
    state: str | None = None
    error: str | None = None
    http_status: int = 200

    def to_response(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True, exclude={"http_status"})


class AccessTokenResponse(SdkBaseModel):
    """Response returned when exchanging an auth code or refresh token."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


class AuthService:
    """Gateway-side OAuth coordinator."""

    def __init__(
        self,
        *,
        provider_adapter: ProviderAdapter,
        session_store: SessionStore,
        config: OAuthConfigModel,
        client_registry: ClientRegistry | None = None,
    ):
        self.provider_adapter = provider_adapter
        self.session_store = session_store
        self.config = config
        self.client_registry = client_registry or ClientRegistry()
        self._refresh_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ── Authorization ──────────────────────────────────────────────────────────
    async def authorize(
        self, params: Mapping[str, str], *, callback_url: str
    ) -> DeviceAuthorizationResult | AuthCodeRedirect:
        """Validate an authorize request and start the flow it selects.

        Raises:
            ProviderError: For protocol errors (nothing is stored) and when the
                provider cannot start a device authorization.
        """
        response_type = params.get("response_type")
        client_id = params.get("client_id")
        code_challenge = params.get("code_challenge")
        code_challenge_method = params.get("code_challenge_method")
        redirect_uri = params.get("redirect_uri") or None
        client_state = params.get("state") or None

        if response_type != "code":
            raise ProviderError(
                "unsupported_response_type", 'Only "code" response type is supported'
            )
        if not client_id:
            raise ProviderError("invalid_request", "client_id is required")
        if not code_challenge:
            raise ProviderError("invalid_request", "code_challenge is required (PKCE)")
        if code_challenge_method != PKCE_METHOD_S256:
            raise ProviderError("invalid_request", 'code_challenge_method must be "S256"')
        if redirect_uri and not self.client_registry.is_valid_redirect_uri(client_id, redirect_uri):
            raise ProviderError("invalid_request", "redirect_uri is not registered for this client")

        scopes = self._resolve_scopes(params.get("scope"))

        if redirect_uri is None:
            return await self._start_device_flow(
                client_id=client_id,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                client_state=client_state,
                scopes=scopes,
            )

        internal_state = generate_state()
        flow = AuthCodeFlowState(
            internal_state=internal_state,
            client_id=client_id,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            client_state=client_state,
            client_redirect_uri=redirect_uri,
            callback_uri=callback_url,
            expires_at=now_ms() + self.config.flow_ttl_seconds * 1000,
            scopes=scopes,
        )
        self.session_store.store_auth_code_flow(flow)
        url = self.provider_adapter.build_authorize_url(
            redirect_uri=callback_url, state=internal_state
        )
        logger.info(
            "authorize: redirecting to provider",
            extra={"client_id": client_id, "redirect_uri": redirect_uri, "flow": "auth_code"},
        )
        return AuthCodeRedirect(url=url)

    async def _start_device_flow(
        self,
        *,
        client_id: str,
        code_challenge: str,
        code_challenge_method: str,
        client_state: str | None,
        scopes: list[str],
    ) -> DeviceAuthorizationResult:
        try:
            device = await self.provider_adapter.start_device_authorization()
        except (ProviderError, httpx.HTTPError) as exc:
            logger.error(
                "authorize: device authorization request failed",
                extra={"client_id": client_id, "error": str(exc)},
            )
            raise ProviderError(
                "server_error", "Failed to start GitLab device authorization", status_code=500
            ) from exc

        flow_id = generate_state()
        self.session_store.store_device_flow(
            DeviceFlowState(
                flow_id=flow_id,
                device_code=device.device_code,
                user_code=device.user_code,
                verification_uri=device.verification_uri,
                verification_uri_complete=device.verification_uri_complete,
                expires_at=now_ms() + device.expires_in * 1000,
                interval=device.interval,
                client_id=client_id,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                state=client_state,
                scopes=scopes,
            )
        )
        logger.info(
            "authorize: started device flow",
            extra={"client_id": client_id, "flow": "device", "expires_in": device.expires_in},
        )
        return DeviceAuthorizationResult(
            flow_state=flow_id,
            user_code=device.user_code,
            verification_uri=device.verification_uri,
            verification_uri_complete=device.verification_uri_complete,
            expires_in=device.expires_in,
            interval=device.interval,
        )

    # ── Device flow polling ────────────────────────────────────────────────────
    async def poll_device_flow(self, flow_state: str | None) -> PollResult:
        """Poll GitLab once for a device flow; never blocks beyond one round trip."""
        if not flow_state:
            return PollResult(status="failed", error="Missing flow_state", http_status=400)

        flow = self.session_store.get_device_flow(flow_state)
        if flow is None:
            return PollResult(status="expired", error="Flow not found", http_status=400)
        if now_ms() > flow.expires_at:
            self.session_store.delete_device_flow(flow_state)
            return PollResult(status="expired", error="Device code expired", http_status=400)

        with traced_operation("gitlab_mcp.flow.device_poll") as span:
            try:
                grant = await self.provider_adapter.poll_device_token(device_code=flow.device_code)
            except ProviderError as exc:
                if exc.error in DEVICE_PENDING_ERRORS:
                    span.set_attribute("flow.status", "pending")
                    return PollResult(status="pending")
                if exc.error in DEVICE_TERMINAL_ERRORS:
                    self.session_store.delete_device_flow(flow_state)
                    span.set_attribute("flow.status", "failed")
                    logger.info(
                        "Device flow ended by provider",
                        extra={"client_id": flow.client_id, "provider_error": exc.error},
                    )
                    return PollResult(status="failed", error=DEVICE_TERMINAL_ERRORS[exc.error])
                logger.warning(
                    "Device flow poll error; reporting pending",
                    extra={"provider_error": exc.error, "status_code": exc.status_code},
                )
                return PollResult(status="pending")
            except httpx.HTTPError as exc:
                logger.warning(
                    "Device flow poll transport error; reporting pending",
                    extra={"error": str(exc)},
                )
                return PollResult(status="pending")

            try:
                user = await self.provider_adapter.fetch_user_info(access_token=grant.access_token)
            except (ProviderError, httpx.HTTPError) as exc:
                self.session_store.delete_device_flow(flow_state)
                logger.error("Device flow: failed to fetch GitLab user", extra={"error": str(exc)})
                return PollResult(status="failed", error="Failed to fetch GitLab user")

            session = self._create_session(grant, user, client_id=flow.client_id, scopes=flow.scopes)
            code = self._issue_authorization_code(
                session_id=session.session_id,
                client_id=flow.client_id,
                code_challenge=flow.code_challenge,
                code_challenge_method=flow.code_challenge_method,
                redirect_uri=flow.redirect_uri,
            )
            self.session_store.delete_device_flow(flow_state)
            span.set_attribute("flow.status", "complete")

        record_counter(
            "gitlab_mcp.flow.completed_total",
            attributes={"flow": "device"},
            description="Completed authorization flows",
        )
        return PollResult(
            status="complete", code=code.code, redirect_uri=flow.redirect_uri, state=flow.state
        )

    # ── Authorization-code flow callback ───────────────────────────────────────
    async def handle_callback(
        self,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Finish the redirect flow and return the client redirect URL.

        Raises:
            ProviderError: When no flow can be correlated, so there is nowhere
                safe to redirect the user agent to.
        """
        if error:
            flow = self.session_store.get_auth_code_flow(state) if state else None
            if flow is None:
                raise ProviderError(error, error_description or "Authorization failed")
            self.session_store.delete_auth_code_flow(flow.internal_state)
            logger.info(
                "handle_callback: provider returned error",
                extra={"client_id": flow.client_id, "provider_error": error},
            )
            return self._client_error_redirect(flow, error, error_description)

        if not code or not state:
            raise ProviderError("invalid_request", "Missing code or state parameter")

        flow = self.session_store.get_auth_code_flow(state)
        if flow is None:
            logger.warning("handle_callback: state not found or expired")
            raise ProviderError("invalid_request", "Invalid or expired state")

        try:
            grant = await self.provider_adapter.exchange_code(code=code, redirect_uri=flow.callback_uri)
            user = await self.provider_adapter.fetch_user_info(access_token=grant.access_token)
        except (ProviderError, httpx.HTTPError) as exc:
            self.session_store.delete_auth_code_flow(flow.internal_state)
            logger.error(
                "handle_callback: code exchange failed",
                extra={"client_id": flow.client_id, "error": str(exc)},
            )
            return self._client_error_redirect(
                flow, "server_error", "Failed to exchange authorization code"
            )

        session = self._create_session(grant, user, client_id=flow.client_id, scopes=flow.scopes)
        auth_code = self._issue_authorization_code(
            session_id=session.session_id,
            client_id=flow.client_id,
            code_challenge=flow.code_challenge,
            code_challenge_method=flow.code_challenge_method,
            redirect_uri=flow.client_redirect_uri,
        )
        self.session_store.delete_auth_code_flow(flow.internal_state)
        record_counter(
            "gitlab_mcp.flow.completed_total",
            attributes={"flow": "auth_code"},
            description="Completed authorization flows",
        )
        # The client only ever sees its own state, never the internal correlator.
        return construct_redirect_uri(
            flow.client_redirect_uri, code=auth_code.code, state=flow.client_state
        )

    def _client_error_redirect(
        self, flow: AuthCodeFlowState, error: str, description: str | None
    ) -> str:
        return construct_redirect_uri(
            flow.client_redirect_uri,
            error=error,
            error_description=description,
            state=flow.client_state,
        )

    # ── Token endpoint ─────────────────────────────────────────────────────────
    async def exchange_token(
        self, form: Mapping[str, str], *, issuer: str
    ) -> AccessTokenResponse:
        """Handle ``POST /token`` for the authorization_code and refresh_token grants."""
        grant_type = form.get("grant_type")
        with traced_operation("gitlab_mcp.flow.token", {"grant_type": grant_type}):
            if grant_type == "authorization_code":
                response = await self._exchange_authorization_code(form, issuer=issuer)
            elif grant_type == "refresh_token":
                response = await self._exchange_refresh_token(form, issuer=issuer)
            else:
                raise ProviderError(
                    "unsupported_grant_type", f'Grant type "{grant_type}" is not supported'
                )
        record_counter(
            "gitlab_mcp.tokens.issued_total",
            attributes={"grant_type": grant_type},
            description="Gateway token pairs issued",
        )
        return response

    async def _exchange_authorization_code(
        self, form: Mapping[str, str], *, issuer: str
    ) -> AccessTokenResponse:
        code = form.get("code")
        code_verifier = form.get("code_verifier")
        redirect_uri = form.get("redirect_uri") or None

        if not code:
            raise ProviderError("invalid_request", "Missing authorization code")
        if not code_verifier:
            raise ProviderError("invalid_request", "Missing code_verifier (PKCE required)")

        record = self.session_store.get_auth_code(code)
        if record is None:
            # Expired codes are invisible to reads; drop any leftover eagerly.
            self.session_store.delete_auth_code(code)
            raise ProviderError("invalid_grant", "Invalid or expired authorization code")

        if not verify_code_challenge(code_verifier, record.code_challenge, record.code_challenge_method):
            logger.warning("exchange_token: PKCE verification failed", extra={"client_id": record.client_id})
            raise ProviderError("invalid_grant", "Invalid code_verifier")

        if record.redirect_uri and redirect_uri != record.redirect_uri:
            raise ProviderError("invalid_grant", "redirect_uri does not match")

        session = self.session_store.get_session(record.session_id)
        if session is None:
            logger.error(
                "exchange_token: session missing for authorization code",
                extra={"session_prefix": record.session_id[:8]},
            )
            raise ProviderError("server_error", "Session not found", status_code=500)

        # Strictly single use: gone before the tokens leave the building.
        self.session_store.delete_auth_code(code)
        return self._issue_gateway_tokens(session, issuer=issuer)

    async def _exchange_refresh_token(
        self, form: Mapping[str, str], *, issuer: str
    ) -> AccessTokenResponse:
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise ProviderError("invalid_request", "Missing refresh_token")

        session = self.session_store.get_session_by_refresh_token(refresh_token)
        if session is None:
            raise ProviderError("invalid_grant", "Invalid refresh token")

        session = await self.ensure_fresh_provider_token(session)
        return self._issue_gateway_tokens(session, issuer=issuer)

    # ── Provider token refresh ─────────────────────────────────────────────────
    async def ensure_fresh_provider_token(self, session: OAuthSession) -> OAuthSession:
        """Refresh the session's GitLab token if it expires within the buffer.

        Concurrent callers for the same session share one refresh: whoever gets
        the lock second re-reads the session and finds it already fresh.

        Raises:
            ProviderError: ``invalid_grant`` when GitLab refuses the refresh; the
                user has to authenticate again.
        """
        if not is_expiring_soon(session.provider_token_expiry):
            return session

        session_id = session.session_id
        lock = self._refresh_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[session_id] = lock

        async with lock:
            current = self.session_store.get_session(session_id)
            if current is None:
                raise ProviderError("invalid_grant", "Session not found")
            if not is_expiring_soon(current.provider_token_expiry):
                return current
            if not current.provider_refresh_token:
                raise ProviderError("invalid_grant", REFRESH_FAILED_DESCRIPTION)

            try:
                grant = await self.provider_adapter.refresh_token(
                    refresh_token=current.provider_refresh_token
                )
            except (ProviderError, httpx.HTTPError) as exc:
                logger.warning(
                    "Provider token refresh failed; requiring re-auth",
                    extra={"session_prefix": session_id[:8], "error": str(exc)},
                )
                record_counter(
                    "gitlab_mcp.auth.provider_refresh_total",
                    attributes={"status": "failure"},
                    description="Total provider token refresh attempts",
                )
                raise ProviderError("invalid_grant", REFRESH_FAILED_DESCRIPTION) from exc

            updated = self.session_store.update_session(
                session_id,
                provider_access_token=grant.access_token,
                provider_refresh_token=grant.refresh_token or current.provider_refresh_token,
                provider_token_expiry=grant.expires_at,
            )
            if updated is None:
                raise ProviderError("invalid_grant", "Session not found")

        record_counter(
            "gitlab_mcp.auth.provider_refresh_total",
            attributes={"status": "success"},
            description="Total provider token refresh attempts",
        )
        logger.info("Refreshed provider token", extra={"session_prefix": session_id[:8]})
        return updated

    # ── Session management ─────────────────────────────────────────────────────
    def revoke_session(self, session_id: str) -> bool:
        """Delete a session; its tokens stop working immediately."""
        return self.session_store.delete_session(session_id)

    # ── helpers ──────────────────────────────────────────────────────────────
    def _resolve_scopes(self, requested: str | None) -> list[str]:
        supported = self.config.scopes_supported
        if requested:
            wanted = [scope for scope in dict.fromkeys(requested.split()) if scope in supported]
            if wanted:
                return wanted
        return list(supported)

    def _create_session(
        self, grant: GrantResult, user: UserInfo, *, client_id: str, scopes: list[str]
    ) -> OAuthSession:
        now = now_ms()
        session = OAuthSession(
            session_id=generate_session_id(),
            provider_access_token=grant.access_token,
            provider_refresh_token=grant.refresh_token or "",
            provider_token_expiry=grant.expires_at,
            provider_user_id=user.user_id,
            provider_username=user.username,
            client_id=client_id,
            scopes=scopes,
            created_at=now,
            updated_at=now,
        )
        return self.session_store.create_session(session)

    def _issue_authorization_code(
        self,
        *,
        session_id: str,
        client_id: str,
        code_challenge: str,
        code_challenge_method: str,
        redirect_uri: str | None,
    ) -> AuthorizationCode:
        record = AuthorizationCode(
            code=generate_authorization_code(),
            session_id=session_id,
            client_id=client_id,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            redirect_uri=redirect_uri,
            expires_at=now_ms() + self.config.auth_code_ttl_seconds * 1000,
        )
        self.session_store.store_auth_code(record)
        return record

    def _issue_gateway_tokens(self, session: OAuthSession, *, issuer: str) -> AccessTokenResponse:
        ttl = self.config.token_ttl_seconds
        access_token = create_access_token(
            session, secret=self.config.signing_secret, issuer=issuer, ttl_seconds=ttl
        )
        refresh_token = generate_refresh_token()
        updated = self.session_store.update_session(
            session.session_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=now_ms() + ttl * 1000,
        )
        if updated is None:
            raise ProviderError("server_error", "Session not found", status_code=500)
        logger.info(
            "Issued gateway tokens",
            extra={"session_prefix": session.session_id[:8], "client_id": session.client_id},
        )
        return AccessTokenResponse(
            access_token=access_token,
            expires_in=ttl,
            refresh_token=refresh_token,
            scope=" ".join(updated.scopes),
        )


__all__ = [
    "AccessTokenResponse",
    "AuthCodeRedirect",
    "AuthService",
    "DeviceAuthorizationResult",
    "PollResult",
]
