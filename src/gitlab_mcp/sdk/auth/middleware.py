"""Bearer-token authentication for the gateway's MCP endpoints.

This module validates gateway access tokens and binds a request-scoped
``TokenContext`` carrying the caller's GitLab credential.

## Design notes

- Validation relies on the session held by the ``SessionStore``. The signature
  proves the token was minted here; the session lookup proves it is still the
  current one (rotation supersedes older tokens immediately).
- The GitLab token is refreshed in-line when it is about to expire, through
  ``AuthService.ensure_fresh_provider_token`` so concurrent requests share one
  refresh.

## Security invariants ("do not break")

- Never log tokens, secrets or GitLab user identifiers.
- Avoid attaching sensitive values to traces/metrics.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from gitlab_mcp.sdk.telemetry import SpanKind, record_counter, traced_operation

from .auth_service import AuthService
from .contracts import ProviderError
from .context import TokenContext, token_context_scope
from .tokens import verify_token

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"


class AuthenticationError(Exception):
    """Bearer authentication failed; ``description`` is safe to return to the client."""

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description


def default_resource_metadata_url(request: Request) -> str:
    return str(request.base_url).rstrip("/") + PROTECTED_RESOURCE_PATH


class AuthenticationMiddleware:
    """ASGI middleware guarding ``protected_paths`` with gateway bearer tokens.

    Paths are matched by prefix. On ``optional_paths`` a valid token still binds
    a context, but a missing or bad one lets the request through anonymously.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        auth_service: AuthService,
        protected_paths: Iterable[str] = ("/mcp",),
        optional_paths: Iterable[str] = (),
        resource_metadata_url_builder: Callable[[Request], str] = default_resource_metadata_url,
    ):
        self.app = app
        self.auth_service = auth_service
        self.protected_paths = tuple(protected_paths)
        self.optional_paths = tuple(optional_paths)
        self.resource_metadata_url_builder = resource_metadata_url_builder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        protected = path.startswith(self.protected_paths)
        optional = not protected and path.startswith(self.optional_paths)
        if not protected and not optional:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        try:
            context = await self.authenticate(request.headers.get("authorization"))
        except AuthenticationError as exc:
            if optional:
                await self.app(scope, receive, send)
                return
            response = self._unauthorized(request, exc.description)
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["token_context"] = context
        with token_context_scope(context):
            await self.app(scope, receive, send)

    async def authenticate(self, authorization: str | None) -> TokenContext:
        """Resolve an ``Authorization`` header into a token context.

        Raises:
            AuthenticationError: If the request cannot be authenticated
        """
        with traced_operation("gitlab_mcp.auth.authenticate", kind=SpanKind.SERVER) as span:
            try:
                context = await self._authenticate(authorization)
            except AuthenticationError as exc:
                span.set_attribute("gitlab_mcp.auth.authenticated", False)
                record_counter(
                    "gitlab_mcp.auth.attempts_total",
                    attributes={"status": "failure"},
                    description="Total authentication attempts",
                )
                logger.info("Authentication failed", extra={"reason": exc.description})
                raise
            span.set_attribute("gitlab_mcp.auth.authenticated", True)
            record_counter(
                "gitlab_mcp.auth.attempts_total",
                attributes={"status": "success"},
                description="Total authentication attempts",
            )
            return context

    async def _authenticate(self, authorization: str | None) -> TokenContext:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("Missing or invalid Authorization header")

        claims = verify_token(token, self.auth_service.config.signing_secret)
        if claims is None:
            raise AuthenticationError("Invalid or expired token")

        store = self.auth_service.session_store
        session = store.get_session(str(claims["sid"]))
        if session is None:
            raise AuthenticationError("Session not found")
        if session.access_token != token:
            raise AuthenticationError("Token has been superseded")

        try:
            session = await self.auth_service.ensure_fresh_provider_token(session)
        except ProviderError as exc:
            raise AuthenticationError("GitLab token expired, please re-authenticate") from exc

        return TokenContext(
            provider_token=session.provider_access_token,
            provider_user_id=session.provider_user_id,
            provider_username=session.provider_username,
            session_id=session.session_id,
        )

    def _unauthorized(self, request: Request, description: str) -> JSONResponse:
        resource_metadata = self.resource_metadata_url_builder(request)
        challenge = (
            f'Bearer error="invalid_token", error_description="{description}", '
            f'resource_metadata="{resource_metadata}"'
        )
        return JSONResponse(
            {"error": "invalid_token", "error_description": description},
            status_code=401,
            headers={"WWW-Authenticate": challenge},
        )


__all__ = [
    "AuthenticationError",
    "AuthenticationMiddleware",
    "default_resource_metadata_url",
]
