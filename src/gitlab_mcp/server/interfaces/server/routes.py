"""HTTP handlers for the gateway's OAuth endpoints.

Every error leaves as ``{"error": ..., "error_description": ...}`` JSON; only
``/authorize`` (device page) and ``/oauth/callback`` (client redirect) answer
with anything else.
"""

import json
import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from gitlab_mcp.sdk.auth import (
    AuthCodeRedirect,
    AuthService,
    ProviderError,
    get_provider_user_id,
    get_provider_username,
    get_session_id,
)
from gitlab_mcp.sdk.auth.middleware import PROTECTED_RESOURCE_PATH
from gitlab_mcp.server.core.config.models import GatewayConfigModel

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-03-26"
CALLBACK_PATH = "/oauth/callback"
POLL_PATH = "/oauth/poll"
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_templates = Environment(
    loader=FileSystemLoader(Path(__file__).parent / "templates"),
    autoescape=select_autoescape(["html"]),
)


def get_base_url(request: Request, configured_base_url: str | None = None) -> str:
    """Public base URL of the gateway.

    Priority: configured base URL, then ``X-Forwarded-Proto``/``X-Forwarded-Host``,
    then the request URL itself.
    """
    if configured_base_url:
        return configured_base_url.rstrip("/")

    scheme = request.url.scheme
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto:
        # Handle comma-separated values (take first)
        scheme = forwarded_proto.split(",")[0].strip().lower()

    host = request.headers.get("x-forwarded-host")
    if host:
        host = host.split(",")[0].strip()
    else:
        host = request.url.netloc
    return f"{scheme}://{host}"


def error_response(exc: ProviderError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=NO_STORE_HEADERS)


def health_endpoint(auth_service: AuthService | None):
    async def health(request: Request) -> Response:
        body: dict[str, Any] = {"status": "ok", "oauth_enabled": auth_service is not None}
        if auth_service is not None:
            body["storage"] = auth_service.session_store.get_stats().model_dump()
        return JSONResponse(body)

    return health


def build_routes(config: GatewayConfigModel, auth_service: AuthService | None) -> list[Route]:
    """Routes for the app; the OAuth endpoints exist only with an ``AuthService``."""
    routes = [Route("/health", health_endpoint(auth_service), methods=["GET"])]
    if auth_service is None:
        return routes
    return routes + GatewayRoutes(config, auth_service).routes()


class GatewayRoutes:
    """OAuth and MCP request handlers bound to one ``AuthService``."""

    def __init__(self, config: GatewayConfigModel, auth_service: AuthService):
        self.config = config
        self.auth_service = auth_service

    def base_url(self, request: Request) -> str:
        return get_base_url(request, self.config.base_url)

    def issuer(self, request: Request) -> str:
        return self.config.oauth.issuer or self.base_url(request)

    def routes(self) -> list[Route]:
        return [
            Route("/.well-known/oauth-authorization-server", self.authorization_server_metadata, methods=["GET"]),
            Route(PROTECTED_RESOURCE_PATH, self.protected_resource_metadata, methods=["GET"]),
            Route("/authorize", self.authorize, methods=["GET"]),
            Route(POLL_PATH, self.poll, methods=["GET"]),
            Route(CALLBACK_PATH, self.callback, methods=["GET"]),
            Route("/token", self.token, methods=["POST"]),
            Route("/register", self.register, methods=["POST"]),
            Route("/mcp/whoami", self.whoami, methods=["GET"]),
        ]

    # ── Discovery ──────────────────────────────────────────────────────────────
    async def authorization_server_metadata(self, request: Request) -> Response:
        base_url = self.base_url(request)
        return JSONResponse(
            {
                "issuer": self.issuer(request),
                "authorization_endpoint": f"{base_url}/authorize",
                "token_endpoint": f"{base_url}/token",
                "registration_endpoint": f"{base_url}/register",
                "response_types_supported": ["code"],
                "grant_types_supported": ["authorization_code", "refresh_token"],
                "code_challenge_methods_supported": ["S256"],
                "token_endpoint_auth_methods_supported": ["none"],
                "scopes_supported": self.config.oauth.scopes_supported,
                "service_documentation": "https://docs.gitlab.com/ee/api/oauth2.html",
                "mcp_version": MCP_PROTOCOL_VERSION,
            }
        )

    async def protected_resource_metadata(self, request: Request) -> Response:
        base_url = self.base_url(request)
        return JSONResponse(
            {
                "resource": f"{base_url}/mcp",
                "authorization_servers": [base_url],
                "scopes_supported": self.config.oauth.scopes_supported,
                "bearer_methods_supported": ["header"],
            }
        )

    # ── Authorization ──────────────────────────────────────────────────────────
    async def authorize(self, request: Request) -> Response:
        callback_url = f"{self.base_url(request)}{CALLBACK_PATH}"
        try:
            result = await self.auth_service.authorize(
                dict(request.query_params), callback_url=callback_url
            )
        except ProviderError as exc:
            return error_response(exc)

        if isinstance(result, AuthCodeRedirect):
            return RedirectResponse(result.url, status_code=302)

        page = _templates.get_template("device.html").render(
            user_code=result.user_code,
            verification_uri=result.verification_uri,
            verification_uri_complete=result.verification_uri_complete,
            expires_in=result.expires_in,
            interval=result.interval,
            poll_url=f"{POLL_PATH}?flow_state={result.flow_state}",
        )
        return HTMLResponse(page, headers=NO_STORE_HEADERS)

    async def poll(self, request: Request) -> Response:
        result = await self.auth_service.poll_device_flow(request.query_params.get("flow_state"))
        return JSONResponse(
            result.to_response(), status_code=result.http_status, headers=NO_STORE_HEADERS
        )

    async def callback(self, request: Request) -> Response:
        params = request.query_params
        try:
            redirect_url = await self.auth_service.handle_callback(
                code=params.get("code"),
                state=params.get("state"),
                error=params.get("error"),
                error_description=params.get("error_description"),
            )
        except ProviderError as exc:
            return error_response(exc)
        return RedirectResponse(redirect_url, status_code=302)

    # ── Token & registration ───────────────────────────────────────────────────
    async def token(self, request: Request) -> Response:
        try:
            form = await self._read_body(request)
            result = await self.auth_service.exchange_token(form, issuer=self.issuer(request))
        except ProviderError as exc:
            return error_response(exc)
        return JSONResponse(result.model_dump(), headers=NO_STORE_HEADERS)

    async def register(self, request: Request) -> Response:
        try:
            metadata = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response(ProviderError("invalid_client_metadata", "Request body must be JSON"))
        if not isinstance(metadata, dict):
            return error_response(
                ProviderError("invalid_client_metadata", "Request body must be a JSON object")
            )
        try:
            client = self.auth_service.client_registry.register(metadata)
        except ProviderError as exc:
            return error_response(exc)
        return JSONResponse(client.to_response(), status_code=201, headers=NO_STORE_HEADERS)

    async def _read_body(self, request: Request) -> dict[str, str]:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise ProviderError("invalid_request", "Malformed JSON body") from exc
            if not isinstance(body, dict):
                raise ProviderError("invalid_request", "Request body must be a JSON object")
            return {key: str(value) for key, value in body.items() if value is not None}
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    # ── MCP ────────────────────────────────────────────────────────────────────
    async def whoami(self, request: Request) -> Response:
        return JSONResponse(
            {
                "user_id": get_provider_user_id(),
                "username": get_provider_username(),
                "session_id": get_session_id(),
            }
        )


__all__ = ["GatewayRoutes", "build_routes", "error_response", "get_base_url", "health_endpoint"]
