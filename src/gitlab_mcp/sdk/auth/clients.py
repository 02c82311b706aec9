"""Dynamic client registration (RFC 7591).

Registered clients are held in memory. Clients that never registered are still
allowed to authorize (static client ids); registered clients are held to the
redirect URIs they registered.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

from pydantic import Field

from gitlab_mcp.sdk.models import SdkBaseModel

from .contracts import ProviderError
from .tokens import generate_client_secret

logger = logging.getLogger(__name__)

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class RegisteredClient(SdkBaseModel):
    """Client metadata returned to the registrant (minus the secret for public clients)."""

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int
    client_name: str | None = None
    redirect_uris: list[str]
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def is_acceptable_redirect_uri(uri: str) -> bool:
    """Absolute URI without a fragment; plain http only for loopback hosts.

    Custom schemes (``cursor://``, ``vscode://``) are accepted for native clients.
    """
    if not isinstance(uri, str) or not uri:
        return False
    try:
        parts = urlsplit(uri)
        hostname = parts.hostname
    except ValueError:
        return False
    if not parts.scheme or parts.fragment:
        return False
    if parts.scheme in {"http", "https"} and not hostname:
        return False
    if parts.scheme == "http" and hostname not in _LOOPBACK_HOSTS:
        return False
    return True


class ClientRegistry:
    """In-memory registry of dynamically registered clients."""

    def __init__(self) -> None:
        self._clients: dict[str, RegisteredClient] = {}

    def register(self, metadata: Mapping[str, Any]) -> RegisteredClient:
        """Validate client metadata and register a new client.

        Raises:
            ProviderError: ``invalid_client_metadata`` or ``invalid_redirect_uri``
        """
        redirect_uris = metadata.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise ProviderError(
                "invalid_client_metadata",
                "redirect_uris is required and must be a non-empty array",
            )
        for uri in redirect_uris:
            if not is_acceptable_redirect_uri(uri):
                raise ProviderError("invalid_redirect_uri", f"Invalid redirect URI: {uri}")

        auth_method = metadata.get("token_endpoint_auth_method") or "none"
        client_name = metadata.get("client_name")
        grant_types = metadata.get("grant_types") or ["authorization_code", "refresh_token"]
        response_types = metadata.get("response_types") or ["code"]
        if not _is_string_list(grant_types) or not _is_string_list(response_types):
            raise ProviderError(
                "invalid_client_metadata",
                "grant_types and response_types must be arrays of strings",
            )
        if not isinstance(auth_method, str):
            raise ProviderError(
                "invalid_client_metadata", "token_endpoint_auth_method must be a string"
            )
        if client_name is not None and not isinstance(client_name, str):
            raise ProviderError("invalid_client_metadata", "client_name must be a string")

        client = RegisteredClient(
            client_id=str(uuid.uuid4()),
            client_secret=generate_client_secret() if auth_method != "none" else None,
            client_id_issued_at=int(time.time()),
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            grant_types=list(grant_types),
            response_types=list(response_types),
            token_endpoint_auth_method=auth_method,
        )
        self._clients[client.client_id] = client
        logger.info(
            "Registered OAuth client",
            extra={
                "client_id": client.client_id,
                "client_name": client.client_name,
                "token_endpoint_auth_method": auth_method,
            },
        )
        return client

    def get(self, client_id: str) -> RegisteredClient | None:
        return self._clients.get(client_id)

    def is_valid_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return True
        return redirect_uri in client.redirect_uris

    def __len__(self) -> int:
        return len(self._clients)


__all__ = ["ClientRegistry", "RegisteredClient", "is_acceptable_redirect_uri"]


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)
