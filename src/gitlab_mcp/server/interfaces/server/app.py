"""Starlette application factory for the gateway."""

import contextlib
import logging
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request

from gitlab_mcp.sdk.auth import (
    AuthenticationMiddleware,
    AuthService,
    GitLabProviderAdapter,
    ProviderAdapter,
    SessionStore,
)
from gitlab_mcp.sdk.auth.middleware import PROTECTED_RESOURCE_PATH
from gitlab_mcp.sdk.auth.storage import StorageBackend, create_storage_backend
from gitlab_mcp.server.core.config.gateway_config import ConfigError
from gitlab_mcp.server.core.config.models import GatewayConfigModel
from gitlab_mcp.server.interfaces.server.routes import build_routes, get_base_url

logger = logging.getLogger(__name__)

PROTECTED_PATHS = ("/mcp",)


def create_session_store(
    config: GatewayConfigModel, backend: StorageBackend | None = None
) -> SessionStore:
    oauth = config.oauth
    if backend is None:
        backend = create_storage_backend(oauth.storage, max_session_age_ms=oauth.max_session_age_ms)
    return SessionStore(backend, max_session_age_ms=oauth.max_session_age_ms)


def create_app(
    config: GatewayConfigModel,
    *,
    provider_adapter: ProviderAdapter | None = None,
    backend: StorageBackend | None = None,
) -> Starlette:
    """Build the gateway application.

    With OAuth disabled only ``/health`` is served. Otherwise the session store is
    started and stopped with the application lifespan.

    Args:
        config: Validated gateway configuration
        provider_adapter: Overrides the GitLab adapter (tests use ``DummyProviderAdapter``)
        backend: Overrides the storage backend selected by ``config.oauth.storage``

    Raises:
        ConfigError: OAuth is enabled but no GitLab application is configured
    """
    oauth = config.oauth
    auth_service: AuthService | None = None
    middleware: list[Middleware] = []

    if oauth.enabled:
        if provider_adapter is None:
            if oauth.gitlab is None:
                raise ConfigError(["GITLAB_OAUTH_CLIENT_ID is required when OAuth is enabled"])
            provider_adapter = GitLabProviderAdapter(
                oauth.gitlab,
                default_device_timeout_seconds=oauth.device_timeout_seconds,
                default_poll_interval_seconds=oauth.device_poll_interval_seconds,
            )
        auth_service = AuthService(
            provider_adapter=provider_adapter,
            session_store=create_session_store(config, backend),
            config=oauth,
        )

        def resource_metadata_url(request: Request) -> str:
            return get_base_url(request, config.base_url) + PROTECTED_RESOURCE_PATH

        middleware.append(
            Middleware(
                AuthenticationMiddleware,
                auth_service=auth_service,
                protected_paths=PROTECTED_PATHS,
                resource_metadata_url_builder=resource_metadata_url,
            )
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if auth_service is None:
            logger.warning("OAuth is disabled; only /health is served")
            yield
            return
        store = auth_service.session_store
        await store.start()
        logger.info(
            "Gateway started",
            extra={"backend": store.backend.name, "provider": auth_service.provider_adapter.provider_name},
        )
        try:
            yield
        finally:
            await store.stop()
            logger.info("Gateway stopped")

    app = Starlette(
        routes=build_routes(config, auth_service),
        middleware=middleware,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_service = auth_service
    return app


__all__ = ["create_app", "create_session_store"]
