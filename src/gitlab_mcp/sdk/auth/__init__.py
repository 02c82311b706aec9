"""Gateway authentication - the OAuth 2.1 authorization core.

This package provides:
- A credential codec for gateway access tokens and PKCE
- A session store with memory, file and sqlite storage backends
- The GitLab provider adapter (device flow, authorization code, refresh)
- The flow orchestrator behind ``/authorize``, ``/oauth/poll``, ``/oauth/callback``
  and ``/token``
- Authentication middleware and the request-scoped token context

## Quick Examples

### Reading the caller's GitLab credential in a tool
```python
from gitlab_mcp.sdk.auth import get_provider_token, get_provider_username

async def list_projects() -> list[dict]:
    token = get_provider_token()
    ...
```

### Wiring the store and orchestrator
```python
from gitlab_mcp.sdk.auth import AuthService, GitLabProviderAdapter, SessionStore
from gitlab_mcp.sdk.auth.storage import create_storage_backend

store = SessionStore(create_storage_backend(config.storage))
await store.start()
service = AuthService(
    provider_adapter=GitLabProviderAdapter(config.gitlab),
    session_store=store,
    config=config,
)
```
"""

from .auth_service import (
    AccessTokenResponse,
    AuthCodeRedirect,
    AuthService,
    DeviceAuthorizationResult,
    PollResult,
)
from .clients import ClientRegistry, RegisteredClient, is_acceptable_redirect_uri
from .context import (
    TokenContext,
    TokenContextError,
    get_optional_token_context,
    get_provider_token,
    get_provider_user_id,
    get_provider_username,
    get_session_id,
    get_token_context,
    reset_token_context,
    set_token_context,
    token_context_scope,
)
from .contracts import DeviceAuthorization, GrantResult, ProviderAdapter, ProviderError, UserInfo
from .middleware import AuthenticationError, AuthenticationMiddleware
from .models import (
    DEFAULT_GATEWAY_SCOPES,
    FileStorageConfigModel,
    GitLabAuthConfigModel,
    OAuthConfigModel,
    SqliteStorageConfigModel,
    StorageConfigModel,
)
from .providers import DummyProviderAdapter, GitLabProviderAdapter
from .records import (
    AuthCodeFlowState,
    AuthorizationCode,
    CleanupResult,
    DeviceFlowState,
    OAuthSession,
    SessionMapping,
    StorageSnapshot,
    StorageStats,
)
from .session_store import SessionStore

__all__ = [
    # Orchestration
    "AccessTokenResponse",
    "AuthCodeRedirect",
    "AuthService",
    "DeviceAuthorizationResult",
    "PollResult",
    # Clients
    "ClientRegistry",
    "RegisteredClient",
    "is_acceptable_redirect_uri",
    # Context
    "TokenContext",
    "TokenContextError",
    "get_optional_token_context",
    "get_provider_token",
    "get_provider_user_id",
    "get_provider_username",
    "get_session_id",
    "get_token_context",
    "reset_token_context",
    "set_token_context",
    "token_context_scope",
    # Providers
    "DeviceAuthorization",
    "DummyProviderAdapter",
    "GitLabProviderAdapter",
    "GrantResult",
    "ProviderAdapter",
    "ProviderError",
    "UserInfo",
    # Middleware
    "AuthenticationError",
    "AuthenticationMiddleware",
    # Config
    "DEFAULT_GATEWAY_SCOPES",
    "FileStorageConfigModel",
    "GitLabAuthConfigModel",
    "OAuthConfigModel",
    "SqliteStorageConfigModel",
    "StorageConfigModel",
    # Records
    "AuthCodeFlowState",
    "AuthorizationCode",
    "CleanupResult",
    "DeviceFlowState",
    "OAuthSession",
    "SessionMapping",
    "StorageSnapshot",
    "StorageStats",
    "SessionStore",
]
