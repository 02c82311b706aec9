"""Pydantic models for the auth module.

These types are used for gateway configuration.

## Security-relevant configuration fields

- ``session_secret``: signs every gateway access token; at least 32 characters.
- GitLab ``scope``: what the gateway asks GitLab for on the user's behalf.
- ``scopes_supported``: the gateway scopes advertised to clients and embedded in tokens.

Treat changes to these fields as security-sensitive and ensure they are covered by
tests and documented behavior.
"""

from typing import Literal

from pydantic import Field, model_validator

from gitlab_mcp.sdk.models import SdkBaseModel

DEFAULT_GATEWAY_SCOPES = ["mcp:tools", "mcp:resources"]
MIN_SESSION_SECRET_LENGTH = 32


class GitLabAuthConfigModel(SdkBaseModel):
    """GitLab OAuth application configuration.

    ``client_secret`` is optional: GitLab applications marked as non-confidential
    (required for the device flow) are public clients.
    """

    client_id: str = Field(min_length=1)
    client_secret: str | None = None
    base_url: str = "https://gitlab.com"
    # Space-separated, as GitLab expects it on the wire.
    scope: str = "api read_user"

    @property
    def normalized_base_url(self) -> str:
        return self.base_url.rstrip("/")

    @property
    def authorize_url(self) -> str:
        return f"{self.normalized_base_url}/oauth/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.normalized_base_url}/oauth/token"

    @property
    def device_authorization_url(self) -> str:
        return f"{self.normalized_base_url}/oauth/authorize_device"

    @property
    def user_url(self) -> str:
        return f"{self.normalized_base_url}/api/v4/user"


class FileStorageConfigModel(SdkBaseModel):
    """Settings for the JSON snapshot backend."""

    path: str = "./data/oauth-sessions.json"
    save_interval_ms: int = Field(default=30_000, gt=0)
    debounce_ms: int = Field(default=1_000, ge=0)
    pretty_print: bool = False


class SqliteStorageConfigModel(SdkBaseModel):
    """Settings for the relational backend.

    Several gateway processes may point at the same database file.
    """

    path: str = "./data/oauth-sessions.db"
    # Fernet key; provider tokens are stored encrypted when set.
    encryption_key: str | None = None


class StorageConfigModel(SdkBaseModel):
    """Storage backend selection."""

    type: Literal["memory", "file", "sqlite"] = "memory"
    file: FileStorageConfigModel = Field(default_factory=FileStorageConfigModel)
    sqlite: SqliteStorageConfigModel = Field(default_factory=SqliteStorageConfigModel)


class OAuthConfigModel(SdkBaseModel):
    """OAuth gateway configuration.

    When ``enabled`` is False the rest of the model is not required to be usable;
    once enabled, a GitLab application and a signing secret must be present.
    """

    enabled: bool = False
    session_secret: str | None = None
    issuer: str | None = None
    gitlab: GitLabAuthConfigModel | None = None
    token_ttl_seconds: int = Field(default=3600, gt=0)
    refresh_token_ttl_seconds: int = Field(default=604_800, gt=0)
    auth_code_ttl_seconds: int = Field(default=600, gt=0)
    flow_ttl_seconds: int = Field(default=600, gt=0)
    device_poll_interval_seconds: int = Field(default=5, gt=0)
    device_timeout_seconds: int = Field(default=300, gt=0)
    scopes_supported: list[str] = Field(default_factory=lambda: list(DEFAULT_GATEWAY_SCOPES))
    storage: StorageConfigModel = Field(default_factory=StorageConfigModel)

    @model_validator(mode="after")
    def _check_enabled_requirements(self) -> "OAuthConfigModel":
        if not self.enabled:
            return self
        problems: list[str] = []
        if not self.session_secret:
            problems.append("OAUTH_SESSION_SECRET is required when OAuth is enabled")
        elif len(self.session_secret) < MIN_SESSION_SECRET_LENGTH:
            problems.append(
                f"OAUTH_SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )
        if self.gitlab is None:
            problems.append("GITLAB_OAUTH_CLIENT_ID is required when OAuth is enabled")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def max_session_age_ms(self) -> int:
        """Sessions live as long as their refresh token, measured from creation."""
        return self.refresh_token_ttl_seconds * 1000

    @property
    def signing_secret(self) -> str:
        if not self.session_secret:
            raise ValueError("OAuth session secret is not configured")
        return self.session_secret


__all__ = [
    "DEFAULT_GATEWAY_SCOPES",
    "FileStorageConfigModel",
    "GitLabAuthConfigModel",
    "MIN_SESSION_SECRET_LENGTH",
    "OAuthConfigModel",
    "SqliteStorageConfigModel",
    "StorageConfigModel",
]
