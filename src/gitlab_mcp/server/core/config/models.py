from __future__ import annotations

from typing import Literal

from pydantic import Field

from gitlab_mcp.sdk.auth.models import OAuthConfigModel
from gitlab_mcp.sdk.models import SdkBaseModel
from gitlab_mcp.sdk.telemetry import TelemetryConfigModel


class GatewayLoggingConfigModel(SdkBaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    path: str | None = None
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    backup_count: int = Field(default=5, ge=0)


class GatewayConfigModel(SdkBaseModel):
    """Top-level gateway configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=8000, gt=0, lt=65536)
    # Public URL of the gateway; derived from each request when unset.
    base_url: str | None = None
    oauth: OAuthConfigModel = Field(default_factory=OAuthConfigModel)
    telemetry: TelemetryConfigModel = Field(default_factory=TelemetryConfigModel)
    logging: GatewayLoggingConfigModel = Field(default_factory=GatewayLoggingConfigModel)


__all__ = ["GatewayConfigModel", "GatewayLoggingConfigModel"]
