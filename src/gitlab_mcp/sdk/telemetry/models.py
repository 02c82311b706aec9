"""Pydantic models and span types for gateway telemetry."""

from enum import Enum
from typing import Any, Protocol

from pydantic import Field

from gitlab_mcp.sdk.core import PACKAGE_NAME, PACKAGE_VERSION
from gitlab_mcp.sdk.models import SdkBaseModel


class StatusCode(Enum):
    """Span status codes."""

    UNSET = 0
    OK = 1
    ERROR = 2


class Status:
    """Span status: a code plus an optional description."""

    def __init__(self, status_code: StatusCode, description: str | None = None):
        self.status_code = status_code
        self.description = description


class SpanKind(Enum):
    """Type of span, mirroring OpenTelemetry's span kinds."""

    INTERNAL = 0
    SERVER = 1
    CLIENT = 2


class Span(Protocol):
    """Minimal interface for span objects yielded by ``traced_operation``."""

    def set_attribute(self, key: str, value: Any) -> None: ...

    def set_status(self, status: Status) -> None: ...

    def record_exception(self, exception: Exception) -> None: ...

    def is_recording(self) -> bool: ...


class TelemetryConfigModel(SdkBaseModel):
    """Telemetry configuration.

    Tracing and metrics share one OTLP endpoint. With ``console_export`` spans
    are printed to stdout instead, which is handy while developing locally.
    """

    enabled: bool = False
    endpoint: str | None = None
    service_name: str = PACKAGE_NAME
    service_version: str = PACKAGE_VERSION
    environment: str = "development"
    headers: dict[str, str] = Field(default_factory=dict)
    console_export: bool = False
    metrics_enabled: bool = True
    export_interval: int = Field(default=60, gt=0)
