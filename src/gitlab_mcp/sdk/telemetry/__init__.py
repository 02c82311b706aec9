"""Gateway telemetry - a thin OpenTelemetry wrapper.

Quick Start:
    ```python
    from gitlab_mcp.sdk.telemetry import (
        TelemetryConfigModel, configure_telemetry, record_counter, traced_operation
    )

    configure_telemetry(TelemetryConfigModel(enabled=True, endpoint="http://localhost:4318"))

    with traced_operation("gitlab_mcp.flow.exchange", {"grant_type": "refresh_token"}) as span:
        span.set_attribute("result", "success")

    record_counter("gitlab_mcp.tokens.issued_total", attributes={"grant_type": "refresh_token"})
    ```
"""

from ._tracer import NoOpSpan, SpanWrapper, get_current_trace_id, traced_operation
from .config import configure_telemetry, is_telemetry_enabled, shutdown_telemetry
from .metrics import configure_metrics, get_metrics_manager, record_counter
from .models import Span, SpanKind, Status, StatusCode, TelemetryConfigModel

__all__ = [
    "NoOpSpan",
    "Span",
    "SpanKind",
    "SpanWrapper",
    "Status",
    "StatusCode",
    "TelemetryConfigModel",
    "configure_metrics",
    "configure_telemetry",
    "get_current_trace_id",
    "get_metrics_manager",
    "is_telemetry_enabled",
    "record_counter",
    "shutdown_telemetry",
    "traced_operation",
]
