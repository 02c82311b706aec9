"""Tracing functionality for the gateway SDK.

This module provides the core tracing API, wrapping OpenTelemetry's
tracer functionality.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status as OTelStatus
from opentelemetry.trace import StatusCode as OTelStatusCode

from gitlab_mcp.sdk.core import PACKAGE_NAME, PACKAGE_VERSION

from .models import Span, SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)

__all__ = [
    "NoOpSpan",
    "SpanWrapper",
    "get_current_trace_id",
    "traced_operation",
]

_STATUS_CODE_MAP = {
    StatusCode.UNSET: OTelStatusCode.UNSET,
    StatusCode.OK: OTelStatusCode.OK,
    StatusCode.ERROR: OTelStatusCode.ERROR,
}

_SPAN_KIND_MAP = {
    SpanKind.INTERNAL: trace.SpanKind.INTERNAL,
    SpanKind.SERVER: trace.SpanKind.SERVER,
    SpanKind.CLIENT: trace.SpanKind.CLIENT,
}


class NoOpSpan:
    """No-op span for when telemetry is disabled."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: Status) -> None:
        pass

    def record_exception(self, exception: Exception) -> None:
        pass

    def is_recording(self) -> bool:
        return False


class SpanWrapper:
    """Wraps an OpenTelemetry span to implement our Span protocol."""

    def __init__(self, otel_span: Any) -> None:
        self._span = otel_span

    def set_attribute(self, key: str, value: Any) -> None:
        if not self._span.is_recording() or value is None:
            return
        if isinstance(value, str | int | float | bool):
            self._span.set_attribute(key, value)
        elif isinstance(value, list | tuple) and all(
            isinstance(v, str | int | float | bool) for v in value
        ):
            self._span.set_attribute(key, list(value))
        else:
            self._span.set_attribute(key, str(value))

    def set_status(self, status: Status) -> None:
        if self._span.is_recording():
            otel_code = _STATUS_CODE_MAP.get(status.status_code, OTelStatusCode.UNSET)
            self._span.set_status(OTelStatus(otel_code, status.description))

    def record_exception(self, exception: Exception) -> None:
        if self._span.is_recording():
            self._span.record_exception(exception)

    def is_recording(self) -> bool:
        return bool(self._span.is_recording())


@contextmanager
def traced_operation(
    name: str,
    attributes: dict[str, Any] | None = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Context manager for tracing operations.

    Args:
        name: Operation name (e.g., "gitlab_mcp.auth.authenticate")
        attributes: Initial span attributes
        kind: Type of span (INTERNAL, SERVER, CLIENT)

    Yields:
        A span; a ``NoOpSpan`` when telemetry is disabled

    Example:
        ```python
        with traced_operation("gitlab_mcp.flow.poll", {"flow.kind": "device"}) as span:
            span.set_attribute("flow.status", "pending")
        ```
    """
    from .config import is_telemetry_enabled

    if not is_telemetry_enabled():
        yield NoOpSpan()
        return

    tracer = trace.get_tracer(PACKAGE_NAME, PACKAGE_VERSION)
    otel_kind = _SPAN_KIND_MAP.get(kind, trace.SpanKind.INTERNAL)

    with tracer.start_as_current_span(name, kind=otel_kind) as otel_span:
        span = SpanWrapper(otel_span)
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)

        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def get_current_trace_id() -> str | None:
    """Get the current trace ID for log correlation.

    Returns:
        Trace ID as hex string or None if not in a trace
    """
    span = trace.get_current_span()
    if span.is_recording():
        return format(span.get_span_context().trace_id, "032x")
    return None
