"""Telemetry configuration for the gateway.

This module handles OpenTelemetry initialization so the rest of the code
base only deals with ``traced_operation`` and ``record_counter``.
"""

import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from .models import TelemetryConfigModel

logger = logging.getLogger(__name__)

_telemetry_enabled = False


def configure_telemetry(config: TelemetryConfigModel) -> None:
    """Configure tracing and, when requested, metrics.

    Args:
        config: Telemetry configuration
    """
    global _telemetry_enabled

    if not config.enabled:
        logger.info("Telemetry disabled, installing no-op tracer")
        _telemetry_enabled = False
        return

    resource = Resource.create(
        {
            "service.name": config.service_name,
            "service.version": config.service_version,
            "deployment.environment": config.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    if config.console_export:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("Added console span exporter")
    elif config.endpoint:
        endpoint = config.endpoint.rstrip("/")
        if not endpoint.endswith("/v1/traces"):
            endpoint = f"{endpoint}/v1/traces"
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=config.headers))
        )
        logger.info(f"Added OTLP span exporter to {endpoint}")
    else:
        logger.warning("Telemetry enabled but no endpoint configured")
        _telemetry_enabled = False
        return

    trace.set_tracer_provider(provider)
    _telemetry_enabled = True

    if config.metrics_enabled:
        from .metrics import configure_metrics

        configure_metrics(
            enabled=True,
            endpoint=config.endpoint,
            export_interval=config.export_interval,
            resource=resource,
        )

    logger.info("Telemetry configured successfully")


def shutdown_telemetry() -> None:
    """Shutdown telemetry and flush any pending spans."""
    global _telemetry_enabled

    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()

    from .metrics import configure_metrics

    configure_metrics(enabled=False)
    _telemetry_enabled = False
    logger.info("Telemetry shutdown complete")


def is_telemetry_enabled() -> bool:
    """Check if telemetry is currently enabled."""
    return _telemetry_enabled
