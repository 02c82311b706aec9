"""
Metrics support using OpenTelemetry.

This module provides a simplified API for counters that wraps
OpenTelemetry's metrics API.
"""

import logging
from typing import Any

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import Counter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from gitlab_mcp.sdk.core import PACKAGE_NAME, PACKAGE_VERSION

logger = logging.getLogger(__name__)

_metrics_manager: "MetricsManager | None" = None


class MetricsManager:
    """Caches OpenTelemetry instruments by name."""

    def __init__(self, meter: metrics.Meter) -> None:
        self._meter = meter
        self._counters: dict[str, Counter] = {}

    def get_counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self._meter.create_counter(
                name, description=description, unit=unit
            )
        return self._counters[name]


def configure_metrics(
    *,
    enabled: bool = True,
    endpoint: str | None = None,
    export_interval: int = 60,
    resource: Resource | None = None,
) -> None:
    """Configure metrics collection.

    Args:
        enabled: Whether metrics are enabled
        endpoint: OTLP endpoint for metrics export
        export_interval: Export interval in seconds
        resource: OpenTelemetry resource shared with the tracer provider
    """
    global _metrics_manager

    if not enabled:
        _metrics_manager = None
        return

    if not endpoint:
        logger.warning("No OTLP endpoint configured for metrics")
        _metrics_manager = None
        return

    endpoint = endpoint.rstrip("/")
    exporter = OTLPMetricExporter(
        endpoint=endpoint if endpoint.endswith("/v1/metrics") else f"{endpoint}/v1/metrics",
    )
    reader = PeriodicExportingMetricReader(
        exporter=exporter, export_interval_millis=export_interval * 1000
    )
    provider = MeterProvider(
        resource=resource or Resource.create({"service.name": PACKAGE_NAME}),
        metric_readers=[reader],
    )
    metrics.set_meter_provider(provider)
    _metrics_manager = MetricsManager(metrics.get_meter(PACKAGE_NAME, PACKAGE_VERSION))
    logger.info(f"Configured OTLP metrics export to {endpoint}")


def get_metrics_manager() -> MetricsManager | None:
    """Get the global metrics manager, or None if metrics are disabled."""
    return _metrics_manager


def record_counter(
    name: str,
    value: int = 1,
    attributes: dict[str, Any] | None = None,
    description: str = "",
    unit: str = "1",
) -> None:
    """Record a counter metric.

    Never raises; a failure to record is logged at debug level.

    Args:
        name: Metric name
        value: Value to add (default: 1)
        attributes: Metric attributes/labels
        description: Metric description
        unit: Unit of measurement
    """
    if _metrics_manager is None:
        return

    try:
        counter = _metrics_manager.get_counter(name, description, unit)
        counter.add(value, attributes=attributes or {})
    except Exception as e:
        logger.debug(f"Failed to record counter {name}: {e}")
