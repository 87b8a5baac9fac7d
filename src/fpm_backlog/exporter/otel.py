"""OpenTelemetry exporter – pushes queue depth gauges via OTLP/HTTP."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics.export import (
    Gauge,
    Metric,
    MetricExportResult,
    MetricsData,
    NumberDataPoint,
    ResourceMetrics,
    ScopeMetrics,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.util.instrumentation import InstrumentationScope

from .. import __version__
from ..config import OtelExporterConfig
from .base import BaseExporter, FailureKind, MetricRecord, SubmitError

logger = logging.getLogger(__name__)

_UNITS = {"Count": "1"}


class OtelExporter(BaseExporter):
    """Exports queue depth records to an OpenTelemetry endpoint.

    Records keep their own collection timestamps, so batches are handed to
    the OTLP exporter directly instead of going through a periodic reader.
    """

    def __init__(self, config: OtelExporterConfig, exporter: Any = None) -> None:
        self._config = config
        self.max_batch_size = config.max_batch_size
        self._resource = Resource.create({SERVICE_NAME: config.service_name})
        self._scope = InstrumentationScope("fpm_backlog", __version__)

        if exporter is None:
            exporter_kwargs: dict[str, Any] = {
                "endpoint": f"{config.endpoint.rstrip('/')}/v1/metrics",
                "timeout": config.timeout_seconds,
            }
            if config.headers:
                exporter_kwargs["headers"] = dict(config.headers)
            exporter = OTLPMetricExporter(**exporter_kwargs)
        self._exporter = exporter

        logger.info(
            "OtelExporter initialized → %s (service=%s)",
            config.endpoint,
            config.service_name,
        )

    def build_metrics_data(self, records: Sequence[MetricRecord]) -> MetricsData:
        """Group records by name into OTLP gauges."""
        by_name: dict[str, list[MetricRecord]] = {}
        for record in records:
            by_name.setdefault(record.name, []).append(record)

        metrics = []
        for name, group in by_name.items():
            points = [
                NumberDataPoint(
                    attributes=dict(r.dimensions),
                    start_time_unix_nano=int(r.timestamp * 1e9),
                    time_unix_nano=int(r.timestamp * 1e9),
                    value=r.value,
                )
                for r in group
            ]
            metrics.append(Metric(
                name=name,
                description="PHP-FPM listen socket queue depth",
                unit=_UNITS.get(group[0].unit.value, "1"),
                data=Gauge(data_points=points),
            ))

        return MetricsData(resource_metrics=[
            ResourceMetrics(
                resource=self._resource,
                scope_metrics=[ScopeMetrics(scope=self._scope, metrics=metrics, schema_url="")],
                schema_url="",
            )
        ])

    def submit(self, records: Sequence[MetricRecord]) -> None:
        try:
            result = self._exporter.export(self.build_metrics_data(records))
        except Exception as exc:  # noqa: BLE001 - exporter transport errors vary by version
            raise SubmitError(FailureKind.TRANSIENT, f"{type(exc).__name__}: {exc}") from exc
        if result is not MetricExportResult.SUCCESS:
            # the OTLP exporter does not say why; treat every failure as retryable
            raise SubmitError(FailureKind.TRANSIENT, f"OTLP export returned {result.name}")

    def shutdown(self) -> None:
        self._exporter.shutdown()
        logger.info("OtelExporter shut down")
