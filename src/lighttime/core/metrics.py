"""OpenTelemetry metrics instruments for calendar sync.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Instruments
-----------

  lighttime.calendar.sync_cycles          Counter  (label: outcome)
      Poller and force-sync cycles, labelled published|unchanged|all_failed|cleared|idle.

  lighttime.calendar.provider_errors      Counter  (labels: provider_type, kind)
      Per-provider failures recorded by the aggregator.

  lighttime.calendar.publishes            Counter
      Event-list publishes on the update topic.

  lighttime.calendar.fetch_duration_ms    Histogram (label: provider_type)
      Wall time of one provider fetch, including any refresh-and-retry.

When OTEL_EXPORTER_OTLP_ENDPOINT is not set every recording is a no-op.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "lighttime"


def init_metrics(service_name: str = "lighttime") -> metrics.Meter:
    """Install an OTLP-exporting MeterProvider when an endpoint is configured."""
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.debug("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Lazily-created sync instruments.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self) -> None:
        self.__cycles: metrics.Counter | None = None
        self.__provider_errors: metrics.Counter | None = None
        self.__publishes: metrics.Counter | None = None
        self.__fetch_duration: metrics.Histogram | None = None

    @property
    def _cycles(self) -> metrics.Counter:
        if self.__cycles is None:
            self.__cycles = get_meter().create_counter(
                name="lighttime.calendar.sync_cycles",
                description="Calendar sync cycles by outcome",
                unit="cycles",
            )
        return self.__cycles

    @property
    def _provider_errors(self) -> metrics.Counter:
        if self.__provider_errors is None:
            self.__provider_errors = get_meter().create_counter(
                name="lighttime.calendar.provider_errors",
                description="Per-provider fetch failures",
                unit="errors",
            )
        return self.__provider_errors

    @property
    def _publishes(self) -> metrics.Counter:
        if self.__publishes is None:
            self.__publishes = get_meter().create_counter(
                name="lighttime.calendar.publishes",
                description="Event list publishes on the update topic",
                unit="publishes",
            )
        return self.__publishes

    @property
    def _fetch_duration(self) -> metrics.Histogram:
        if self.__fetch_duration is None:
            self.__fetch_duration = get_meter().create_histogram(
                name="lighttime.calendar.fetch_duration_ms",
                description="Wall time of one provider fetch in milliseconds",
                unit="ms",
            )
        return self.__fetch_duration

    def record_cycle(self, outcome: str) -> None:
        self._cycles.add(1, {"outcome": outcome})

    def record_provider_error(self, provider_type: str, kind: str) -> None:
        self._provider_errors.add(1, {"provider_type": provider_type, "kind": kind})

    def record_publish(self) -> None:
        self._publishes.add(1)

    def record_fetch_duration(self, provider_type: str, duration_ms: float) -> None:
        self._fetch_duration.record(duration_ms, {"provider_type": provider_type})


sync_metrics = SyncMetrics()
