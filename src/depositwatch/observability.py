from __future__ import annotations

import atexit
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

SERVICE_NAME = "depositwatch"
METRIC_PREFIX = "depositwatch."
_METRIC_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


def metric_name(name: str) -> str:
    cleaned = _METRIC_NAME_RE.sub("_", name).strip("_") or "invalid_metric"
    return cleaned if cleaned.startswith(METRIC_PREFIX) else f"{METRIC_PREFIX}{cleaned}"


def _attributes(attrs: dict[str, Any] | None) -> dict[str, str | int | float | bool]:
    # OTel only accepts primitive attribute values; enums and None are stringified or dropped.
    clean: dict[str, str | int | float | bool] = {}
    for key, value in (attrs or {}).items():
        if value is None:
            continue
        clean[key] = value if isinstance(value, str | int | float | bool) else str(value)
    return clean


class Instrumentation:
    """No-op sink; explorer calls and batch runs report here unconditionally."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def flush(self) -> None:
        return None

    def shutdown(self) -> None:
        return None


class NoopInstrumentation(Instrumentation):
    pass


def _build_metric_readers(metrics_exporter: str, otlp_endpoint: str | None, prometheus_port: int) -> list[Any]:
    if metrics_exporter == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

        exporter = OTLPMetricExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPMetricExporter()
        return [PeriodicExportingMetricReader(exporter)]
    if metrics_exporter == "prometheus":
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        start_http_server(prometheus_port)
        return [PrometheusMetricReader()]
    return []


class OTelInstrumentation(Instrumentation):
    """OpenTelemetry meter and tracer shared by the explorer client and the batch loop.

    Instruments are created lazily on first use and cached by (kind, name);
    the cache is guarded because parallel currency groups report concurrently.
    """

    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        prometheus_port: int,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": service_name})

        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter())
        )
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(service_name)

        self._metric_provider = MeterProvider(
            resource=resource,
            metric_readers=_build_metric_readers(metrics_exporter, otlp_endpoint, prometheus_port),
        )
        metrics.set_meter_provider(self._metric_provider)
        self._meter = metrics.get_meter(service_name)
        self._instruments: dict[tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def _instrument(self, kind: str, name: str) -> Any:
        key = (kind, metric_name(name))
        with self._lock:
            instrument = self._instruments.get(key)
            if instrument is None:
                factory = self._meter.create_counter if kind == "counter" else self._meter.create_histogram
                instrument = factory(key[1])
                self._instruments[key] = instrument
        return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("counter", name).add(value, _attributes(attrs))

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("histogram", name).record(value, _attributes(attrs))

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(f"{SERVICE_NAME}.{name}", attributes=_attributes(attrs)):
            yield

    def flush(self) -> None:
        self._metric_provider.force_flush()
        self._trace_provider.force_flush()

    def shutdown(self) -> None:
        self.flush()
        self._metric_provider.shutdown()
        self._trace_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: Instrumentation = NoopInstrumentation()


def configure_instrumentation(
    *,
    enabled: bool,
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    prometheus_port: int = 9464,
) -> Instrumentation:
    """Install the process-wide sink; a previous OTel sink is shut down first."""
    global _INSTRUMENTATION
    with _LOCK:
        previous = _INSTRUMENTATION
        if not enabled:
            _INSTRUMENTATION = NoopInstrumentation()
        else:
            try:
                _INSTRUMENTATION = OTelInstrumentation(
                    service_name=SERVICE_NAME,
                    metrics_exporter=metrics_exporter,
                    otlp_endpoint=otlp_endpoint,
                    prometheus_port=prometheus_port,
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    "observability_setup_failed_falling_back_to_noop",
                    extra={"extra": {"metrics_exporter": metrics_exporter}},
                )
                _INSTRUMENTATION = NoopInstrumentation()
        if previous is not _INSTRUMENTATION:
            previous.shutdown()
        return _INSTRUMENTATION


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
