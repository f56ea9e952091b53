from __future__ import annotations

import atexit
import logging
import re
import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)
_METRIC_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]+")


def _sanitize_metric_name(name: str) -> str:
    return _METRIC_NAME_RE.sub("_", name).strip("_") or "invalid_metric"


# name -> (unit, description) for every metric the engine emits
METRIC_CATALOG: dict[str, tuple[str, str]] = {
    "advisory_calls_total": ("1", "Advisory provider calls by outcome"),
    "advisory_call_latency_ms": ("ms", "Advisory provider call latency"),
    "advisory_retries_total": ("1", "Advisory retries by failure kind"),
    "advisory_fallback_total": ("1", "Advisories served by the offline fallback"),
    "preview_cycles_total": ("1", "Completed preview cycles"),
    "execution_cycles_total": ("1", "Completed execution cycles"),
    "execution_total_usd": ("USD", "Amount executed per cycle"),
    "execution_broadcasts_total": ("1", "Successful transaction broadcasts"),
    "execution_item_failures_total": ("1", "Approved items downgraded during settlement"),
    "execution_alerts_sent_total": ("1", "Execution alerts delivered to the webhook"),
    "scheduler_runs_total": ("1", "Scheduler runs by trigger"),
    "scheduler_run_duration_ms": ("ms", "Scheduler run duration"),
}


def describe_metric(name: str) -> dict[str, str]:
    entry = METRIC_CATALOG.get(name)
    if entry is None:
        return {}
    unit, description = entry
    return {"unit": unit, "description": description}


class Instrumentation:
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


class InMemoryInstrumentation(Instrumentation):
    """Keeps counters, histogram samples and span names in process."""

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.histograms: dict[str, list[float]] = {}
        self.spans: list[tuple[str, dict[str, Any]]] = []

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        del attrs
        self.counters[_sanitize_metric_name(name)] += value

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        del attrs
        self.histograms.setdefault(_sanitize_metric_name(name), []).append(value)

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        self.spans.append((name, dict(attrs or {})))
        yield


class OTelInstrumentation(Instrumentation):
    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        deployment_network: str | None = None,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        attributes = {"service.name": service_name}
        if deployment_network:
            attributes["treasury.network"] = deployment_network
        resource = Resource.create(attributes)

        span_exporter = (
            OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPSpanExporter()
        )
        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(service_name)

        metric_readers = []
        if metrics_exporter == "otlp":
            metric_exporter = (
                OTLPMetricExporter(endpoint=otlp_endpoint)
                if otlp_endpoint
                else OTLPMetricExporter()
            )
            metric_readers.append(PeriodicExportingMetricReader(metric_exporter))

        self._metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        metrics.set_meter_provider(self._metric_provider)
        self._meter = metrics.get_meter(service_name)
        self._counters: dict[str, Any] = {}
        self._histograms: dict[str, Any] = {}

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        safe_name = _sanitize_metric_name(name)
        counter = self._counters.get(safe_name)
        if counter is None:
            counter = self._meter.create_counter(safe_name, **describe_metric(safe_name))
            self._counters[safe_name] = counter
        counter.add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        safe_name = _sanitize_metric_name(name)
        histogram = self._histograms.get(safe_name)
        if histogram is None:
            histogram = self._meter.create_histogram(safe_name, **describe_metric(safe_name))
            self._histograms[safe_name] = histogram
        histogram.record(value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name) as span:
            for key, value in (attrs or {}).items():
                span.set_attribute(key, value)
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
_CONFIGURED_ONCE = False


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "treasurybot",
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    deployment_network: str | None = None,
) -> Instrumentation:
    global _INSTRUMENTATION, _CONFIGURED_ONCE
    with _LOCK:
        if _CONFIGURED_ONCE:
            return _INSTRUMENTATION
        _CONFIGURED_ONCE = True
        if not enabled:
            _INSTRUMENTATION = NoopInstrumentation()
            return _INSTRUMENTATION
        try:
            _INSTRUMENTATION = OTelInstrumentation(
                service_name=service_name,
                metrics_exporter=metrics_exporter,
                otlp_endpoint=otlp_endpoint,
                deployment_network=deployment_network,
            )
        except Exception:  # noqa: BLE001
            logger.exception("observability_setup_failed_falling_back_to_noop")
            _INSTRUMENTATION = NoopInstrumentation()
        return _INSTRUMENTATION


def set_instrumentation(instrumentation: Instrumentation) -> None:
    global _INSTRUMENTATION
    with _LOCK:
        _INSTRUMENTATION = instrumentation


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()


atexit.register(shutdown_instrumentation)
