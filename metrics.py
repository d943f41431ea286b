"""Prometheus-Metriken für Pod-Lifecycle-Events."""

import threading
from enum import Enum
from typing import Iterable, Mapping, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

# Namen der Pod-Counter
POD_CREATE_COUNTER = "created_pods"
POD_DELETE_COUNTER = "deleted_pods"

# Labels der Pod-Counter
TIME_METRIC_LABEL = "event_time"
POD_ID_LABEL = "pod_id"
POD_LABELS = (TIME_METRIC_LABEL, POD_ID_LABEL)

# Betriebs-Metriken
PREFIX = "pods_operator"
WATCH_ERRORS = f"{PREFIX}_watch_errors"
WATCH_RESYNCS = f"{PREFIX}_watch_resyncs"
WATCH_RESTARTS = f"{PREFIX}_watch_restarts"
HTTP_REQUESTS = f"{PREFIX}_http_requests"
HTTP_DURATION = f"{PREFIX}_http_requests_duration"


class Unit(str, Enum):
    # Zähler sind dimensionslos, das Suffix _total hängt prometheus_client an
    COUNT = ""
    SECONDS = "seconds"


def _full_name(name: str, unit: Unit) -> str:
    # prometheus_client streicht _total und hängt die Einheit an, falls sie fehlt
    name = name.removesuffix("_total")
    if unit.value and not name.endswith(f"_{unit.value}"):
        return f"{name}_{unit.value}"
    return name


class MetricsRegistry:
    """Prozessweiter Counter-Speicher auf Basis einer eigenen CollectorRegistry.

    Wird einmal beim Start erzeugt und an Reconciler und HTTP-App übergeben.
    Tests bauen sich jeweils eine eigene Instanz. Ohne mitgegebene
    Registry kommen die Prozess-, GC- und Plattform-Metriken dazu, wie sie
    die Default-Registry von prometheus_client auch hätte.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
            ProcessCollector(registry=registry)
            PlatformCollector(registry=registry)
            GCCollector(registry=registry)
        self.registry = registry
        self._counters: dict[str, Counter] = {}
        self._sample_names: dict[str, str] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def declare(
        self,
        name: str,
        description: str,
        unit: Unit = Unit.COUNT,
        labelnames: Iterable[str] = (),
    ) -> Counter:
        """Registriert einen Counter; ein zweiter Aufruf liefert den vorhandenen."""
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                counter = Counter(
                    name,
                    description,
                    labelnames=tuple(labelnames),
                    unit=unit.value,
                    registry=self.registry,
                )
                self._counters[name] = counter
                self._sample_names[name] = f"{_full_name(name, unit)}_total"
            return counter

    def declare_histogram(
        self,
        name: str,
        description: str,
        unit: Unit = Unit.SECONDS,
        labelnames: Iterable[str] = (),
    ) -> Histogram:
        with self._lock:
            histogram = self._histograms.get(name)
            if histogram is None:
                histogram = Histogram(
                    name,
                    description,
                    labelnames=tuple(labelnames),
                    unit=unit.value,
                    registry=self.registry,
                )
                self._histograms[name] = histogram
            return histogram

    def _counter(self, name: str) -> Counter:
        try:
            return self._counters[name]
        except KeyError:
            raise KeyError(f"counter {name!r} has not been declared") from None

    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, amount: float = 1) -> None:
        counter = self._counter(name)
        if labels:
            counter.labels(**labels).inc(amount)
        else:
            counter.inc(amount)

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        histogram = self._histograms[name]
        if labels:
            histogram.labels(**labels).observe(value)
        else:
            histogram.observe(value)

    def value(self, name: str, labels: Optional[Mapping[str, str]] = None) -> float:
        """Aktueller Wert einer Partition, 0 wenn sie noch nicht existiert."""
        self._counter(name)
        sample = self.registry.get_sample_value(self._sample_names[name], dict(labels or {}))
        return sample or 0.0

    def snapshot(self) -> bytes:
        return generate_latest(self.registry)


def declare_pod_counters(registry: MetricsRegistry) -> None:
    registry.declare(POD_DELETE_COUNTER, "The number of deleted pods", Unit.COUNT, POD_LABELS)
    registry.declare(POD_CREATE_COUNTER, "The number of created pods", Unit.COUNT, POD_LABELS)

    # Watch-Fehler
    registry.declare(WATCH_ERRORS, "Number of errors reported by the event watch stream")

    # Resyncs nach Reconnect oder 410 Gone
    registry.declare(WATCH_RESYNCS, "Number of times the event watch stream was re-established")

    # Watcher-Neustarts
    registry.declare(WATCH_RESTARTS, "Number of watcher restarts")

    registry.declare(
        HTTP_REQUESTS,
        "HTTP requests served, excluding probes and scrapes",
        labelnames=("method", "path", "status"),
    )
    registry.declare_histogram(
        HTTP_DURATION,
        "HTTP request latency, excluding probes and scrapes",
        labelnames=("method", "path", "status"),
    )
