"""Labelled in-process metric collectors and a registry with text exposition."""

from __future__ import annotations

import bisect
import math
import threading
from typing import Iterable, NamedTuple

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class Sample(NamedTuple):
    """One exposed value of a collector."""

    name: str
    labels: dict[str, str]
    value: float


def _full_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{key}="{_escape(val)}"' for key, val in labels.items())
    return "{" + inner + "}"


class _CounterChild:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only be increased")
        with self._lock:
            self.value += amount


class _GaugeChild:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self.value -= amount


class _HistogramChild:
    def __init__(self, buckets: tuple[float, ...]) -> None:
        self._lock = threading.Lock()
        self.buckets = buckets
        self.bucket_counts = [0] * len(buckets)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            self.bucket_counts[index] += 1
            self.count += 1
            self.sum += value


class _Metric:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help: str = "",
        labelnames: Iterable[str] = (),
        *,
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.name = _full_name(namespace, subsystem, name)
        self.help = help
        self.labelnames = tuple(labelnames)
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def _key(self, values: tuple) -> tuple[str, ...]:
        if len(values) != len(self.labelnames):
            raise ValueError(
                f"{self.name} expects {len(self.labelnames)} label values, got {len(values)}"
            )
        return tuple(str(value) for value in values)

    def _new_child(self):
        raise NotImplementedError

    def labels(self, *args):
        """Return the child for these label values, creating it if needed."""
        key = self._key(args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._new_child()
                self._children[key] = child
            return child

    def _existing(self, args: tuple):
        key = self._key(args)
        with self._lock:
            return self._children.get(key)

    def _items(self):
        with self._lock:
            return list(self._children.items())

    def _label_dict(self, key: tuple[str, ...]) -> dict[str, str]:
        return dict(zip(self.labelnames, key))


class Counter(_Metric):
    """A monotonically increasing value per label set."""

    kind = "counter"

    def _new_child(self) -> _CounterChild:
        return _CounterChild()

    def labels(self, *args) -> _CounterChild:
        return super().labels(*args)

    def value(self, *args) -> float:
        child = self._existing(args)
        return child.value if child is not None else 0.0

    def collect(self) -> list[Sample]:
        return [Sample(self.name, self._label_dict(key), child.value) for key, child in self._items()]


class Gauge(_Metric):
    """A value that can go up and down per label set."""

    kind = "gauge"

    def _new_child(self) -> _GaugeChild:
        return _GaugeChild()

    def labels(self, *args) -> _GaugeChild:
        return super().labels(*args)

    def value(self, *args) -> float:
        child = self._existing(args)
        return child.value if child is not None else 0.0

    def collect(self) -> list[Sample]:
        return [Sample(self.name, self._label_dict(key), child.value) for key, child in self._items()]


class Histogram(_Metric):
    """Bucketed observations per label set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str = "",
        labelnames: Iterable[str] = (),
        *,
        namespace: str = "",
        subsystem: str = "",
        buckets: Iterable[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help, labelnames, namespace=namespace, subsystem=subsystem)
        bounds = sorted(float(b) for b in buckets)
        if not bounds or not math.isinf(bounds[-1]):
            bounds.append(math.inf)
        self.buckets = tuple(bounds)

    def _new_child(self) -> _HistogramChild:
        return _HistogramChild(self.buckets)

    def labels(self, *args) -> _HistogramChild:
        return super().labels(*args)

    def count(self, *args) -> int:
        child = self._existing(args)
        return child.count if child is not None else 0

    def sum(self, *args) -> float:
        child = self._existing(args)
        return child.sum if child is not None else 0.0

    def collect(self) -> list[Sample]:
        samples = []
        for key, child in self._items():
            labels = self._label_dict(key)
            cumulative = 0
            for bound, amount in zip(child.buckets, child.bucket_counts):
                cumulative += amount
                samples.append(
                    Sample(f"{self.name}_bucket", {**labels, "le": _format_value(bound)}, cumulative)
                )
            samples.append(Sample(f"{self.name}_sum", labels, child.sum))
            samples.append(Sample(f"{self.name}_count", labels, child.count))
        return samples


class Registry:
    """Holds collectors by full name and renders them in text format."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, *args: _Metric) -> None:
        """Register collectors; a name may only be registered once."""
        with self._lock:
            for collector in args:
                if collector.name in self._collectors:
                    raise ValueError(f"collector {collector.name} is already registered")
            for collector in args:
                self._collectors[collector.name] = collector

    def get(self, name: str) -> _Metric:
        with self._lock:
            try:
                return self._collectors[name]
            except KeyError:
                raise KeyError(f"no collector named {name}") from None

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._collectors

    def expose(self) -> str:
        with self._lock:
            collectors = sorted(self._collectors.values(), key=lambda c: c.name)
        lines = []
        for collector in collectors:
            lines.append(f"# HELP {collector.name} {collector.help}")
            lines.append(f"# TYPE {collector.name} {collector.kind}")
            for sample in collector.collect():
                lines.append(f"{sample.name}{_format_labels(sample.labels)} {_format_value(sample.value)}")
        return "\n".join(lines) + ("\n" if lines else "")