"""A small Prometheus-style metric model with text exposition parsing and rendering."""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import re
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

log = logging.getLogger(__name__)

EGRESS_ID_LABEL = "egress_id"
DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)

_TYPES = frozenset({"counter", "gauge", "histogram", "summary", "untyped"})
_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_SAMPLE_RE = re.compile(
    r"^([a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(.*)\})?\s+(\S+)(?:\s+(-?\d+))?\s*$"
)
_LABEL_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*(?:,|$)')
_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass
class Metric:
    """One sample: its full name, labels and value."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    timestamp_ms: Optional[int] = None


@dataclass
class MetricFamily:
    """All samples sharing a metric name, type and help text."""

    name: str
    type: str = "untyped"
    help: str = ""
    metrics: list[Metric] = field(default_factory=list)


Families = Union[Mapping[str, MetricFamily], Iterable[MetricFamily]]


def _families(families: Families) -> Iterable[MetricFamily]:
    if isinstance(families, Mapping):
        return families.values()
    return families


def _unescape(raw: str, allowed: str) -> str:
    def replace(match: re.Match) -> str:
        char = match.group(1)
        if char not in allowed:
            raise ValueError(f"invalid escape sequence \\{char}")
        return "\n" if char == "n" else char

    return _ESCAPE_RE.sub(replace, raw)


def _parse_labels(body: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    body = body.strip()
    pos = 0
    while pos < len(body):
        match = _LABEL_RE.match(body, pos)
        if match is None:
            raise ValueError(f"malformed labels: {body!r}")
        name = match.group(1)
        if name in labels:
            raise ValueError(f"duplicate label {name!r}")
        labels[name] = _unescape(match.group(2), '\\"n')
        pos = match.end()
    return labels


def _parse_value(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"invalid sample value {text!r}") from None


def _family_for(families: dict[str, MetricFamily], name: str) -> MetricFamily:
    if name in families:
        return families[name]
    for suffix in ("_bucket", "_sum", "_count"):
        if name.endswith(suffix):
            base = families.get(name[: -len(suffix)])
            if base is not None and base.type in ("histogram", "summary"):
                return base
    family = families[name] = MetricFamily(name)
    return family


def parse_text(text: str) -> dict[str, MetricFamily]:
    """Parse the Prometheus text exposition format into families keyed by name."""
    families: dict[str, MetricFamily] = {}
    typed: set[str] = set()
    for line_number, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parts = line[1:].split(None, 2)
            if len(parts) < 2 or parts[0] not in ("HELP", "TYPE"):
                continue
            keyword, name = parts[0], parts[1]
            if not _METRIC_NAME_RE.fullmatch(name):
                raise ValueError(f"line {line_number}: invalid metric name {name!r}")
            rest = parts[2] if len(parts) > 2 else ""
            family = families.setdefault(name, MetricFamily(name))
            if keyword == "HELP":
                family.help = _unescape(rest, "\\n")
                continue
            kind = rest.strip().lower()
            if kind not in _TYPES:
                raise ValueError(f"line {line_number}: unknown metric type {rest!r}")
            if name in typed:
                raise ValueError(f"line {line_number}: second TYPE line for {name}")
            if family.metrics:
                raise ValueError(f"line {line_number}: TYPE for {name} after its samples")
            typed.add(name)
            family.type = kind
            continue

        match = _SAMPLE_RE.match(line)
        if match is None:
            raise ValueError(f"line {line_number}: malformed sample {line!r}")
        name, label_body, value, timestamp = match.groups()
        try:
            labels = _parse_labels(label_body or "")
            sample_value = _parse_value(value)
        except ValueError as exc:
            raise ValueError(f"line {line_number}: {exc}") from None
        metric = Metric(
            name=name,
            labels=labels,
            value=sample_value,
            timestamp_ms=int(timestamp) if timestamp is not None else None,
        )
        _family_for(families, name).metrics.append(metric)
    return families


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _render_sample(metric: Metric) -> str:
    text = metric.name
    if metric.labels:
        pairs = ",".join(f'{k}="{_escape_label(v)}"' for k, v in metric.labels.items())
        text += "{" + pairs + "}"
    text += " " + _format_value(metric.value)
    if metric.timestamp_ms is not None:
        text += f" {metric.timestamp_ms}"
    return text


def render_text(families: Families) -> str:
    """Render families in the Prometheus text exposition format."""
    lines: list[str] = []
    for family in _families(families):
        if family.help:
            lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
        lines.append(f"# TYPE {family.name} {family.type}")
        lines.extend(_render_sample(metric) for metric in family.metrics)
    return "".join(line + "\n" for line in lines)


def apply_default_label(egress_id: str, families: Families) -> None:
    """Add an egress_id label to every metric that does not already have one."""
    for family in _families(families):
        for metric in family.metrics:
            metric.labels.setdefault(EGRESS_ID_LABEL, egress_id)


def deserialize_metrics(egress_id: str, text: str) -> list[MetricFamily]:
    """Parse a handler's metrics and tag them with its egress id.

    Unparseable input is logged and yields no families.
    """
    try:
        families = parse_text(text)
    except ValueError as exc:
        log.warning("failed to parse metrics from handler (egress_id=%s): %s", egress_id, exc)
        return []
    apply_default_label(egress_id, families)
    return list(families.values())


def merge_families(families: Iterable[MetricFamily]) -> list[MetricFamily]:
    """Combine families of the same name, sorted by name.

    Raises ValueError on a type conflict or a duplicated sample.
    """
    merged: dict[str, MetricFamily] = {}
    seen: set[tuple] = set()
    for family in families:
        target = merged.get(family.name)
        if target is None:
            target = merged[family.name] = MetricFamily(family.name, family.type, family.help)
        elif target.type != family.type:
            raise ValueError(
                f"metric {family.name} has conflicting types {target.type} and {family.type}"
            )
        for metric in family.metrics:
            key = (metric.name, tuple(sorted(metric.labels.items())))
            if key in seen:
                raise ValueError(f"duplicate sample {metric.name} {dict(key[1])}")
            seen.add(key)
            target.metrics.append(metric)
    return [merged[name] for name in sorted(merged)]


def _fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


class _Collector:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help_text: str = "",
        *,
        namespace: str = "",
        subsystem: str = "",
        const_labels: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.name = _fq_name(namespace, subsystem, name)
        if not _METRIC_NAME_RE.fullmatch(self.name):
            raise ValueError(f"invalid metric name {self.name!r}")
        self.help = help_text
        self.const_labels = {k: str(v) for k, v in (const_labels or {}).items()}
        for label in self.const_labels:
            if not _LABEL_NAME_RE.fullmatch(label):
                raise ValueError(f"invalid label name {label!r}")

    def _family(self) -> MetricFamily:
        return MetricFamily(self.name, self.kind, self.help)

    def collect(self) -> MetricFamily:
        raise NotImplementedError


class _Counter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value


class _Gauge:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        return self._value


class _Histogram:
    def __init__(self, buckets: Sequence[float]) -> None:
        self._lock = threading.Lock()
        self.buckets = buckets
        self._counts = [0] * len(buckets)
        self._count = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            index = bisect.bisect_left(self.buckets, value)
            if index < len(self._counts):
                self._counts[index] += 1
            self._count += 1
            self._sum += value

    def snapshot(self) -> tuple[list[int], int, float]:
        with self._lock:
            return list(self._counts), self._count, self._sum


class _LabeledCollector(_Collector):
    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Sequence[str],
        **kwargs,
    ) -> None:
        super().__init__(name, help_text, **kwargs)
        self.label_names = tuple(label_names)
        for label in self.label_names:
            if not _LABEL_NAME_RE.fullmatch(label):
                raise ValueError(f"invalid label name {label!r}")
            if label in self.const_labels:
                raise ValueError(f"label {label!r} is also a constant label")
        if len(set(self.label_names)) != len(self.label_names):
            raise ValueError("duplicate label names")
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], object] = {}

    def _new_child(self):
        raise NotImplementedError

    def _child(self, kwargs: Mapping[str, object]):
        if set(kwargs) != set(self.label_names):
            raise ValueError(
                f"expected labels {sorted(self.label_names)}, got {sorted(kwargs)}"
            )
        key = tuple(str(kwargs[name]) for name in self.label_names)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
        return child

    def _items(self) -> list[tuple[dict[str, str], object]]:
        with self._lock:
            items = list(self._children.items())
        return [
            (dict(sorted({**self.const_labels, **dict(zip(self.label_names, key))}.items())), child)
            for key, child in items
        ]


class CounterVec(_LabeledCollector):
    """A counter partitioned by label values."""

    kind = "counter"

    def _new_child(self) -> _Counter:
        return _Counter()

    def labels(self, **kwargs) -> _Counter:
        return self._child(kwargs)

    def collect(self) -> MetricFamily:
        family = self._family()
        family.metrics = [Metric(self.name, labels, child.value) for labels, child in self._items()]
        return family


class GaugeVec(_LabeledCollector):
    """A gauge partitioned by label values."""

    kind = "gauge"

    def _new_child(self) -> _Gauge:
        return _Gauge()

    def labels(self, **kwargs) -> _Gauge:
        return self._child(kwargs)

    def collect(self) -> MetricFamily:
        family = self._family()
        family.metrics = [Metric(self.name, labels, child.value) for labels, child in self._items()]
        return family


class HistogramVec(_LabeledCollector):
    """A histogram partitioned by label values."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Sequence[str],
        *,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
        **kwargs,
    ) -> None:
        if "le" in label_names or "le" in (kwargs.get("const_labels") or {}):
            raise ValueError("'le' is reserved for histogram buckets")
        super().__init__(name, help_text, label_names, **kwargs)
        bounds = [float(b) for b in buckets if not math.isinf(float(b))]
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.buckets = tuple(bounds)

    def _new_child(self) -> _Histogram:
        return _Histogram(self.buckets)

    def labels(self, **kwargs) -> _Histogram:
        return self._child(kwargs)

    def collect(self) -> MetricFamily:
        family = self._family()
        for labels, child in self._items():
            counts, count, total = child.snapshot()
            for upper, cumulative in zip(self.buckets, itertools.accumulate(counts)):
                family.metrics.append(
                    Metric(f"{self.name}_bucket", {**labels, "le": _format_value(upper)}, cumulative)
                )
            family.metrics.append(Metric(f"{self.name}_bucket", {**labels, "le": "+Inf"}, count))
            family.metrics.append(Metric(f"{self.name}_sum", dict(labels), total))
            family.metrics.append(Metric(f"{self.name}_count", dict(labels), count))
        return family


class GaugeFunc(_Collector):
    """A gauge whose value is read from a function at collection time."""

    kind = "gauge"

    def __init__(self, name: str, help_text: str, function: Callable[[], float], **kwargs) -> None:
        super().__init__(name, help_text, **kwargs)
        self.function = function

    def collect(self) -> MetricFamily:
        family = self._family()
        labels = dict(sorted(self.const_labels.items()))
        family.metrics = [Metric(self.name, labels, float(self.function()))]
        return family


class Collector(Protocol):
    name: str
    const_labels: dict[str, str]

    def collect(self) -> MetricFamily: ...


class Registry:
    """A set of collectors gathered together."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collectors: list[Collector] = []

    def register(self, *args: Collector) -> None:
        """Register collectors in order; a duplicate raises ValueError."""
        with self._lock:
            for collector in args:
                ident = (collector.name, frozenset(collector.const_labels.items()))
                for existing in self._collectors:
                    if existing is collector or (
                        existing.name,
                        frozenset(existing.const_labels.items()),
                    ) == ident:
                        raise ValueError(f"collector {collector.name} already registered")
                self._collectors.append(collector)

    def gather(self) -> list[MetricFamily]:
        with self._lock:
            collectors = list(self._collectors)
        return merge_families(collector.collect() for collector in collectors)


DEFAULT_REGISTRY = Registry()


class Gatherer(Protocol):
    def gather(self) -> list[MetricFamily]: ...


class GathererSource(Protocol):
    def get_gatherers(self) -> list[Gatherer]: ...


class MetricsService:
    """Aggregates the service's own metrics with those of its handler processes."""

    def __init__(
        self,
        pm: Optional[GathererSource] = None,
        registry: Optional[Registry] = None,
    ) -> None:
        self._pm = pm
        self._registry = registry if registry is not None else DEFAULT_REGISTRY
        self._lock = threading.Lock()
        self._pending: list[MetricFamily] = []

    def store_process_ended_metrics(self, egress_id: str, metrics: str) -> None:
        """Keep a finished handler's final metrics until the next gather."""
        families = deserialize_metrics(egress_id, metrics)
        with self._lock:
            self._pending.extend(families)

    def gather(self) -> list[MetricFamily]:
        with self._lock:
            pending, self._pending = self._pending, []
        sources: list[Iterable[MetricFamily]] = [self._registry.gather(), pending]
        if self._pm is not None:
            sources.extend(gatherer.gather() for gatherer in self._pm.get_gatherers())
        return merge_families(itertools.chain.from_iterable(sources))

    def render(self) -> str:
        return render_text(self.gather())