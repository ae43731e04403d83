"""Metric descriptions, constant metrics, the text exposition format and the collector registry."""

from __future__ import annotations

import abc
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Iterator, Mapping

NAMESPACE = "node"

# Filesystem mount points read by the collectors; changed from the command line.
PATHS: dict[str, str] = {"procfs": "/proc", "sysfs": "/sys", "rootfs": "/"}

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


class ValueType(Enum):
    """The kind of a single-valued metric."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"


class NoDataError(Exception):
    """Raised by a collector that has nothing to report on this system."""


@dataclass(frozen=True)
class Desc:
    """Name, help text and label names shared by a set of metrics."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()
    const_labels: tuple[tuple[str, str], ...] = field(default=())

    def __post_init__(self) -> None:
        if not _METRIC_NAME_RE.fullmatch(self.fq_name):
            raise ValueError(f"{self.fq_name!r} is not a valid metric name")
        labels = tuple(self.variable_labels)
        const = self.const_labels
        if isinstance(const, Mapping):
            const = tuple(sorted(const.items()))
        else:
            const = tuple(sorted(tuple(pair) for pair in const))
        names = list(labels) + [name for name, _ in const]
        for name in names:
            if not _LABEL_NAME_RE.fullmatch(name) or name.startswith("__"):
                raise ValueError(f"{name!r} is not a valid label name")
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate label names in description of {self.fq_name!r}")
        object.__setattr__(self, "variable_labels", labels)
        object.__setattr__(self, "const_labels", const)


def _check_label_values(desc: Desc, values: Iterable[str]) -> tuple[str, ...]:
    values = tuple(values)
    if len(values) != len(desc.variable_labels):
        raise ValueError(
            f"{desc.fq_name}: expected {len(desc.variable_labels)} label values, got {len(values)}"
        )
    return values


def _label_pairs(desc: Desc, values: tuple[str, ...]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(list(zip(desc.variable_labels, values)) + list(desc.const_labels)))


@dataclass(frozen=True)
class Metric:
    """A counter, gauge or untyped sample with fixed label values."""

    desc: Desc
    value_type: ValueType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", _check_label_values(self.desc, self.label_values))
        object.__setattr__(self, "value", float(self.value))

    @property
    def type_name(self) -> str:
        return self.value_type.value

    def _lines(self, pairs: tuple[tuple[str, str], ...]) -> list[str]:
        return [_sample_line(self.desc.fq_name, "", pairs, None, self.value)]


@dataclass(frozen=True)
class ConstSummary:
    """A summary with a fixed count, sum and quantiles."""

    desc: Desc
    count: int
    sum: float
    quantiles: Mapping[float, float]
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", _check_label_values(self.desc, self.label_values))

    @property
    def type_name(self) -> str:
        return "summary"

    def _lines(self, pairs: tuple[tuple[str, str], ...]) -> list[str]:
        name = self.desc.fq_name
        lines = [
            _sample_line(name, "", pairs, ("quantile", _format_float(q)), self.quantiles[q])
            for q in sorted(self.quantiles)
        ]
        lines.append(_sample_line(name, "_sum", pairs, None, self.sum))
        lines.append(_sample_line(name, "_count", pairs, None, self.count))
        return lines


@dataclass(frozen=True)
class ConstHistogram:
    """A histogram with a fixed count, sum and cumulative buckets."""

    desc: Desc
    count: int
    sum: float
    buckets: Mapping[float, int]
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", _check_label_values(self.desc, self.label_values))

    @property
    def type_name(self) -> str:
        return "histogram"

    def _lines(self, pairs: tuple[tuple[str, str], ...]) -> list[str]:
        name = self.desc.fq_name
        bounds = sorted(self.buckets)
        lines = [
            _sample_line(name, "_bucket", pairs, ("le", _format_float(b)), self.buckets[b])
            for b in bounds
        ]
        if not bounds or not math.isinf(bounds[-1]):
            lines.append(_sample_line(name, "_bucket", pairs, ("le", "+Inf"), self.count))
        lines.append(_sample_line(name, "_sum", pairs, None, self.sum))
        lines.append(_sample_line(name, "_count", pairs, None, self.count))
        return lines


class Collector(abc.ABC):
    """Source of metrics for one subsystem."""

    @abc.abstractmethod
    def update(self) -> Iterator:
        """Yield the collector's current metrics."""


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts of a metric name with underscores."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _format_float(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign = "-" if value < 0 else ""
    parts = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(str(d) for d in parts.digits)
    nd = len(digits)
    dp = nd + parts.exponent
    exp = dp - 1
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if nd > 1 else "")
        return f"{sign}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if dp <= 0:
        return f"{sign}0.{'0' * -dp}{digits}"
    if dp >= nd:
        return f"{sign}{digits}{'0' * (dp - nd)}"
    return f"{sign}{digits[:dp]}.{digits[dp:]}"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _sample_line(name, suffix, pairs, extra, value) -> str:
    labels = list(pairs)
    if extra is not None:
        labels.append(extra)
    text = name + suffix
    if labels:
        text += "{" + ",".join(f'{k}="{_escape_label(v)}"' for k, v in labels) + "}"
    return f"{text} {_format_float(value)}\n"


@dataclass
class _Family:
    help: str
    type_name: str
    entries: list = field(default_factory=list)


def render(metrics) -> str:
    """Render metrics in the text exposition format.

    Families are sorted by name and samples by label values. A metric that
    repeats an earlier one, or disagrees with its family's type or help, is
    dropped, as a gatherer that continues on error would do.
    """
    families: dict[str, _Family] = {}
    seen: set = set()
    for metric in metrics:
        name = metric.desc.fq_name
        family = families.get(name)
        if family is None:
            family = families[name] = _Family(metric.desc.help, metric.type_name)
        elif family.help != metric.desc.help or family.type_name != metric.type_name:
            continue
        pairs = _label_pairs(metric.desc, metric.label_values)
        key = (name, pairs)
        if key in seen:
            continue
        seen.add(key)
        family.entries.append((pairs, metric))

    out: list[str] = []
    for name in sorted(families):
        family = families[name]
        out.append(f"# HELP {name} {_escape_help(family.help)}\n")
        out.append(f"# TYPE {name} {family.type_name}\n")
        for pairs, metric in sorted(family.entries, key=lambda e: tuple(v for _, v in e[0])):
            out.extend(metric._lines(pairs))
    return "".join(out)


_registry: dict[str, tuple[bool, Callable[[], Collector]]] = {}


def register_collector(name: str, enabled_by_default: bool, factory: Callable[[], Collector]) -> None:
    """Make a collector available under a name; the factory takes no arguments."""
    _registry[name] = (bool(enabled_by_default), factory)


def registered_collectors() -> dict[str, tuple[bool, Callable[[], Collector]]]:
    """Return a copy of the registry: name -> (enabled by default, factory)."""
    return dict(_registry)


def disable_default_collectors() -> None:
    """Mark every registered collector as disabled by default."""
    for name, (_, factory) in list(_registry.items()):
        _registry[name] = (False, factory)