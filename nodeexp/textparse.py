"""Parser for the text exposition format."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_FLOAT_RE = re.compile(
    r"[+-]?(?:inf|infinity|nan|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", re.IGNORECASE
)
_INT_RE = re.compile(r"[+-]?\d+")


class MetricType(Enum):
    """The declared type of a metric family."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"
    SUMMARY = "summary"
    HISTOGRAM = "histogram"


class ParseError(ValueError):
    """Raised for input that is not valid exposition text."""


@dataclass
class Sample:
    """One metric of a family: a value, or the parts of a summary or histogram."""

    labels: dict = field(default_factory=dict)
    value: float = 0.0
    timestamp_ms: int | None = None
    count: int = 0
    sum: float = 0.0
    quantiles: dict = field(default_factory=dict)
    buckets: dict = field(default_factory=dict)


@dataclass
class MetricFamily:
    """All samples sharing one metric name."""

    name: str
    help: str | None = None
    type: MetricType = MetricType.UNTYPED
    samples: list = field(default_factory=list)
    _typed: bool = field(default=False, repr=False, compare=False)
    _groups: dict = field(default_factory=dict, repr=False, compare=False)


def _parse_value(text: str) -> float:
    if not _FLOAT_RE.fullmatch(text):
        raise ParseError(f"invalid value: {text!r}")
    return float(text)


def _unescape(text: str, quotes: bool) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt == "\\":
            out.append("\\")
        elif nxt == "n":
            out.append("\n")
        elif nxt == '"' and quotes:
            out.append('"')
        else:
            raise ParseError(f"invalid escape sequence in {text!r}")
    return "".join(out)


def _skip_space(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_labels(line: str, pos: int) -> tuple[dict, int]:
    labels: dict = {}
    while True:
        pos = _skip_space(line, pos)
        if line[pos:pos + 1] == "}":
            return labels, pos + 1
        match = _LABEL_RE.match(line, pos)
        if not match:
            raise ParseError(f"invalid label name in {line!r}")
        name = match.group()
        pos = _skip_space(line, match.end())
        if line[pos:pos + 1] != "=":
            raise ParseError(f"expected '=' after label name in {line!r}")
        pos = _skip_space(line, pos + 1)
        if line[pos:pos + 1] != '"':
            raise ParseError(f"expected quoted label value in {line!r}")
        pos += 1
        start = pos
        while pos < len(line) and line[pos] != '"':
            pos += 2 if line[pos] == "\\" else 1
        if pos >= len(line):
            raise ParseError(f"unterminated label value in {line!r}")
        if name in labels:
            raise ParseError(f"duplicate label {name!r} in {line!r}")
        labels[name] = _unescape(line[start:pos], quotes=True)
        pos = _skip_space(line, pos + 1)
        if line[pos:pos + 1] == ",":
            pos += 1
        elif line[pos:pos + 1] != "}":
            raise ParseError(f"expected ',' or '}}' in {line!r}")


def _grouped(family: MetricFamily, labels: dict, reserved: str) -> Sample:
    rest = {k: v for k, v in labels.items() if k != reserved}
    key = tuple(sorted(rest.items()))
    sample = family._groups.get(key)
    if sample is None:
        sample = family._groups[key] = Sample(labels=rest)
        family.samples.append(sample)
    return sample


def parse_text(text: str) -> dict[str, MetricFamily]:
    """Parse exposition text into metric families keyed by name."""
    families: dict[str, MetricFamily] = {}

    def family(name: str) -> MetricFamily:
        return families.setdefault(name, MetricFamily(name))

    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            tokens = line[1:].split(None, 2)
            if len(tokens) < 2 or tokens[0] not in ("HELP", "TYPE"):
                continue
            name = tokens[1]
            if not _NAME_RE.fullmatch(name):
                raise ParseError(f"invalid metric name {name!r}")
            rest = tokens[2] if len(tokens) == 3 else ""
            fam = family(name)
            if tokens[0] == "HELP":
                if fam.help is not None:
                    raise ParseError(f"second HELP line for metric name {name!r}")
                fam.help = _unescape(rest, quotes=False)
            else:
                if fam._typed:
                    raise ParseError(f"second TYPE line for metric name {name!r}")
                if fam.samples:
                    raise ParseError(f"TYPE line for {name!r} must precede its samples")
                try:
                    fam.type = MetricType(rest.strip().lower())
                except ValueError:
                    raise ParseError(f"unknown metric type {rest!r}") from None
                fam._typed = True
            continue

        match = _NAME_RE.match(line)
        if not match:
            raise ParseError(f"invalid metric name in {line!r}")
        name = match.group()
        pos = match.end()
        labels: dict = {}
        if line[pos:pos + 1] == "{":
            labels, pos = _parse_labels(line, pos + 1)
        if pos < len(line) and line[pos] not in " \t":
            raise ParseError(f"expected whitespace after metric in {line!r}")
        fields = line[pos:].split()
        if len(fields) not in (1, 2):
            raise ParseError(f"expected value and optional timestamp in {line!r}")
        value = _parse_value(fields[0])
        timestamp = None
        if len(fields) == 2:
            if not _INT_RE.fullmatch(fields[1]):
                raise ParseError(f"invalid timestamp {fields[1]!r}")
            timestamp = int(fields[1])

        fam, suffix = None, ""
        for candidate in ("_bucket", "_sum", "_count"):
            if name.endswith(candidate):
                base = families.get(name[: -len(candidate)])
                allowed = (
                    (MetricType.HISTOGRAM,)
                    if candidate == "_bucket"
                    else (MetricType.HISTOGRAM, MetricType.SUMMARY)
                )
                if base is not None and base.type in allowed:
                    fam, suffix = base, candidate
                break
        if fam is None:
            fam = family(name)

        if fam.type in (MetricType.COUNTER, MetricType.GAUGE, MetricType.UNTYPED):
            sample = Sample(labels=labels, value=value)
            fam.samples.append(sample)
        elif fam.type is MetricType.SUMMARY:
            sample = _grouped(fam, labels, "quantile")
            if suffix == "":
                if "quantile" not in labels:
                    raise ParseError(f"summary sample without quantile in {line!r}")
                sample.quantiles[_parse_value(labels["quantile"])] = value
            elif suffix == "_sum":
                sample.sum = value
            else:
                sample.count = int(value)
        else:
            if suffix == "":
                raise ParseError(f"histogram sample without suffix in {line!r}")
            sample = _grouped(fam, labels, "le")
            if suffix == "_bucket":
                if "le" not in labels:
                    raise ParseError(f"histogram bucket without le in {line!r}")
                sample.buckets[_parse_value(labels["le"])] = int(value)
            elif suffix == "_sum":
                sample.sum = value
            else:
                sample.count = int(value)
        if timestamp is not None:
            sample.timestamp_ms = timestamp
    return families