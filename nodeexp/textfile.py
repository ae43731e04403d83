"""Metrics read from *.prom files in a directory."""

from __future__ import annotations

import logging
import os
from typing import Iterator

from nodeexp.metrics import (
    Collector,
    ConstHistogram,
    ConstSummary,
    Desc,
    Metric,
    ValueType,
    register_collector,
)
from nodeexp.textparse import MetricFamily, MetricType, ParseError, parse_text

_log = logging.getLogger(__name__)

MTIME_DESC = Desc(
    "node_textfile_mtime_seconds",
    "Unixtime mtime of textfiles successfully read.",
    ("file",),
)
SCRAPE_ERROR_DESC = Desc(
    "node_textfile_scrape_error",
    "1 if there was an error opening or reading a file, 0 otherwise",
)

_VALUE_TYPES = {
    MetricType.COUNTER: ValueType.COUNTER,
    MetricType.GAUGE: ValueType.GAUGE,
    MetricType.UNTYPED: ValueType.UNTYPED,
}


def has_timestamps(families) -> bool:
    """Report whether any sample carries a client-side timestamp."""
    return any(
        sample.timestamp_ms is not None
        for family in families.values()
        for sample in family.samples
    )


def convert_metric_family(family: MetricFamily) -> list:
    """Turn a parsed family into constant metrics, filling missing labels with ''."""
    all_names: list[str] = []
    for sample in family.samples:
        for name in sample.labels:
            if name not in all_names:
                all_names.append(name)

    result = []
    help_text = family.help or ""
    for sample in family.samples:
        if sample.timestamp_ms is not None:
            _log.warning("Ignoring unsupported custom timestamp on textfile collector metric %s", family.name)
        names = list(sample.labels)
        values = list(sample.labels.values())
        for name in all_names:
            if name not in sample.labels:
                names.append(name)
                values.append("")
        desc = Desc(family.name, help_text, tuple(names))
        if family.type is MetricType.SUMMARY:
            result.append(ConstSummary(desc, sample.count, sample.sum, dict(sample.quantiles), tuple(values)))
        elif family.type is MetricType.HISTOGRAM:
            result.append(ConstHistogram(desc, sample.count, sample.sum, dict(sample.buckets), tuple(values)))
        else:
            result.append(Metric(desc, _VALUE_TYPES[family.type], sample.value, tuple(values)))
    return result


class TextFileCollector(Collector):
    """Expose metrics from *.prom files in a directory."""

    def __init__(self, directory: str = "", mtime: float | None = None) -> None:
        self.path = directory
        # Fixed mtime for predictable output.
        self.mtime = mtime

    def _process_file(self, name: str) -> tuple[list, int]:
        path = os.path.join(self.path, name)
        try:
            with open(path, encoding="utf-8") as stream:
                text = stream.read()
                try:
                    families = parse_text(text)
                except ParseError as exc:
                    raise ValueError(f"failed to parse textfile data from {path!r}: {exc}") from exc
                if has_timestamps(families):
                    raise ValueError(
                        f"textfile {path!r} contains unsupported client-side timestamps, skipping entire file"
                    )
                for family in families.values():
                    if family.help is None:
                        family.help = f"Metric read from {path}"
                metrics = [m for family in families.values() for m in convert_metric_family(family)]
                stat = os.fstat(stream.fileno())
        except OSError as exc:
            raise ValueError(f"failed to read textfile data file {path!r}: {exc}") from exc
        return metrics, stat.st_mtime_ns // 10**9

    def update(self) -> Iterator:
        errored = False
        names: list[str] = []
        try:
            names = sorted(os.listdir(self.path)) if self.path else []
        except OSError as exc:
            errored = True
            _log.error("failed to read textfile collector directory %s: %s", self.path, exc)

        mtimes: dict[str, int] = {}
        for name in names:
            if not name.endswith(".prom"):
                continue
            try:
                metrics, mtime = self._process_file(name)
            except ValueError as exc:
                errored = True
                _log.error("failed to collect textfile data from %s: %s", name, exc)
                continue
            yield from metrics
            mtimes[name] = mtime

        for name in sorted(mtimes):
            value = self.mtime if self.mtime is not None else float(mtimes[name])
            yield Metric(MTIME_DESC, ValueType.GAUGE, value, (name,))

        yield Metric(SCRAPE_ERROR_DESC, ValueType.GAUGE, 1.0 if errored else 0.0)


register_collector("textfile", True, TextFileCollector)