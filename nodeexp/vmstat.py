"""Selected fields of /proc/vmstat."""

from __future__ import annotations

import os
import re
from typing import Iterator

from nodeexp.metrics import (
    NAMESPACE,
    PATHS,
    Collector,
    Desc,
    Metric,
    ValueType,
    build_fq_name,
    register_collector,
)

DEFAULT_FIELDS = "^(oom_kill|pgpg|pswp|pg.*fault).*"
SUBSYSTEM = "vmstat"

_FLOAT_RE = re.compile(
    r"[+-]?(?:inf|infinity|nan|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", re.IGNORECASE
)


def _parse_float(text: str) -> float:
    if not _FLOAT_RE.fullmatch(text):
        raise ValueError(f"invalid number: {text!r}")
    return float(text)


def parse_vmstat(stream, pattern) -> list[tuple[str, float]]:
    """Return (field, value) pairs of the vmstat lines whose field matches pattern."""
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    result = []
    for line in stream:
        parts = line.split()
        if len(parts) < 2:
            raise ValueError(f"invalid vmstat line: {line!r}")
        value = _parse_float(parts[1])
        if regex.search(parts[0]):
            result.append((parts[0], value))
    return result


class VmStatCollector(Collector):
    """Expose /proc/vmstat fields matching a regular expression."""

    def __init__(self, fields: str = DEFAULT_FIELDS, proc_path: str | None = None) -> None:
        self.field_pattern = re.compile(fields)
        self._proc_path = proc_path

    def update(self) -> Iterator[Metric]:
        path = os.path.join(self._proc_path or PATHS["procfs"], "vmstat")
        with open(path, encoding="utf-8") as stream:
            entries = parse_vmstat(stream, self.field_pattern)
        for name, value in entries:
            desc = Desc(
                build_fq_name(NAMESPACE, SUBSYSTEM, name),
                f"/proc/vmstat information field {name}.",
            )
            yield Metric(desc, ValueType.UNTYPED, value)


register_collector("vmstat", True, VmStatCollector)