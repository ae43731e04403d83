"""Current system time."""

from __future__ import annotations

import logging
import time
from typing import Iterator

from nodeexp.metrics import NAMESPACE, Collector, Desc, Metric, ValueType, register_collector

_log = logging.getLogger(__name__)


class TimeCollector(Collector):
    """Expose the system time in seconds since the epoch."""

    def __init__(self) -> None:
        self.desc = Desc(
            NAMESPACE + "_time_seconds",
            "System time in seconds since epoch (1970).",
        )

    def update(self) -> Iterator[Metric]:
        now = time.time_ns() / 1e9
        _log.debug("Return time now=%s", now)
        yield Metric(self.desc, ValueType.GAUGE, now)


register_collector("time", True, TimeCollector)