"""TCP connection state counts from /proc/net/tcp and /proc/net/tcp6."""

from __future__ import annotations

import os
import re
from enum import IntEnum
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

_UNSIGNED_HEX = re.compile(r"[0-9a-fA-F]+")
_SIGNED_HEX = re.compile(r"[+-]?[0-9a-fA-F]+")


class TCPConnectionState(IntEnum):
    """Kernel TCP states plus the two queue byte counters."""

    ESTABLISHED = 1
    SYN_SENT = 2
    SYN_RECV = 3
    FIN_WAIT1 = 4
    FIN_WAIT2 = 5
    TIME_WAIT = 6
    CLOSE = 7
    CLOSE_WAIT = 8
    LAST_ACK = 9
    LISTEN = 10
    CLOSING = 11
    RX_QUEUED_BYTES = 12
    TX_QUEUED_BYTES = 13

    def __str__(self) -> str:
        return self.name.lower()


def _state_label(state) -> str:
    try:
        return str(TCPConnectionState(state))
    except ValueError:
        return "unknown"


def _parse_hex(text: str, bits: int, signed: bool) -> int:
    pattern = _SIGNED_HEX if signed else _UNSIGNED_HEX
    if not pattern.fullmatch(text):
        raise ValueError(f"invalid hexadecimal number: {text!r}")
    value = int(text, 16)
    if signed:
        low, high = -(1 << (bits - 1)), 1 << (bits - 1)
    else:
        low, high = 0, 1 << bits
    if not low <= value < high:
        raise ValueError(f"hexadecimal number out of range: {text!r}")
    return value


def _state_key(value: int):
    try:
        return TCPConnectionState(value)
    except ValueError:
        return value


def parse_tcp_stats(stream) -> dict:
    """Count connections per state and sum queue sizes in a /proc/net/tcp listing."""
    contents = stream.read()
    if isinstance(contents, bytes):
        contents = contents.decode()
    stats: dict = {}
    for line in contents.split("\n")[1:]:
        parts = line.split()
        if not parts:
            continue
        if len(parts) < 5:
            raise ValueError(f"invalid TCP stats line: {line!r}")
        queues = parts[4].split(":")
        if len(queues) < 2:
            raise ValueError(f"cannot parse tx_queues and rx_queues: {line!r}")
        tx = _parse_hex(queues[0], 64, signed=False)
        stats[TCPConnectionState.TX_QUEUED_BYTES] = stats.get(TCPConnectionState.TX_QUEUED_BYTES, 0.0) + tx
        rx = _parse_hex(queues[1], 64, signed=False)
        stats[TCPConnectionState.RX_QUEUED_BYTES] = stats.get(TCPConnectionState.RX_QUEUED_BYTES, 0.0) + rx
        state = _state_key(_parse_hex(parts[3], 8, signed=True))
        stats[state] = stats.get(state, 0.0) + 1
    return stats


def get_tcp_stats(path) -> dict:
    """Parse the TCP listing at path."""
    with open(path, encoding="utf-8") as stream:
        return parse_tcp_stats(stream)


class TCPStatCollector(Collector):
    """Expose the number of TCP connections in each state."""

    def __init__(self, proc_path: str | None = None) -> None:
        self._proc_path = proc_path
        self.desc = Desc(
            build_fq_name(NAMESPACE, "tcp", "connection_states"),
            "Number of connection states.",
            ("state",),
        )

    def update(self) -> Iterator[Metric]:
        proc = self._proc_path or PATHS["procfs"]
        stats = get_tcp_stats(os.path.join(proc, "net", "tcp"))
        tcp6 = os.path.join(proc, "net", "tcp6")
        if os.path.exists(tcp6):
            for state, value in get_tcp_stats(tcp6).items():
                stats[state] = stats.get(state, 0.0) + value
        for state in sorted(stats, key=int):
            yield Metric(self.desc, ValueType.GAUGE, stats[state], (_state_label(state),))


register_collector("tcpstat", False, TCPStatCollector)