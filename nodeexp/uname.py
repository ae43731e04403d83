"""System identification as reported by uname."""

from __future__ import annotations

import os
import sys
from dataclasses import astuple, dataclass
from typing import Iterator

from nodeexp.metrics import (
    NAMESPACE,
    Collector,
    Desc,
    Metric,
    ValueType,
    build_fq_name,
    register_collector,
)

UNAME_DESC = Desc(
    build_fq_name(NAMESPACE, "uname", "info"),
    "Labeled system information as provided by the uname system call.",
    ("sysname", "release", "version", "machine", "nodename", "domainname"),
)

_NO_DOMAIN = "(none)"
_LINUX_DOMAIN_FILE = "/proc/sys/kernel/domainname"


@dataclass(frozen=True)
class Uname:
    """The fields of uname, in label order."""

    sysname: str
    release: str
    version: str
    machine: str
    nodename: str
    domainname: str


def split_node_name(nodename: str) -> tuple[str, str]:
    """Split a node name into host name and domain, the domain defaulting to '(none)'."""
    host, sep, domain = nodename.partition(".")
    return host, domain if sep else _NO_DOMAIN


def _linux_domain_name() -> str:
    try:
        with open(_LINUX_DOMAIN_FILE, encoding="utf-8") as stream:
            return stream.read().rstrip("\n")
    except OSError:
        return _NO_DOMAIN


def get_uname() -> Uname:
    """Return uname information for the running system."""
    info = os.uname()
    if sys.platform.startswith("linux"):
        nodename, domainname = info.nodename, _linux_domain_name()
    else:
        nodename, domainname = split_node_name(info.nodename)
    return Uname(info.sysname, info.release, info.version, info.machine, nodename, domainname)


class UnameCollector(Collector):
    """Expose uname information as labels of a constant gauge."""

    def update(self) -> Iterator[Metric]:
        yield Metric(UNAME_DESC, ValueType.GAUGE, 1, astuple(get_uname()))


register_collector("uname", True, UnameCollector)