"""ZFS kstat statistics from /proc/spl/kstat/zfs."""

from __future__ import annotations

import glob
import logging
import os
import re
from typing import Iterator

from nodeexp.metrics import (
    NAMESPACE,
    PATHS,
    Collector,
    Desc,
    Metric,
    NoDataError,
    ValueType,
    build_fq_name,
    register_collector,
)

_log = logging.getLogger(__name__)

KSTAT_DATA_UINT64 = "4"
POOL_STATES = ("online", "degraded", "faulted", "offline", "removed", "unavail")

PROCPATH_BASE = "spl/kstat/zfs"
PATH_MAP = {
    "zfs_abd": "abdstats",
    "zfs_arc": "arcstats",
    "zfs_dbuf": "dbuf_stats",
    "zfs_dmu_tx": "dmu_tx",
    "zfs_dnode": "dnodestats",
    "zfs_fm": "fm",
    "zfs_vdev_cache": "vdev_cache_stats",
    "zfs_vdev_mirror": "vdev_mirror_stats",
    "zfs_xuio": "xuio_stats",
    "zfs_zfetch": "zfetchstats",
    "zfs_zil": "zil",
}

_UINT_RE = re.compile(r"\d+")


class ZfsNotAvailableError(Exception):
    """ZFS or its statistics are not available."""

    def __init__(self, message: str = "ZFS / ZFS statistics are not available") -> None:
        super().__init__(message)


def _parse_uint(text: str, key: str) -> int:
    if not _UINT_RE.fullmatch(text) or int(text) >= 1 << 64:
        raise ValueError(f"could not parse expected integer value for {key!r}")
    return int(text)


def metric_name(sysctl: str) -> str:
    """Last dotted component of a sysctl name, with '-' replaced by '_'."""
    return sysctl.split(".")[-1].replace("-", "_")


def _is_header(parts: list[str]) -> bool:
    return parts == ["name", "type", "data"]


def parse_procfs_file(stream, fmt_ext: str) -> list[tuple[str, int]]:
    """Return (sysctl, value) for each uint64 entry of a kstat file."""
    result = []
    started = False
    for line in stream:
        parts = line.split()
        if not started and _is_header(parts):
            started = True
            continue
        if not started or len(parts) < 3:
            continue
        if parts[1] == KSTAT_DATA_UINT64:
            key = f"kstat.zfs.misc.{fmt_ext}.{parts[0]}"
            result.append((key, _parse_uint(parts[2], key)))
    if not started:
        raise ValueError(f"did not parse a single {fmt_ext!r} metric")
    return result


def _path_parts(zpool_path: str) -> list[str]:
    elements = zpool_path.split("/")
    if len(elements) < 2:
        raise ValueError("zpool path did not return at least two elements")
    return elements


def parse_pool_procfs_file(stream, zpool_path: str) -> list[tuple[str, str, int]]:
    """Return (pool, sysctl, value) from a pool io kstat file."""
    result = []
    fields: list[str] | None = None
    for line in stream:
        parts = line.split()
        if fields is None:
            if len(parts) >= 12 and parts[0] == "nread":
                fields = parts
            continue
        elements = _path_parts(zpool_path)
        pool, kind = elements[-2], elements[-1]
        for index, name in enumerate(fields):
            key = f"kstat.zfs.misc.{kind}.{name}"
            if index >= len(parts):
                raise ValueError(f"could not parse expected integer value for {key!r}")
            result.append((pool, key, _parse_uint(parts[index], key)))
    return result


def parse_pool_objset_file(stream, zpool_path: str) -> list[tuple[str, str, str, int]]:
    """Return (pool, dataset, sysctl, value) from a pool objset kstat file."""
    result = []
    started = False
    pool = dataset = ""
    for line in stream:
        parts = line.split()
        if not started and _is_header(parts):
            started = True
            continue
        if not started or len(parts) < 3:
            continue
        if parts[0] == "dataset_name":
            pool = zpool_path.split("/")[-2]
            dataset = parts[2]
            continue
        if parts[1] == KSTAT_DATA_UINT64:
            key = f"kstat.zfs.misc.objset.{parts[0]}"
            result.append((pool, dataset, key, _parse_uint(parts[2], key)))
    if not started:
        raise ValueError(f"did not parse a single {pool} {dataset} metric")
    return result


def parse_pool_state_file(stream, zpool_path: str) -> list[tuple[str, str, int]]:
    """Return (pool, state, 1 if current else 0) for every known pool state."""
    first = stream.readline().rstrip("\r\n").lower()
    pool = _path_parts(zpool_path)[-2]
    return [(pool, state, int(first == state)) for state in POOL_STATES]


class ZfsCollector(Collector):
    """Expose ZFS kstat counters and per-pool statistics."""

    def __init__(self, proc_path: str | None = None) -> None:
        self._proc_path = proc_path

    def _proc(self, *parts: str) -> str:
        return os.path.join(self._proc_path or PATHS["procfs"], *parts)

    def _open(self, path: str):
        try:
            return open(path, encoding="utf-8")
        except OSError:
            _log.debug("Cannot open file for reading: %s", path)
            raise ZfsNotAvailableError() from None

    def _subsystem_metrics(self, subsystem: str) -> list[Metric]:
        with self._open(self._proc(PROCPATH_BASE, PATH_MAP[subsystem])) as stream:
            entries = parse_procfs_file(stream, PATH_MAP[subsystem])
        return [
            Metric(Desc(build_fq_name(NAMESPACE, subsystem, metric_name(s)), s), ValueType.UNTYPED, v)
            for s, v in entries
        ]

    def _pool_metrics(self) -> Iterator[Metric]:
        io_paths = sorted(glob.glob(self._proc(PROCPATH_BASE, "*", "io")))
        if not io_paths:
            return
        for path in io_paths:
            with self._open(path) as stream:
                entries = parse_pool_procfs_file(stream, path)
            for pool, s, v in entries:
                desc = Desc(build_fq_name(NAMESPACE, "zfs_zpool", metric_name(s)), s, ("zpool",))
                yield Metric(desc, ValueType.UNTYPED, v, (pool,))
        for path in sorted(glob.glob(self._proc(PROCPATH_BASE, "*", "objset-*"))):
            with self._open(path) as stream:
                entries = parse_pool_objset_file(stream, path)
            for pool, dataset, s, v in entries:
                desc = Desc(
                    build_fq_name(NAMESPACE, "zfs_zpool_dataset", metric_name(s)), s, ("zpool", "dataset")
                )
                yield Metric(desc, ValueType.UNTYPED, v, (pool, dataset))
        state_paths = sorted(glob.glob(self._proc(PROCPATH_BASE, "*", "state")))
        if not state_paths:
            _log.debug("Not found pool state files")
        state_desc = Desc(
            build_fq_name(NAMESPACE, "zfs_zpool", "state"), "kstat.zfs.misc.state", ("zpool", "state")
        )
        for path in state_paths:
            with self._open(path) as stream:
                entries = parse_pool_state_file(stream, path)
            for pool, state, active in entries:
                yield Metric(state_desc, ValueType.GAUGE, active, (pool, state))

    def update(self) -> Iterator[Metric]:
        if not os.path.exists(self._proc(PROCPATH_BASE)):
            _log.debug("%s", ZfsNotAvailableError())
            raise NoDataError("ZFS statistics are not available")
        for subsystem in sorted(PATH_MAP):
            try:
                metrics = self._subsystem_metrics(subsystem)
            except ZfsNotAvailableError as exc:
                _log.debug("%s", exc)
                continue
            yield from metrics
        yield from self._pool_metrics()


register_collector("zfs", True, ZfsCollector)