import io

import pytest

from nodeexp.metrics import NoDataError, render
from nodeexp.zfs import (
    ZfsCollector,
    metric_name,
    parse_pool_objset_file,
    parse_pool_procfs_file,
    parse_pool_state_file,
    parse_procfs_file,
)

HEADER = "6 1 0x01 91 4368 5266997922 97951858082072\nname                            type data\n"
IO_FIELDS = "nread    nwritten reads    writes   wtime    wlentime wupdate  rtime    rlentime rupdate  wcnt     rcnt\n"


def _kstat(**entries):
    return io.StringIO(HEADER + "".join(f"{k} 4 {v}\n" for k, v in entries.items()))


@pytest.mark.parametrize(
    "ext,name,value",
    [
        ("arcstats", "hits", 8772612),
        ("zfetchstats", "hits", 7067992),
        ("zil", "zil_commit_count", 10),
        ("vdev_cache_stats", "delegations", 40),
        ("xuio_stats", "onloan_read_buf", 32),
        ("dmu_tx", "dmu_tx_assigned", 3532844),
        ("abdstats", "linear_data_size", 223232),
        ("dbufstats", "hash_hits", 108807),
        ("dnodestats", "dnode_hold_alloc_hits", 37617),
        ("vdev_mirror_stats", "preferred_not_found", 94),
    ],
)
def test_procfs_parsing(ext, name, value):
    entries = dict(parse_procfs_file(_kstat(**{name: value, "other": 1}), ext))
    assert entries[f"kstat.zfs.misc.{ext}.{name}"] == value


def test_fm_parsing_dashed_name():
    stream = io.StringIO(HEADER + "erpt-dropped 4 18\nskipped 7 text\n")
    entries = parse_procfs_file(stream, "fm")
    assert entries == [("kstat.zfs.misc.fm.erpt-dropped", 18)]
    assert metric_name(entries[0][0]) == "erpt_dropped"


def test_procfs_without_header_fails():
    with pytest.raises(ValueError):
        parse_procfs_file(io.StringIO("hits 4 1\n"), "arcstats")


def test_procfs_bad_integer_fails():
    with pytest.raises(ValueError):
        parse_procfs_file(io.StringIO(HEADER + "hits 4 x\n"), "arcstats")


def test_zpool_parsing():
    stream = io.StringIO("12 3 0x00 1 80 1\n" + IO_FIELDS + "1884160 3206144 22 132 0 0 0 0 0 0 0 0\n")
    entries = parse_pool_procfs_file(stream, "proc/spl/kstat/zfs/pool1/io")
    assert ("pool1", "kstat.zfs.misc.io.nread", 1884160) in entries
    assert len(entries) == 12


def test_zpool_objset_parsing():
    text = HEADER + "dataset_name 7 pool1/dataset1\nwrites 4 4\nnread 4 0\n"
    entries = parse_pool_objset_file(io.StringIO(text), "proc/spl/kstat/zfs/pool1/objset-1")
    assert ("pool1", "pool1/dataset1", "kstat.zfs.misc.objset.writes", 4) in entries


def test_pool_state_parsing():
    entries = parse_pool_state_file(io.StringIO("DEGRADED\n"), "proc/spl/kstat/zfs/poolz1/state")
    active = {state: v for pool, state, v in entries if pool == "poolz1"}
    assert active["degraded"] == 1
    assert sum(active.values()) == 1
    assert set(active) == {"online", "degraded", "faulted", "offline", "removed", "unavail"}


def test_collector_no_zfs(tmp_path):
    with pytest.raises(NoDataError):
        list(ZfsCollector(str(tmp_path)).update())