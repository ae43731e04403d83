import os

from nodeexp.metrics import ValueType
from nodeexp.uname import Uname, UnameCollector, get_uname, split_node_name


def test_split_node_name_with_domain():
    assert split_node_name("host.example.com") == ("host", "example.com")


def test_split_node_name_without_domain():
    assert split_node_name("host") == ("host", "(none)")


def test_split_node_name_empty():
    assert split_node_name("") == ("", "(none)")


def test_get_uname_matches_os():
    info = os.uname()
    result = get_uname()
    assert result.sysname == info.sysname
    assert result.release == info.release
    assert result.machine == info.machine
    assert info.nodename.startswith(result.nodename)


def test_collector_update():
    metrics = list(UnameCollector().update())
    assert len(metrics) == 1
    metric = metrics[0]
    assert metric.desc.fq_name == "node_uname_info"
    assert metric.value == 1
    assert metric.value_type is ValueType.GAUGE
    assert Uname(*metric.label_values) == get_uname()