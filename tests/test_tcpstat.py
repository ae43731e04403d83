import io

import pytest

from nodeexp.metrics import ValueType
from nodeexp.tcpstat import (
    TCPConnectionState,
    TCPStatCollector,
    get_tcp_stats,
    parse_tcp_stats,
)

FIXTURE = (
    "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt"
    "   uid  timeout inode\n"
    "   0: 00000000:0016 00000000:0000 0A 00000015:00000000 01:00000000 00000000"
    "     0        0 2740 1 ffff88003d3af3c0 100 0 0 10 0\n"
    "   1: 0F02000A:0016 0202000A:8B6B 01 00000015:00000001 02:000AC99B 00000000"
    "     0        0 3652 4 ffff88003d3ae040 21 4 31 47 46\n"
)

HEADER = "sl  local_address rem_address   st tx_queue rx_queue\n"


@pytest.mark.parametrize(
    "text",
    [
        "sl  local_address\n  0: 00000000:0016",
        HEADER + " 1: 0F02000A:0016 0202000A:8B6B 01 0000000000000001",
        HEADER + " 1: 0F02000A:0016 0202000A:8B6B 01 0000000x:00000001",
        HEADER + " 1: 0F02000A:0016 0202000A:8B6B 01 00000000:0000000x",
        HEADER + " 1: 0F02000A:0016 0202000A:8B6B 0H 00000000:00000001",
    ],
    ids=["too few fields", "missing colon", "tx parsing", "rx parsing", "state parsing"],
)
def test_parse_tcp_stats_errors(text):
    with pytest.raises(ValueError):
        parse_tcp_stats(io.StringIO(text))


def test_parse_tcp_stats_fixture():
    stats = parse_tcp_stats(io.StringIO(FIXTURE))
    assert int(stats[TCPConnectionState.ESTABLISHED]) == 1
    assert int(stats[TCPConnectionState.LISTEN]) == 1
    assert int(stats[TCPConnectionState.TX_QUEUED_BYTES]) == 42
    assert int(stats[TCPConnectionState.RX_QUEUED_BYTES]) == 1


def test_parse_tcp_stats_header_only_is_empty():
    assert parse_tcp_stats(io.StringIO(HEADER)) == {}


def test_get_tcp_stats_file_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_tcp_stats(tmp_path / "somewhere over the rainbow")


def test_state_names(tmp_path):
    net = tmp_path / "net"
    net.mkdir()
    (net / "tcp").write_text(HEADER + " 1: 0F02000A:0016 0202000A:8B6B 04 00000003:00000000\n")
    metrics = list(TCPStatCollector(proc_path=str(tmp_path)).update())
    values = {m.label_values[0]: m.value for m in metrics}
    assert values["fin_wait1"] == 1
    assert values["tx_queued_bytes"] == 3


def test_collector_sums_ipv4_and_ipv6(tmp_path):
    net = tmp_path / "net"
    net.mkdir()
    (net / "tcp").write_text(FIXTURE)
    (net / "tcp6").write_text(FIXTURE)
    metrics = list(TCPStatCollector(proc_path=str(tmp_path)).update())
    values = {m.label_values[0]: m.value for m in metrics}
    assert values["established"] == 2
    assert values["listen"] == 2
    assert values["tx_queued_bytes"] == 84
    assert values["rx_queued_bytes"] == 2
    assert all(m.desc.fq_name == "node_tcp_connection_states" for m in metrics)
    assert all(m.value_type is ValueType.GAUGE for m in metrics)


def test_collector_without_ipv6_and_unknown_state(tmp_path):
    net = tmp_path / "net"
    net.mkdir()
    (net / "tcp").write_text(HEADER + " 1: 0F02000A:0016 0202000A:8B6B 0E 00000000:00000000\n")
    values = {m.label_values[0]: m.value for m in TCPStatCollector(proc_path=str(tmp_path)).update()}
    assert values["unknown"] == 1


def test_collector_missing_tcp_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        list(TCPStatCollector(proc_path=str(tmp_path)).update())