import math

import pytest

from nodeexp.metrics import (
    Collector,
    ConstHistogram,
    ConstSummary,
    Desc,
    Metric,
    ValueType,
    build_fq_name,
    disable_default_collectors,
    register_collector,
    registered_collectors,
    render,
)


@pytest.mark.parametrize(
    "parts, expected",
    [
        (("node", "tcp", "connection_states"), "node_tcp_connection_states"),
        (("node", "", "time_seconds"), "node_time_seconds"),
        (("", "", "dummy"), "dummy"),
        (("node", "vmstat", ""), ""),
    ],
)
def test_build_fq_name(parts, expected):
    assert build_fq_name(*parts) == expected


def test_metric_rejects_wrong_label_count():
    desc = Desc("m", "help", ("a", "b"))
    with pytest.raises(ValueError):
        Metric(desc, ValueType.GAUGE, 1.0, ("x",))


def test_desc_rejects_invalid_name():
    with pytest.raises(ValueError):
        Desc("1bad", "help")


def test_desc_rejects_duplicate_labels():
    with pytest.raises(ValueError):
        Desc("m", "help", ("a", "a"))


def test_render_gauge_has_help_type_and_sample():
    desc = Desc("m", "help text", ("a",))
    text = render([Metric(desc, ValueType.GAUGE, 1, ("x",))])
    lines = text.splitlines()
    assert lines[0] == "# HELP m help text"
    assert lines[1] == "# TYPE m gauge"
    assert lines[2] == 'm{a="x"} 1'


def test_render_sorts_label_names():
    desc = Desc("m", "h", ("zeta", "alpha"))
    text = render([Metric(desc, ValueType.COUNTER, 3, ("1", "2"))])
    assert 'm{alpha="2",zeta="1"} 3' in text.splitlines()


def test_render_sorts_families_and_samples():
    a = Desc("a_metric", "h", ("l",))
    b = Desc("b_metric", "h")
    text = render(
        [
            Metric(b, ValueType.GAUGE, 1),
            Metric(a, ValueType.GAUGE, 1, ("b",)),
            Metric(a, ValueType.GAUGE, 1, ("a",)),
        ]
    )
    assert text.index("a_metric") < text.index("b_metric")
    assert text.index('l="a"') < text.index('l="b"')


def test_render_drops_duplicates():
    desc = Desc("dummy_metric", "h")
    text = render([Metric(desc, ValueType.UNTYPED, 1), Metric(desc, ValueType.UNTYPED, 1)])
    samples = [line for line in text.splitlines() if not line.startswith("#")]
    assert samples == ["dummy_metric 1"]


def test_render_drops_type_conflicts():
    gauge = Desc("m", "h")
    text = render([Metric(gauge, ValueType.GAUGE, 1), Metric(gauge, ValueType.COUNTER, 2)])
    assert "# TYPE m gauge" in text
    assert "counter" not in text
    assert len([line for line in text.splitlines() if line.startswith("m ")]) == 1


def test_render_escapes_label_values_and_help():
    desc = Desc("m", "a\\b\nc", ("l",))
    text = render([Metric(desc, ValueType.GAUGE, 0, ('q"x\\y\nz',))])
    assert "# HELP m a\\\\b\\nc" in text
    assert 'm{l="q\\"x\\\\y\\nz"} 0' in text


def test_render_special_floats():
    desc = Desc("m", "h", ("l",))
    text = render(
        [
            Metric(desc, ValueType.GAUGE, math.nan, ("a",)),
            Metric(desc, ValueType.GAUGE, math.inf, ("b",)),
            Metric(desc, ValueType.GAUGE, 0.5, ("c",)),
            Metric(desc, ValueType.GAUGE, 1e6, ("d",)),
        ]
    )
    lines = text.splitlines()
    assert 'm{l="a"} NaN' in lines
    assert 'm{l="b"} +Inf' in lines
    assert 'm{l="c"} 0.5' in lines
    assert 'm{l="d"} 1e+06' in lines


def test_render_histogram_adds_inf_bucket():
    desc = Desc("h", "help")
    hist = ConstHistogram(desc, 4, 2.5, {0.5: 2, 1.0: 3})
    lines = render([hist]).splitlines()
    assert lines[1] == "# TYPE h histogram"
    assert lines[2:] == [
        'h_bucket{le="0.5"} 2',
        'h_bucket{le="1"} 3',
        'h_bucket{le="+Inf"} 4',
        "h_sum 2.5",
        "h_count 4",
    ]


def test_render_summary():
    desc = Desc("s", "help", ("k",))
    summary = ConstSummary(desc, 7, 3.5, {0.9: 2.0, 0.5: 1.0}, ("v",))
    lines = render([summary]).splitlines()
    assert lines[1] == "# TYPE s summary"
    assert lines[2:] == [
        's{k="v",quantile="0.5"} 1',
        's{k="v",quantile="0.9"} 2',
        's_sum{k="v"} 3.5',
        's_count{k="v"} 7',
    ]


def test_collector_is_abstract():
    with pytest.raises(TypeError):
        Collector()


def test_registry_and_disable_defaults():
    snapshot = registered_collectors()

    def factory():
        raise AssertionError("not called")

    try:
        register_collector("registry_probe", True, factory)
        entry = registered_collectors()["registry_probe"]
        assert entry == (True, factory)
        disable_default_collectors()
        assert all(not enabled for enabled, _ in registered_collectors().values())
    finally:
        register_collector("registry_probe", False, factory)
        for name, (enabled, original) in snapshot.items():
            register_collector(name, enabled, original)
    assert registered_collectors()["registry_probe"][0] is False