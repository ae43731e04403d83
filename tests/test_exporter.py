import threading
from functools import partial

import pytest

from nodeexp.exporter import (
    CONTENT_TYPE,
    MetricsHandler,
    NodeCollector,
    build_parser,
    landing_page,
    main,
)
from nodeexp.metrics import Collector, Desc, Metric, NoDataError, ValueType
from nodeexp.textfile import TextFileCollector


class _Static(Collector):
    def __init__(self, name, value=1.0):
        self.name = name
        self.value = value

    def update(self):
        yield Metric(Desc(self.name, "help"), ValueType.GAUGE, self.value)


class _NoData(Collector):
    def update(self):
        raise NoDataError("nothing")
        yield


class _Broken(Collector):
    def update(self):
        yield Metric(Desc("partial_metric", "help"), ValueType.GAUGE, 1)
        raise OSError("boom")


def _registry():
    return {
        "a": (True, partial(_Static, "a_metric")),
        "b": (True, partial(_Static, "b_metric", 2.0)),
        "off": (False, partial(_Static, "off_metric")),
    }


def test_handling_of_duplicated_metrics(tmp_path):
    content = "dummy_metric 1\n"
    (tmp_path / "a.prom").write_text(content)
    (tmp_path / "b.prom").write_text(content)
    registry = {"textfile": (True, partial(TextFileCollector, directory=str(tmp_path)))}
    handler = MetricsHandler(False, 40, registry=registry)
    status, content_type, body = handler.handle("")
    assert status == 200
    assert content_type == CONTENT_TYPE
    assert body.count("dummy_metric 1\n") == 1


def test_unfiltered_uses_enabled_collectors():
    handler = MetricsHandler(False, 40, registry=_registry())
    status, _, body = handler.handle("")
    assert status == 200
    assert "a_metric 1\n" in body
    assert "b_metric 2\n" in body
    assert "off_metric" not in body
    assert "node_exporter_build_info{" in body


def test_filtered_request():
    handler = MetricsHandler(False, 40, registry=_registry())
    status, _, body = handler.handle("collect[]=b")
    assert status == 200
    assert "b_metric 2\n" in body
    assert "a_metric" not in body


def test_filter_unknown_collector():
    handler = MetricsHandler(False, 40, registry=_registry())
    status, _, body = handler.handle("collect[]=nope")
    assert status == 400
    assert body == (
        "Couldn't create filtered metrics handler: couldn't create collector: missing collector: nope"
    )


def test_filter_disabled_collector():
    with pytest.raises(ValueError, match="disabled collector: off"):
        NodeCollector(["off"], _registry())


def test_node_collector_skips_failures():
    registry = {
        "good": (True, partial(_Static, "good_metric")),
        "nodata": (True, _NoData),
        "broken": (True, _Broken),
    }
    node = NodeCollector(registry=registry)
    assert sorted(node.collectors) == ["broken", "good", "nodata"]
    names = [m.desc.fq_name for m in node.collect()]
    assert names == ["good_metric"]


def test_factory_failure_raises():
    def factory():
        raise ValueError("bad flags")

    with pytest.raises(ValueError, match="x: bad flags"):
        NodeCollector(registry={"x": (True, factory)})


def test_exporter_metrics_count_requests():
    handler = MetricsHandler(True, 40, registry=_registry())
    handler.handle("")
    status, _, body = handler.handle("")
    assert status == 200
    assert 'promhttp_metric_handler_requests_total{code="200"} 1\n' in body
    assert "promhttp_metric_handler_requests_in_flight 1\n" in body


def test_exporter_metrics_disabled():
    handler = MetricsHandler(False, 40, registry=_registry())
    _, _, body = handler.handle("")
    assert "promhttp_metric_handler_requests_total" not in body
    assert 'promhttp_metric_handler_errors_total{cause="gathering"} 0\n' in body


def test_max_requests_limit():
    started = threading.Event()
    release = threading.Event()

    class Blocking(Collector):
        def update(self):
            started.set()
            release.wait(5)
            yield Metric(Desc("slow_metric", "help"), ValueType.GAUGE, 1)

    handler = MetricsHandler(False, 1, registry={"slow": (True, Blocking)})
    results = []
    worker = threading.Thread(target=lambda: results.append(handler.handle("")))
    worker.start()
    assert started.wait(5)
    status, _, body = handler.handle("")
    release.set()
    worker.join(5)
    assert status == 503
    assert body == "Limit of concurrent requests reached (1), try again later.\n"
    assert results[0][0] == 200


def test_landing_page():
    page = landing_page("/custom")
    assert '<a href="/custom">Metrics</a>' in page
    assert "<title>Node Exporter</title>" in page
    assert page.startswith("<html>")


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.listen_address == ":9100"
    assert args.metrics_path == "/metrics"
    assert args.max_requests == 40
    assert args.disable_exporter_metrics is False
    assert args.disable_defaults is False


def test_parser_collector_flags():
    args = build_parser().parse_args(
        ["--web.listen-address", "localhost:19100", "--no-collector.time", "--collector.tcpstat"]
    )
    assert args.listen_address == "localhost:19100"
    assert args.collector_time is False
    assert args.collector_tcpstat is True


def test_main_rejects_bad_address():
    assert main(["--web.listen-address", "not-an-address", "--log.level", "error"]) == 1