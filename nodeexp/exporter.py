"""HTTP exporter serving the metrics of the enabled collectors."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import socket
import threading
import time
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator, Mapping
from urllib.parse import parse_qs, urlsplit

# Imported for their collector registrations.
from nodeexp import clock, tcpstat, uname, zfs  # noqa: F401
from nodeexp.metrics import (
    PATHS,
    Desc,
    Metric,
    NoDataError,
    ValueType,
    disable_default_collectors,
    register_collector,
    registered_collectors,
    render,
)
from nodeexp.systemd import DEFAULT_UNIT_EXCLUDE, DEFAULT_UNIT_INCLUDE, SystemdCollector
from nodeexp.textfile import TextFileCollector
from nodeexp.vmstat import DEFAULT_FIELDS, VmStatCollector
from nodeexp.wifi import WifiCollector

_log = logging.getLogger("node_exporter")

VERSION = "1.1.0"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_TEXT_TYPE = "text/plain; charset=utf-8"
_HTML_TYPE = "text/html; charset=utf-8"

_BUILD_INFO_DESC = Desc(
    "node_exporter_build_info",
    "A metric with a constant '1' value labeled by version and pythonversion "
    "from which node_exporter was built.",
    ("version", "pythonversion"),
)
_IN_FLIGHT_DESC = Desc(
    "promhttp_metric_handler_requests_in_flight", "Current number of scrapes being served."
)
_REQUESTS_DESC = Desc(
    "promhttp_metric_handler_requests_total",
    "Total number of scrapes by HTTP status code.",
    ("code",),
)
_ERRORS_DESC = Desc(
    "promhttp_metric_handler_errors_total",
    "Total number of internal errors encountered by the promhttp metric handler.",
    ("cause",),
)
_CPU_DESC = Desc("process_cpu_seconds_total", "Total user and system CPU time spent in seconds.")


class NodeCollector:
    """The set of collectors serving one scrape configuration."""

    def __init__(self, filters=(), registry: Mapping | None = None) -> None:
        registry = dict(registered_collectors() if registry is None else registry)
        filters = list(filters)
        if filters:
            names = []
            for name in filters:
                if name not in registry:
                    raise ValueError(f"missing collector: {name}")
                if not registry[name][0]:
                    raise ValueError(f"disabled collector: {name}")
                if name not in names:
                    names.append(name)
        else:
            names = [name for name, (enabled, _) in registry.items() if enabled]
        self.collectors = {}
        for name in sorted(names):
            try:
                self.collectors[name] = registry[name][1]()
            except Exception as exc:
                raise ValueError(f"{name}: {exc}") from exc

    def collect(self) -> Iterator:
        """Yield the metrics of every collector, skipping those that fail."""
        for name, collector in self.collectors.items():
            start = time.monotonic()
            try:
                metrics = list(collector.update())
            except NoDataError as exc:
                _log.debug("collector %s returned no data: %s", name, exc)
                continue
            except Exception as exc:
                _log.error("collector %s failed after %.3fs: %s", name, time.monotonic() - start, exc)
                continue
            _log.debug("collector %s succeeded in %.3fs", name, time.monotonic() - start)
            yield from metrics


class MetricsHandler:
    """Serve scrapes, creating filtered collector sets on request."""

    def __init__(
        self,
        include_exporter_metrics: bool = True,
        max_requests: int = 40,
        registry: Mapping | None = None,
    ) -> None:
        self.include_exporter_metrics = include_exporter_metrics
        self.max_requests = max_requests
        self._registry = registry
        self._lock = threading.Lock()
        self._limiter = threading.BoundedSemaphore(max_requests) if max_requests > 0 else None
        self._in_flight = 0
        self._requests = {"200": 0, "500": 0, "503": 0}
        self._errors = {"encoding": 0, "gathering": 0}
        try:
            self._unfiltered = NodeCollector(registry=registry)
        except ValueError as exc:
            raise RuntimeError(f"Couldn't create metrics handler: couldn't create collector: {exc}") from exc
        _log.info("Enabled collectors")
        for name in self._unfiltered.collectors:
            _log.info("collector=%s", name)

    def _exporter_metrics(self) -> list:
        with self._lock:
            errors = dict(self._errors)
            requests = dict(self._requests)
            in_flight = self._in_flight
        metrics = [Metric(_ERRORS_DESC, ValueType.COUNTER, v, (k,)) for k, v in errors.items()]
        if self.include_exporter_metrics:
            metrics.append(Metric(_IN_FLIGHT_DESC, ValueType.GAUGE, in_flight))
            metrics.extend(Metric(_REQUESTS_DESC, ValueType.COUNTER, v, (k,)) for k, v in requests.items())
            times = os.times()
            metrics.append(Metric(_CPU_DESC, ValueType.COUNTER, times.user + times.system))
        return metrics

    def _gather(self, node: NodeCollector) -> tuple[int, str, str]:
        if self._limiter is not None and not self._limiter.acquire(blocking=False):
            return 503, _TEXT_TYPE, (
                f"Limit of concurrent requests reached ({self.max_requests}), try again later.\n"
            )
        try:
            build_info = Metric(_BUILD_INFO_DESC, ValueType.GAUGE, 1, (VERSION, platform.python_version()))
            node_metrics = list(node.collect())
            body = render(self._exporter_metrics() + [build_info] + node_metrics)
        except Exception as exc:
            with self._lock:
                self._errors["encoding"] += 1
            _log.error("error encoding metrics: %s", exc)
            return 500, _TEXT_TYPE, f"An error has occurred while serving metrics:\n\n{exc}"
        finally:
            if self._limiter is not None:
                self._limiter.release()
        return 200, CONTENT_TYPE, body

    def handle(self, query="") -> tuple[int, str, str]:
        """Answer a scrape; query holds the URL query string or a parsed mapping."""
        if isinstance(query, str):
            filters = parse_qs(query, keep_blank_values=True).get("collect[]", [])
        else:
            filters = list(query.get("collect[]", []))
        _log.debug("collect query: filters=%s", filters)

        if filters:
            try:
                node = NodeCollector(filters, self._registry)
            except ValueError as exc:
                _log.warning("Couldn't create filtered metrics handler: %s", exc)
                return 400, _TEXT_TYPE, (
                    f"Couldn't create filtered metrics handler: couldn't create collector: {exc}"
                )
        else:
            node = self._unfiltered

        with self._lock:
            self._in_flight += 1
        try:
            status, content_type, body = self._gather(node)
        finally:
            with self._lock:
                self._in_flight -= 1
        with self._lock:
            code = str(status)
            self._requests[code] = self._requests.get(code, 0) + 1
        return status, content_type, body


def landing_page(metrics_path: str) -> str:
    """HTML page linking to the metrics path."""
    return (
        "<html>\n"
        "\t\t\t<head><title>Node Exporter</title></head>\n"
        "\t\t\t<body>\n"
        "\t\t\t<h1>Node Exporter</h1>\n"
        f'\t\t\t<p><a href="{metrics_path}">Metrics</a></p>\n'
        "\t\t\t</body>\n"
        "\t\t\t</html>"
    )


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _make_server(address: str, metrics_path: str, handler: MetricsHandler) -> ThreadingHTTPServer:
    host, port = _split_address(address)

    class RequestHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            url = urlsplit(self.path)
            if url.path == metrics_path:
                status, content_type, body = handler.handle(url.query)
            else:
                status, content_type, body = 200, _HTML_TYPE, landing_page(metrics_path)
            data = body.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format: str, *args) -> None:
            _log.debug("%s - %s", self.address_string(), format % args)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET
        daemon_threads = True

    return Server((host, port), RequestHandler)


def build_parser() -> argparse.ArgumentParser:
    """Command-line options of the exporter."""
    parser = argparse.ArgumentParser(prog="node_exporter")
    parser.add_argument("--version", action="version", version=f"node_exporter, version {VERSION}")
    parser.add_argument("--web.listen-address", dest="listen_address", default=":9100",
                        help="Address on which to expose metrics and web interface.")
    parser.add_argument("--web.telemetry-path", dest="metrics_path", default="/metrics",
                        help="Path under which to expose metrics.")
    parser.add_argument("--web.disable-exporter-metrics", dest="disable_exporter_metrics",
                        action="store_true",
                        help="Exclude metrics about the exporter itself (promhttp_*, process_*).")
    parser.add_argument("--web.max-requests", dest="max_requests", type=int, default=40,
                        help="Maximum number of parallel scrape requests. Use 0 to disable.")
    parser.add_argument("--collector.disable-defaults", dest="disable_defaults", action="store_true",
                        help="Set all collectors to disabled by default.")
    parser.add_argument("--log.level", dest="log_level", default="info",
                        choices=("debug", "info", "warn", "error"),
                        help="Only log messages with the given severity or above.")
    parser.add_argument("--path.procfs", dest="procfs", default=PATHS["procfs"], help="procfs mountpoint.")
    parser.add_argument("--path.sysfs", dest="sysfs", default=PATHS["sysfs"], help="sysfs mountpoint.")
    parser.add_argument("--path.rootfs", dest="rootfs", default=PATHS["rootfs"], help="rootfs mountpoint.")

    parser.add_argument("--collector.textfile.directory", dest="textfile_directory", default="",
                        help="Directory to read text files with metrics from.")
    parser.add_argument("--collector.vmstat.fields", dest="vmstat_fields", default=DEFAULT_FIELDS,
                        help="Regexp of fields to return for vmstat collector.")
    parser.add_argument("--collector.systemd.unit-include", dest="systemd_unit_include",
                        default=DEFAULT_UNIT_INCLUDE,
                        help="Regexp of systemd units to include. Units must both match include "
                             "and not match exclude to be included.")
    parser.add_argument("--collector.systemd.unit-whitelist", dest="systemd_unit_whitelist",
                        default="", help=argparse.SUPPRESS)
    parser.add_argument("--collector.systemd.unit-exclude", dest="systemd_unit_exclude",
                        default=DEFAULT_UNIT_EXCLUDE,
                        help="Regexp of systemd units to exclude. Units must both match include "
                             "and not match exclude to be included.")
    parser.add_argument("--collector.systemd.unit-blacklist", dest="systemd_unit_blacklist",
                        default="", help=argparse.SUPPRESS)
    parser.add_argument("--collector.systemd.enable-task-metrics", dest="systemd_task_metrics",
                        action="store_true",
                        help="Enables service unit tasks metrics unit_tasks_current and unit_tasks_max")
    parser.add_argument("--collector.systemd.enable-restarts-metrics", dest="systemd_restarts_metrics",
                        action="store_true", help="Enables service unit metric service_restart_total")
    parser.add_argument("--collector.systemd.enable-start-time-metrics", dest="systemd_start_time_metrics",
                        action="store_true", help="Enables service unit metric unit_start_time_seconds")
    parser.add_argument("--collector.wifi.fixtures", dest="wifi_fixtures", default="",
                        help="test fixtures to use for wifi collector metrics")

    for name, (enabled, _) in sorted(registered_collectors().items()):
        parser.add_argument(
            f"--collector.{name}",
            dest=f"collector_{name}",
            action=argparse.BooleanOptionalAction,
            default=None,
            help=f"Enable the {name} collector (default: {'enabled' if enabled else 'disabled'}).",
        )
    return parser


def _configure_collectors(args: argparse.Namespace) -> None:
    factories = {
        "textfile": partial(TextFileCollector, directory=args.textfile_directory),
        "vmstat": partial(VmStatCollector, fields=args.vmstat_fields),
        "systemd": partial(
            SystemdCollector,
            unit_include=args.systemd_unit_include,
            unit_exclude=args.systemd_unit_exclude,
            old_unit_include=args.systemd_unit_whitelist,
            old_unit_exclude=args.systemd_unit_blacklist,
            enable_task_metrics=args.systemd_task_metrics,
            enable_restarts_metrics=args.systemd_restarts_metrics,
            enable_start_time_metrics=args.systemd_start_time_metrics,
        ),
        "wifi": partial(WifiCollector, fixtures=args.wifi_fixtures),
    }
    current = registered_collectors()
    for name, factory in factories.items():
        if name in current:
            register_collector(name, current[name][0], factory)
    if args.disable_defaults:
        disable_default_collectors()
    for name, (_, factory) in registered_collectors().items():
        choice = getattr(args, f"collector_{name}", None)
        if choice is not None:
            register_collector(name, choice, factory)


def main(argv=None) -> int:
    """Run the exporter until interrupted."""
    args = build_parser().parse_args(argv)
    level = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING,
             "error": logging.ERROR}[args.log_level]
    logging.basicConfig(level=level, format="ts=%(asctime)s level=%(levelname)s msg=%(message)r")
    PATHS.update(procfs=args.procfs, sysfs=args.sysfs, rootfs=args.rootfs)
    _configure_collectors(args)

    _log.info("Starting node_exporter version=%s", VERSION)
    _log.info("Build context python=%s", platform.python_version())
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        _log.warning(
            "Node Exporter is running as root user. This exporter is designed to run as "
            "unprivileged user, root is not required."
        )

    try:
        handler = MetricsHandler(not args.disable_exporter_metrics, args.max_requests)
    except RuntimeError as exc:
        _log.error("%s", exc)
        return 1

    _log.info("Listening on address=%s", args.listen_address)
    try:
        server = _make_server(args.listen_address, args.metrics_path, handler)
    except (OSError, ValueError) as exc:
        _log.error("err=%s", exc)
        return 1
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())