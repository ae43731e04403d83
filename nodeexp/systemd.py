"""Systemd unit, socket, timer and system state metrics."""

from __future__ import annotations

import logging
import re
import subprocess
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass
from typing import Callable, Iterator

from nodeexp.metrics import (
    NAMESPACE,
    Collector,
    Desc,
    Metric,
    ValueType,
    build_fq_name,
    register_collector,
)

_log = logging.getLogger(__name__)

# Minimum version providing the 'SystemState' manager property and the
# timer property 'LastTriggerUSec'.
MIN_SYSTEMD_VERSION_SYSTEM_STATE = 212

DEFAULT_UNIT_INCLUDE = ".+"
DEFAULT_UNIT_EXCLUDE = r".+\.(automount|device|mount|scope|slice)"

UNIT_STATES = ("active", "activating", "deactivating", "inactive", "failed")

_MAX_UINT64 = (1 << 64) - 1
_SUBSYSTEM = "systemd"
_BUS_NAME = "org.freedesktop.systemd1"
_MANAGER_PATH = "/org/freedesktop/systemd1"
_UNIT_PATH_PREFIX = "/org/freedesktop/systemd1/unit/"
_INTEGER_SIGNATURES = set("ybnqiuxth")
_VERSION_RE = re.compile(r"[0-9][0-9][0-9]")
_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True)
class Unit:
    """Status of one unit as listed by the service manager."""

    name: str
    description: str = ""
    load_state: str = ""
    active_state: str = ""
    sub_state: str = ""
    followed: str = ""
    path: str = ""
    job_id: int = 0
    job_type: str = ""
    job_path: str = "/"


def compile_unit_pattern(pattern: str) -> re.Pattern:
    """Compile a unit name pattern that must match the whole name."""
    return re.compile(f"^(?:{pattern})$")


def summarize_units(units) -> dict[str, float]:
    """Count units per active state; every known state is present."""
    summary = {state: 0.0 for state in UNIT_STATES}
    for unit in units:
        summary[unit.active_state] = summary.get(unit.active_state, 0.0) + 1.0
    return summary


def filter_units(units, include_pattern, exclude_pattern) -> list[Unit]:
    """Keep loaded units that match the include and not the exclude pattern."""
    filtered = []
    for unit in units:
        if (
            include_pattern.search(unit.name)
            and not exclude_pattern.search(unit.name)
            and unit.load_state == "loaded"
        ):
            _log.debug("Adding unit %s", unit.name)
            filtered.append(unit)
        else:
            _log.debug("Ignoring unit %s", unit.name)
    return filtered


def parse_systemd_version(text: str) -> int:
    """Extract the three-digit version from a version string, 0 if there is none."""
    match = _VERSION_RE.search(text)
    if match is None:
        _log.warning("Got invalid systemd version %r", text)
        return 0
    return int(match.group())


def _unit_path(name: str) -> str:
    if not name:
        return _UNIT_PATH_PREFIX + "_"
    escaped = "".join(
        ch if ch.isascii() and ch.isalnum() else "".join(f"_{b:02x}" for b in ch.encode())
        for ch in name
    )
    return _UNIT_PATH_PREFIX + escaped


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return _ESCAPE_RE.sub(r"\1", text[1:-1])
    return text


def _parse_property(output: str):
    signature, _, rest = output.strip().partition(" ")
    if signature in _INTEGER_SIGNATURES:
        return int(rest)
    if signature == "d":
        return float(rest)
    if signature == "b":
        return rest == "true"
    if signature in ("s", "o", "g"):
        return _unquote(rest)
    return rest


def _run(args: list[str]) -> str:
    return subprocess.run(args, capture_output=True, text=True, check=True).stdout


class SystemctlConnection:
    """Access to the service manager through systemctl and busctl."""

    def __init__(self, runner: Callable[[list[str]], str] | None = None) -> None:
        self._runner = runner or _run
        self.closed = False

    def __enter__(self) -> "SystemctlConnection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _call(self, args: list[str]) -> str:
        if self.closed:
            raise OSError("connection is closed")
        try:
            return self._runner(args)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise OSError(f"{args[0]} failed: {detail}") from exc
        except OSError as exc:
            raise OSError(f"{args[0]} failed: {exc}") from exc

    def _get_property(self, path: str, interface: str, name: str) -> str:
        return self._call(["busctl", "get-property", _BUS_NAME, path, interface, name])

    def list_units(self) -> list[Unit]:
        """Return the status of all units known to the manager."""
        output = self._call(
            ["systemctl", "list-units", "--all", "--plain", "--no-legend", "--no-pager", "--full"]
        )
        units = []
        for raw in output.splitlines():
            line = raw.strip().lstrip("●*").strip()
            parts = line.split(None, 4)
            if len(parts) < 4:
                continue
            name, load, active, sub = parts[:4]
            description = parts[4] if len(parts) > 4 else ""
            units.append(Unit(name, description, load, active, sub, path=_unit_path(name)))
        return units

    def get_unit_property(self, unit: str, name: str):
        """Return a property of the generic unit interface."""
        output = self._get_property(_unit_path(unit), f"{_BUS_NAME}.Unit", name)
        return _parse_property(output)

    def get_unit_type_property(self, unit: str, unit_type: str, name: str):
        """Return a property of a type-specific unit interface such as Service."""
        output = self._get_property(_unit_path(unit), f"{_BUS_NAME}.{unit_type}", name)
        return _parse_property(output)

    def get_manager_property(self, name: str) -> str:
        """Return a manager property in its printed form, strings keeping their quotes."""
        output = self._get_property(_MANAGER_PATH, f"{_BUS_NAME}.Manager", name)
        return output.strip().partition(" ")[2]

    def close(self) -> None:
        self.closed = True


def _desc(name: str, help_text: str, labels=("name",)) -> Desc:
    return Desc(build_fq_name(NAMESPACE, _SUBSYSTEM, name), help_text, tuple(labels))


def _get_systemd_version(factory) -> int:
    try:
        conn = factory()
    except OSError as exc:
        _log.warning("Unable to get systemd dbus connection, defaulting systemd version to 0: %s", exc)
        return 0
    with closing(conn):
        try:
            version = conn.get_manager_property("Version")
        except OSError:
            _log.warning("Unable to get systemd version property, defaulting to 0")
            return 0
    return parse_systemd_version(version)


class SystemdCollector(Collector):
    """Expose systemd unit states and statistics."""

    def __init__(
        self,
        unit_include: str = DEFAULT_UNIT_INCLUDE,
        unit_exclude: str = DEFAULT_UNIT_EXCLUDE,
        old_unit_include: str = "",
        old_unit_exclude: str = "",
        enable_task_metrics: bool = False,
        enable_restarts_metrics: bool = False,
        enable_start_time_metrics: bool = False,
        connection_factory: Callable[[], object] | None = None,
    ) -> None:
        if old_unit_exclude:
            if unit_exclude:
                raise ValueError(
                    "--collector.systemd.unit-blacklist and --collector.systemd.unit-exclude are mutually exclusive"
                )
            _log.warning(
                "--collector.systemd.unit-blacklist is DEPRECATED and will be removed in 2.0.0, "
                "use --collector.systemd.unit-exclude"
            )
            unit_exclude = old_unit_exclude
        if old_unit_include:
            if unit_include:
                raise ValueError(
                    "--collector.systemd.unit-whitelist and --collector.systemd.unit-include are mutually exclusive"
                )
            _log.warning(
                "--collector.systemd.unit-whitelist is DEPRECATED and will be removed in 2.0.0, "
                "use --collector.systemd.unit-include"
            )
            unit_include = old_unit_include

        self.enable_task_metrics = enable_task_metrics
        self.enable_restarts_metrics = enable_restarts_metrics
        self.enable_start_time_metrics = enable_start_time_metrics
        self._connection_factory = connection_factory or SystemctlConnection

        _log.info("Parsed flag --collector.systemd.unit-include: %s", unit_include)
        self.unit_include_pattern = compile_unit_pattern(unit_include)
        _log.info("Parsed flag --collector.systemd.unit-exclude: %s", unit_exclude)
        self.unit_exclude_pattern = compile_unit_pattern(unit_exclude)

        self.unit_desc = _desc("unit_state", "Systemd unit", ("name", "state", "type"))
        self.unit_start_time_desc = _desc(
            "unit_start_time_seconds", "Start time of the unit since unix epoch in seconds."
        )
        self.unit_tasks_current_desc = _desc(
            "unit_tasks_current", "Current number of tasks per Systemd unit"
        )
        self.unit_tasks_max_desc = _desc("unit_tasks_max", "Maximum number of tasks per Systemd unit")
        self.system_running_desc = _desc(
            "system_running",
            "Whether the system is operational (see 'systemctl is-system-running')",
            (),
        )
        self.summary_desc = _desc("units", "Summary of systemd unit states", ("state",))
        self.n_restarts_desc = _desc("service_restart_total", "Service unit count of Restart triggers")
        self.timer_last_trigger_desc = _desc(
            "timer_last_trigger_seconds", "Seconds since epoch of last trigger."
        )
        self.socket_accepted_desc = _desc(
            "socket_accepted_connections_total", "Total number of accepted socket connections"
        )
        self.socket_current_desc = _desc(
            "socket_current_connections", "Current number of socket connections"
        )
        self.socket_refused_desc = _desc(
            "socket_refused_connections_total", "Total number of refused socket connections"
        )
        self.version_desc = _desc("version", "Detected systemd version", ())

        self.systemd_version = _get_systemd_version(self._connection_factory)
        if self.systemd_version < MIN_SYSTEMD_VERSION_SYSTEM_STATE:
            _log.warning(
                "Detected systemd version %d is lower than minimum %d",
                self.systemd_version,
                MIN_SYSTEMD_VERSION_SYSTEM_STATE,
            )
            _log.warning("Some systemd state and timer metrics will not be available")

    def _unit_status_metrics(self, conn, units) -> list[Metric]:
        metrics = []
        for unit in units:
            service_type = ""
            unit_type = None
            if unit.name.endswith(".service"):
                unit_type = "Service"
            elif unit.name.endswith(".mount"):
                unit_type = "Mount"
            if unit_type is not None:
                try:
                    service_type = str(conn.get_unit_type_property(unit.name, unit_type, "Type"))
                except OSError as exc:
                    _log.debug("couldn't get unit type of %s: %s", unit.name, exc)
            for state in UNIT_STATES:
                active = 1.0 if state == unit.active_state else 0.0
                metrics.append(
                    Metric(self.unit_desc, ValueType.GAUGE, active, (unit.name, state, service_type))
                )
            if self.enable_restarts_metrics and unit.name.endswith(".service"):
                try:
                    restarts = conn.get_unit_type_property(unit.name, "Service", "NRestarts")
                except OSError as exc:
                    _log.debug("couldn't get unit NRestarts of %s: %s", unit.name, exc)
                else:
                    metrics.append(
                        Metric(self.n_restarts_desc, ValueType.COUNTER, restarts, (unit.name,))
                    )
        return metrics

    def _socket_metrics(self, conn, units) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".socket"):
                continue
            try:
                accepted = conn.get_unit_type_property(unit.name, "Socket", "NAccepted")
            except OSError as exc:
                _log.debug("couldn't get unit NAccepted of %s: %s", unit.name, exc)
                continue
            metrics.append(Metric(self.socket_accepted_desc, ValueType.COUNTER, accepted, (unit.name,)))
            try:
                current = conn.get_unit_type_property(unit.name, "Socket", "NConnections")
            except OSError as exc:
                _log.debug("couldn't get unit NConnections of %s: %s", unit.name, exc)
                continue
            metrics.append(Metric(self.socket_current_desc, ValueType.GAUGE, current, (unit.name,)))
            # NRefused appeared in systemd 239.
            try:
                refused = conn.get_unit_type_property(unit.name, "Socket", "NRefused")
            except OSError:
                continue
            metrics.append(Metric(self.socket_refused_desc, ValueType.GAUGE, refused, (unit.name,)))
        return metrics

    def _start_time_metrics(self, conn, units) -> list[Metric]:
        metrics = []
        for unit in units:
            if unit.active_state != "active":
                start_usec = 0
            else:
                try:
                    start_usec = conn.get_unit_property(unit.name, "ActiveEnterTimestamp")
                except OSError as exc:
                    _log.debug("couldn't get unit StartTimeUsec of %s: %s", unit.name, exc)
                    continue
            metrics.append(
                Metric(self.unit_start_time_desc, ValueType.GAUGE, start_usec / 1e6, (unit.name,))
            )
        return metrics

    def _tasks_metrics(self, conn, units) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".service"):
                continue
            for prop, desc in (
                ("TasksCurrent", self.unit_tasks_current_desc),
                ("TasksMax", self.unit_tasks_max_desc),
            ):
                try:
                    value = conn.get_unit_type_property(unit.name, "Service", prop)
                except OSError as exc:
                    _log.debug("couldn't get unit %s of %s: %s", prop, unit.name, exc)
                    continue
                if value != _MAX_UINT64:
                    metrics.append(Metric(desc, ValueType.GAUGE, value, (unit.name,)))
        return metrics

    def _timer_metrics(self, conn, units) -> list[Metric]:
        metrics = []
        for unit in units:
            if not unit.name.endswith(".timer"):
                continue
            try:
                last = conn.get_unit_type_property(unit.name, "Timer", "LastTriggerUSec")
            except OSError as exc:
                _log.debug("couldn't get unit LastTriggerUSec of %s: %s", unit.name, exc)
                continue
            metrics.append(
                Metric(self.timer_last_trigger_desc, ValueType.GAUGE, last / 1e6, (unit.name,))
            )
        return metrics

    def _system_state_metrics(self, conn) -> list[Metric]:
        try:
            state = conn.get_manager_property("SystemState")
        except OSError as exc:
            raise OSError(f"couldn't get system state: {exc}") from exc
        running = 1.0 if state == '"running"' else 0.0
        return [Metric(self.system_running_desc, ValueType.GAUGE, running)]

    def update(self) -> Iterator[Metric]:
        try:
            conn = self._connection_factory()
        except OSError as exc:
            raise OSError(f"couldn't get dbus connection: {exc}") from exc

        error: OSError | None = None
        state_metrics: list[Metric] = []
        with closing(conn):
            try:
                all_units = conn.list_units()
            except OSError as exc:
                raise OSError(f"couldn't get units: {exc}") from exc

            summary = summarize_units(all_units)
            summary_metrics = [
                Metric(self.summary_desc, ValueType.GAUGE, count, (state,))
                for state, count in summary.items()
            ]
            units = filter_units(all_units, self.unit_include_pattern, self.unit_exclude_pattern)

            tasks = [self._unit_status_metrics]
            if self.enable_start_time_metrics:
                tasks.append(self._start_time_metrics)
            if self.enable_task_metrics:
                tasks.append(self._tasks_metrics)
            new_enough = self.systemd_version >= MIN_SYSTEMD_VERSION_SYSTEM_STATE
            if new_enough:
                tasks.append(self._timer_metrics)
            tasks.append(self._socket_metrics)

            with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
                futures = [pool.submit(task, conn, units) for task in tasks]
                if new_enough:
                    try:
                        state_metrics = self._system_state_metrics(conn)
                    except OSError as exc:
                        error = exc
                results = [future.result() for future in futures]

        yield from summary_metrics
        for result in results:
            yield from result
        yield from state_metrics
        yield Metric(self.version_desc, ValueType.GAUGE, self.systemd_version)
        if error is not None:
            raise error


register_collector("systemd", False, SystemdCollector)