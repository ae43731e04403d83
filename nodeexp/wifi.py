"""WiFi interface, BSS and station statistics."""

from __future__ import annotations

import base64
import json
import logging
import os
from contextlib import closing
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator

from nodeexp.metrics import (
    NAMESPACE,
    Collector,
    Desc,
    Metric,
    NoDataError,
    ValueType,
    build_fq_name,
    register_collector,
)

_log = logging.getLogger(__name__)

_SUBSYSTEM = "wifi"
_STATION_LABELS = ("device", "mac_address")


class BSSStatus(IntEnum):
    """Association state of an interface with a BSS."""

    AUTHENTICATED = 0
    ASSOCIATED = 1
    IBSS_JOINED = 2


def _field(data, name: str, default=None):
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    if name in data:
        return data[name]
    wanted = name.lower()
    for key, value in data.items():
        if key.lower() == wanted:
            return value
    return default


def _mac(value) -> str:
    if not value:
        return ""
    raw = base64.b64decode(value, validate=True) if isinstance(value, str) else bytes(value)
    return ":".join(f"{b:02x}" for b in raw)


def _seconds(nanoseconds) -> float:
    return int(nanoseconds or 0) / 1e9


@dataclass(frozen=True)
class Interface:
    """A WiFi network interface."""

    index: int = 0
    name: str = ""
    hardware_addr: str = ""
    phy: int = 0
    device: int = 0
    type: int = 0
    frequency: int = 0

    @classmethod
    def from_json(cls, data) -> "Interface":
        return cls(
            index=int(_field(data, "Index", 0) or 0),
            name=str(_field(data, "Name", "") or ""),
            hardware_addr=_mac(_field(data, "HardwareAddr")),
            phy=int(_field(data, "PHY", 0) or 0),
            device=int(_field(data, "Device", 0) or 0),
            type=int(_field(data, "Type", 0) or 0),
            frequency=int(_field(data, "Frequency", 0) or 0),
        )


@dataclass(frozen=True)
class BSS:
    """The basic service set an interface is attached to."""

    ssid: str = ""
    bssid: str = ""
    beacon_interval: float = 0.0
    last_seen: float = 0.0
    status: int = BSSStatus.AUTHENTICATED

    @classmethod
    def from_json(cls, data) -> "BSS":
        return cls(
            ssid=str(_field(data, "SSID", "") or ""),
            bssid=_mac(_field(data, "BSSID")),
            beacon_interval=_seconds(_field(data, "BeaconInterval", 0)),
            last_seen=_seconds(_field(data, "LastSeen", 0)),
            status=int(_field(data, "Status", 0) or 0),
        )


@dataclass(frozen=True)
class StationInfo:
    """Statistics of a station associated with an interface; durations in seconds."""

    hardware_addr: str = ""
    connected: float = 0.0
    inactive: float = 0.0
    received_bytes: int = 0
    transmitted_bytes: int = 0
    received_packets: int = 0
    transmitted_packets: int = 0
    receive_bitrate: int = 0
    transmit_bitrate: int = 0
    signal: int = 0
    transmit_retries: int = 0
    transmit_failed: int = 0
    beacon_loss: int = 0

    @classmethod
    def from_json(cls, data) -> "StationInfo":
        def number(name: str) -> int:
            return int(_field(data, name, 0) or 0)

        return cls(
            hardware_addr=_mac(_field(data, "HardwareAddr")),
            connected=_seconds(_field(data, "Connected", 0)),
            inactive=_seconds(_field(data, "Inactive", 0)),
            received_bytes=number("ReceivedBytes"),
            transmitted_bytes=number("TransmittedBytes"),
            received_packets=number("ReceivedPackets"),
            transmitted_packets=number("TransmittedPackets"),
            receive_bitrate=number("ReceiveBitrate"),
            transmit_bitrate=number("TransmitBitrate"),
            signal=number("Signal"),
            transmit_retries=number("TransmitRetries"),
            transmit_failed=number("TransmitFailed"),
            beacon_loss=number("BeaconLoss"),
        )


def mhz_to_hz(mhz) -> float:
    """Convert megahertz to hertz."""
    return float(mhz) * 1000 * 1000


def bss_status_mode(status) -> str:
    """Name the mode implied by a BSS status: 'client', 'ad-hoc' or 'unknown'."""
    if status in (BSSStatus.AUTHENTICATED, BSSStatus.ASSOCIATED):
        return "client"
    if status == BSSStatus.IBSS_JOINED:
        return "ad-hoc"
    return "unknown"


class FixtureWifiStater:
    """WiFi statistics read from JSON files in a fixtures directory."""

    def __init__(self, fixtures: str) -> None:
        self.fixtures = fixtures
        self.closed = False

    def _load(self, *parts: str):
        if self.closed:
            raise ValueError("wifi fixture source is closed")
        with open(os.path.join(self.fixtures, *parts), encoding="utf-8") as stream:
            return json.load(stream)

    def interfaces(self) -> list[Interface]:
        data = self._load("interfaces.json") or []
        return [Interface.from_json(item) for item in data if item is not None]

    def bss(self, interface: Interface) -> BSS:
        return BSS.from_json(self._load(interface.name, "bss.json"))

    def station_info(self, interface: Interface) -> list[StationInfo]:
        data = self._load(interface.name, "stationinfo.json") or []
        return [StationInfo.from_json(item) for item in data if item is not None]

    def close(self) -> None:
        """Mark the source closed; later reads raise ValueError."""
        self.closed = True


def _desc(name: str, help_text: str, labels=_STATION_LABELS) -> Desc:
    return Desc(build_fq_name(NAMESPACE, _SUBSYSTEM, name), help_text, tuple(labels))


class WifiCollector(Collector):
    """Expose WiFi interface and station statistics.

    Statistics come from a stater object; without a factory or a fixtures
    directory no source is available and the collector reports no data.
    """

    def __init__(self, fixtures: str = "", stater_factory: Callable[[], object] | None = None) -> None:
        self.fixtures = fixtures
        self._stater_factory = stater_factory
        self.interface_frequency_hertz = _desc(
            "interface_frequency_hertz",
            "The current frequency a WiFi interface is operating at, in hertz.",
            ("device",),
        )
        self.station_info = _desc(
            "station_info",
            "Labeled WiFi interface station information as provided by the operating system.",
            ("device", "bssid", "ssid", "mode"),
        )
        self._station_descs = (
            ("connected", ValueType.COUNTER, _desc(
                "station_connected_seconds_total",
                "The total number of seconds a station has been connected to an access point.")),
            ("inactive", ValueType.GAUGE, _desc(
                "station_inactive_seconds",
                "The number of seconds since any wireless activity has occurred on a station.")),
            ("receive_bitrate", ValueType.GAUGE, _desc(
                "station_receive_bits_per_second",
                "The current WiFi receive bitrate of a station, in bits per second.")),
            ("transmit_bitrate", ValueType.GAUGE, _desc(
                "station_transmit_bits_per_second",
                "The current WiFi transmit bitrate of a station, in bits per second.")),
            ("received_bytes", ValueType.COUNTER, _desc(
                "station_receive_bytes_total",
                "The total number of bytes received by a WiFi station.")),
            ("transmitted_bytes", ValueType.COUNTER, _desc(
                "station_transmit_bytes_total",
                "The total number of bytes transmitted by a WiFi station.")),
            ("signal", ValueType.GAUGE, _desc(
                "station_signal_dbm",
                "The current WiFi signal strength, in decibel-milliwatts (dBm).")),
            ("transmit_retries", ValueType.COUNTER, _desc(
                "station_transmit_retries_total",
                "The total number of times a station has had to retry while sending a packet.")),
            ("transmit_failed", ValueType.COUNTER, _desc(
                "station_transmit_failed_total",
                "The total number of times a station has failed to send a packet.")),
            ("beacon_loss", ValueType.COUNTER, _desc(
                "station_beacon_loss_total",
                "The total number of times a station has detected a beacon loss.")),
        )

    def _new_stater(self):
        if self._stater_factory is not None:
            return self._stater_factory()
        if self.fixtures:
            return FixtureWifiStater(self.fixtures)
        raise FileNotFoundError("no nl80211 wifi statistics source is available")

    def _bss_metrics(self, device: str, bss: BSS) -> list[Metric]:
        return [
            Metric(
                self.station_info,
                ValueType.GAUGE,
                1,
                (device, bss.bssid, bss.ssid, bss_status_mode(bss.status)),
            )
        ]

    def _station_metrics(self, device: str, info: StationInfo) -> list[Metric]:
        return [
            Metric(desc, value_type, getattr(info, attr), (device, info.hardware_addr))
            for attr, value_type, desc in self._station_descs
        ]

    def update(self) -> Iterator[Metric]:
        try:
            stater = self._new_stater()
        except FileNotFoundError as exc:
            _log.debug("wifi collector metrics are not available for this system: %s", exc)
            raise NoDataError("wifi statistics are not available") from exc
        except PermissionError as exc:
            _log.debug("wifi collector got permission denied when accessing metrics: %s", exc)
            raise NoDataError("permission denied for wifi statistics") from exc
        except OSError as exc:
            raise OSError(f"failed to access wifi data: {exc}") from exc

        with closing(stater):
            try:
                interfaces = stater.interfaces()
            except (OSError, ValueError) as exc:
                raise OSError(f"failed to retrieve wifi interfaces: {exc}") from exc

            for ifi in interfaces:
                # Some virtual devices have no name and are skipped.
                if not ifi.name:
                    continue
                _log.debug("probing wifi device %s with type %s", ifi.name, ifi.type)
                yield Metric(
                    self.interface_frequency_hertz,
                    ValueType.GAUGE,
                    mhz_to_hz(ifi.frequency),
                    (ifi.name,),
                )

                try:
                    bss = stater.bss(ifi)
                except FileNotFoundError:
                    _log.debug("BSS information not found for wifi device %s", ifi.name)
                except (OSError, ValueError) as exc:
                    raise OSError(f"failed to retrieve BSS for device {ifi.name}: {exc}") from exc
                else:
                    yield from self._bss_metrics(ifi.name, bss)

                try:
                    stations = stater.station_info(ifi)
                except FileNotFoundError:
                    _log.debug("station information not found for wifi device %s", ifi.name)
                except (OSError, ValueError) as exc:
                    raise OSError(
                        f"failed to retrieve station info for device {ifi.name!r}: {exc}"
                    ) from exc
                else:
                    for station in stations:
                        yield from self._station_metrics(ifi.name, station)


register_collector("wifi", False, WifiCollector)