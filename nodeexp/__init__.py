"""Host metrics exporter: collectors, the text exposition format and an HTTP server."""

__version__ = "0.1.0"
__all__ = [
    "clock",
    "exporter",
    "metrics",
    "systemd",
    "tcpstat",
    "textfile",
    "textparse",
    "uname",
    "vmstat",
    "wifi",
    "zfs",
]