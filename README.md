# nodeexp

An exporter for host metrics. It gathers statistics about the machine it
runs on and serves them over HTTP in the Prometheus text exposition format.
It needs nothing beyond the Python standard library.

## Collectors

| Name | Default | What it exposes |
|------|---------|-----------------|
| `tcpstat` | disabled | TCP connection states and queued bytes from `net/tcp` and `net/tcp6` under procfs |
| `vmstat` | enabled | fields of `vmstat` under procfs matching `--collector.vmstat.fields` |
| `uname` | enabled | system name, release, version, machine, node name and domain name |
| `time` | enabled | the current system time in seconds since the epoch |
| `textfile` | enabled | metrics read from `*.prom` files in a directory |
| `zfs` | enabled | ZFS kstat counters, per-pool I/O, dataset and pool state data |
| `systemd` | disabled | unit states, system state, version, timer and socket statistics, read by running `systemctl` and `busctl` |
| `wifi` | disabled | interface frequency, BSS and station statistics read from JSON fixture files |

Each collector can be switched on or off with `--collector.<name>` or
`--no-collector.<name>`. `--collector.disable-defaults` turns off every
collector that is enabled by default; collectors named explicitly on the
command line are still switched as asked.

A collector that has no data on the host (for example `zfs` without
`spl/kstat/zfs` under procfs) is left out of the scrape silently; a
collector that fails is logged and left out, and the scrape continues.

## Installation

```
pip install .
```

## Running

```
nodeexp --web.listen-address :9100 --web.telemetry-path /metrics
```

`http://localhost:9100/metrics` returns the metrics; any other path returns
a small landing page linking to them. One or more `collect[]` query
parameters limit a scrape to the named collectors:

```
http://localhost:9100/metrics?collect[]=uname&collect[]=time
```

Naming a collector that does not exist or is disabled gives a 400 response.

Other options:

- `--web.max-requests N`: at most N scrapes are served at once; further ones
  get a 503 response. `0` removes the limit. Default 40.
- `--web.disable-exporter-metrics`: leave out `promhttp_metric_handler_requests_*`
  and `process_cpu_seconds_total`.
- `--log.level {debug,info,warn,error}`: logging threshold.
- `--path.procfs`: where procfs is mounted (default `/proc`).
- `--collector.systemd.unit-include` / `--collector.systemd.unit-exclude`:
  regular expressions matched against whole unit names; only loaded units
  that match include and not exclude get per-unit metrics.
- `--collector.systemd.enable-task-metrics`, `--collector.systemd.enable-restarts-metrics`,
  `--collector.systemd.enable-start-time-metrics`: extra per-service metrics.
- `--collector.wifi.fixtures DIR`: directory holding `interfaces.json` and,
  per interface, `<name>/bss.json` and `<name>/stationinfo.json`.

Run `nodeexp --help` to see every option.

## Textfile metrics

```
nodeexp --collector.textfile.directory /var/lib/nodeexp/textfile
```

Each file ending in `.prom` is parsed and its metrics are exposed as they
are; families without a `# HELP` line get `Metric read from <path>`. The
modification time of every file read successfully appears as
`node_textfile_mtime_seconds`. If the directory or a file cannot be read or
parsed, `node_textfile_scrape_error` is 1, otherwise 0. A file whose samples
carry client-side timestamps is skipped as a whole.

## Using it as a library

```python
from nodeexp.metrics import render
from nodeexp.tcpstat import TCPStatCollector

print(render(TCPStatCollector().update()))
```

A collector's `update()` produces its metrics, and `nodeexp.metrics.render`
turns them into exposition text, sorted by name and label values, dropping
repeated series. While producing metrics, a collector raises
`nodeexp.metrics.NoDataError` when the host has no data for it.
Parsers such as `nodeexp.tcpstat.parse_tcp_stats`, `nodeexp.vmstat.parse_vmstat`,
`nodeexp.zfs.parse_procfs_file` and `nodeexp.textparse.parse_text` can be used
on their own.

## What it does not do

- Only the collectors listed above exist; there are no CPU, memory, disk,
  filesystem or network-interface collectors.
- The HTTP server is plain HTTP: there is no TLS and no authentication.
- The `wifi` collector reads only fixture files; without
  `--collector.wifi.fixtures` it reports no data.
- The `systemd` collector needs the `systemctl` and `busctl` commands.