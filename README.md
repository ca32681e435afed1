# sprs

`sprs` sets up a transparent proxy on Linux and keeps the proxy core running.
It installs nftables rules and policy routes. When `nft` is not on the `PATH`, it
installs iptables rules instead. It starts the proxy core in a dedicated `sprs`
system group, so the core's own traffic is exempt from redirection. It can restart
the core in these cases:

- the core exits with an error;
- the core disappears;
- the core goes over a memory or CPU limit;
- a cron schedule fires.

It must run as root.

## Install

```sh
pip install .
```

For running the tests:

```sh
pip install ".[test]"
pytest
```

## Command line

Generate an example configuration and edit it:

```sh
sprs -example > config.toml
```

Run normally:

```sh
sprs -c config.toml
```

In this mode `sprs` does the following:

1. It waits `start_wait_time` seconds.
2. It waits until every process in `wait_process` is running.
3. It applies the rules and routes.
4. It starts the core.
5. It stays in the foreground until it receives SIGINT or SIGTERM. It then stops the core and removes the rules and routes.

Only apply rules and routes, then exit:

```sh
sprs -c config.toml --start
```

Only remove rules and routes, then exit:

```sh
sprs -c config.toml --stop
```

Print the version:

```sh
sprs -v
```

`--start` and `--stop` cannot be given together. The exit status is 0 on success and 1 on any error.

If the group `sprs` does not exist, `sprs` creates it with `groupadd --system`. When
`groupadd` is not available, it appends an entry with the lowest free GID from 500 upward
to `/etc/group`.

## Configuration

The configuration file is read as TOML when its name ends in `.toml`, and as JSON
otherwise. The TOML reader understands a flat `key = value` file:

- no tables;
- `#` comments on lines of their own, or after ` #` at the end of a value;
- inline arrays such as `["a", "b"]` and `[1000, 0xff]`.

Required keys:

- `run`: the proxy core's command line. It is split on spaces, and double quotes group words.
- `mode`: one of the following.
  - `redir`: TCP only, through NAT redirect.
  - `tproxy`: TCP and UDP through TPROXY. This is the default when `mode` is empty.
  - `mixed`: TCP through TPROXY, UDP through TUN.
  - `tun`: TCP and UDP through TUN.

Keys that are required depending on other settings:

- `tproxy_port` for `tproxy` and `mixed`.
- `redirect_port` for `redir`.
- `dns_port` when `hijack_dns = true`.
- `cron_expr` when `cron_restart = true`. It takes a standard five-field cron expression
  with `*`, lists, ranges and steps; Sunday is day 0.

Optional keys, with their defaults:

- Network: `tun_name` (`tun0`), `ipv6`, `lan`, `fakeip`, `fakeip_v4_range`
  (`198.18.0.0/15`), `fakeip_v6_range` (`fc00::/18`).
- `proxy_local` (true). It is forced back to true when `lan` is false.
- Exemptions:
  - `bypass_ip`: space-separated source IPs or CIDRs, used only with `lan = true`.
  - `mark`: an fwmark to exempt.
  - `bypass_gids`: extra group IDs to exempt.
- Start-up waits:
  - `start_wait_time`: seconds to wait.
  - `wait_process`: exact process names.
  - `wait_process_timeout`: seconds; 0 waits forever.
- Supervision:
  - `restart_on_fail`;
  - `max_restarts`: 0 means unlimited;
  - `keepalive`;
  - `watch_interval` (5 s);
  - `start_timeout` (3 s). The core must still be alive this long after launch.
- Resource limits:
  - `max_memory_mb`;
  - `max_cpu_percent`: 0 to 100;
  - `resource_check_interval` (10 s).

Run `sprs -example` to see every key with an explanation.

## Library use

The modules can be used on their own:

- `sprs.config`: `load`, `parse_toml`, `Config`, `ConfigError`, `example_toml`.
- `sprs.nftrules`: `build_table` and the per-chain builders. They render the nftables ruleset as text without touching the system.
- `sprs.firewall`: `Firewall`, which applies and removes nftables or iptables rules and routes.
  It takes a `runner` callable and a `conf_path`, so the commands it issues can be captured.
- `sprs.manager`: `Manager`, which launches and supervises the core process.
- `sprs.cron`: `parse`, which returns a `CronEntry`.
- `sprs.wait`: `wait_for_processes` and `running_process_names`.
- `sprs.group`: `ensure` and `write_group_entry`.

```python
from sprs.config import load
from sprs.nftrules import build_table

cfg = load("config.toml")
print(build_table(cfg, cfg.modes(), 990))
```

## Limits

`sprs` does not detach into the background and does not write a pid file. Run it under a
service manager if it should run as a daemon. It reads `/proc` and `/sys/class/net`, and it
calls `nft` or `iptables`, `ip` and `sysctl`, so it only works on Linux.