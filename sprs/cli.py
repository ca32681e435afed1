"""Command-line entry point: apply the transparent proxy setup and run the core."""

from __future__ import annotations

import argparse
import json
import logging
import shutil
import signal
import sys
import threading
import time
from typing import Iterable, Optional, Sequence

from .config import Config, ConfigError, example_toml, load
from .firewall import CommandError, Firewall
from .group import GROUP_NAME, GroupError, ensure
from .manager import LaunchError, Manager
from .wait import WaitTimeoutError, wait_for_processes

log = logging.getLogger(__name__)

VERSION = "1.0.0"

_USAGE = (
    f"sprs {VERSION}\n\n"
    "Usage:\n"
    "  sprs -c config.toml            # run normally\n"
    "  sprs -c config.toml --start    # apply rules/routes only, then exit\n"
    "  sprs -c config.toml --stop     # remove rules/routes only, then exit\n"
    "  sprs -example > config.toml    # generate example config\n"
)


class _Fatal(Exception):
    """Aborts the run after the message has been logged."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprs",
        usage=argparse.SUPPRESS,
        description=_USAGE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-c", dest="config", default="", help="config file path (.toml or .json)"
    )
    parser.add_argument(
        "-example", "--example", dest="example", action="store_true",
        help="print example config.toml and exit",
    )
    parser.add_argument(
        "-v", dest="version", action="store_true", help="print version and exit"
    )
    parser.add_argument(
        "-start", "--start", dest="start", action="store_true",
        help="apply firewall rules and routes only, then exit",
    )
    parser.add_argument(
        "-stop", "--stop", dest="stop", action="store_true",
        help="remove firewall rules and routes only, then exit",
    )
    return parser


def _fmt_list(values: Iterable[object]) -> str:
    return "[" + " ".join(str(v) for v in values) + "]"


def log_config(cfg: Config) -> None:
    """Log a summary of the effective configuration."""
    log.info(
        "config: mode=%s tproxy_port=%d redirect_port=%d dns_port=%d tun=%s",
        cfg.mode, cfg.tproxy_port, cfg.redirect_port, cfg.dns_port, cfg.tun_name,
    )
    log.info(
        "config: hijack_dns=%s ipv6=%s lan=%s fakeip=%s",
        str(bool(cfg.hijack_dns)).lower(), str(bool(cfg.ipv6)).lower(),
        str(bool(cfg.lan)).lower(), str(bool(cfg.fakeip)).lower(),
    )
    if cfg.bypass_mark > 0:
        log.info("config: bypass mark=0x%x", cfg.bypass_mark)
    if cfg.bypass_gids:
        log.info("config: bypass_gids=%s", _fmt_list(cfg.bypass_gids))
    if cfg.start_wait_time > 0:
        log.info("config: start_wait_time=%ds", cfg.start_wait_time)
    if cfg.wait_process:
        log.info(
            "config: wait_process=%s timeout=%ds",
            _fmt_list(cfg.wait_process), cfg.wait_process_timeout,
        )
    log.info(
        "config: keepalive=%s restart_on_fail=%s max_restarts=%d "
        "watch_interval=%ds start_timeout=%ds",
        str(bool(cfg.keepalive)).lower(), str(bool(cfg.restart_on_fail)).lower(),
        cfg.max_restarts, cfg.watch_interval, cfg.start_timeout,
    )
    if cfg.max_memory_mb > 0 or cfg.max_cpu_pct > 0:
        log.info(
            "config: max_memory=%dMB max_cpu=%.1f%% check_interval=%ds",
            cfg.max_memory_mb, cfg.max_cpu_pct, cfg.resource_check_interval,
        )
    if cfg.cron_restart:
        log.info("config: cron_restart=%s", json.dumps(cfg.cron_expr, ensure_ascii=False))


def _fatal(message: str, *args: object) -> _Fatal:
    log.error(message, *args)
    return _Fatal()


def _detect_iptables() -> bool:
    if shutil.which("nft") is not None:
        return False
    if shutil.which("iptables") is None:
        raise _fatal("firewall: neither nft nor iptables found in PATH")
    log.info("firewall: nft not found, falling back to iptables")
    return True


def _teardown(fw: Firewall, cfg: Config, use_ipt: bool) -> None:
    if use_ipt:
        fw.stop_iptables()
    else:
        fw.stop_with_config(cfg)


def _apply(fw: Firewall, cfg: Config, gid: int, use_ipt: bool, nft_suffix: str = "") -> None:
    if use_ipt:
        try:
            fw.apply_iptables(cfg, gid)
        except CommandError as exc:
            raise _fatal("firewall(iptables): %s", exc) from exc
    else:
        try:
            fw.apply(cfg, gid)
        except CommandError as exc:
            raise _fatal("firewall(nft): %s%s", exc, nft_suffix) from exc


def _wait_for_signal() -> str:
    received: list[str] = []
    event = threading.Event()

    def handler(signum: int, _frame: object) -> None:
        received.append(signal.Signals(signum).name)
        event.set()

    previous = {
        sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        while not event.wait(1.0):
            pass
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
    return received[0]


def _run(args: argparse.Namespace) -> None:
    try:
        cfg = load(args.config)
    except (ConfigError, OSError, ValueError) as exc:
        raise _fatal("config: %s", exc) from exc

    use_ipt = _detect_iptables()
    fw = Firewall()

    if args.stop:
        log.info("mode: --stop, removing rules and routes")
        _teardown(fw, cfg, use_ipt)
        log.info("done")
        return

    try:
        gid = ensure()
    except GroupError as exc:
        raise _fatal("group: %s", exc) from exc
    log.info("group: %r gid=%d", GROUP_NAME, gid)

    if args.start:
        log.info("mode: --start, applying rules and routes")
        if not use_ipt:
            fw.stop_with_config(cfg)
        _apply(fw, cfg, gid, use_ipt)
        log.info("done")
        return

    log_config(cfg)

    if cfg.start_wait_time > 0:
        log.info("startup: waiting %ds (start_wait_time)", cfg.start_wait_time)
        time.sleep(cfg.start_wait_time)

    if cfg.wait_process:
        try:
            wait_for_processes(cfg.wait_process, cfg.wait_process_timeout)
        except WaitTimeoutError as exc:
            raise _fatal("startup: %s", exc) from exc

    _apply(fw, cfg, gid, use_ipt, " — proxy will NOT be started")
    log.info("firewall: rules applied")

    manager = Manager(cfg, gid, use_ipt, fw)
    try:
        manager.start()
    except LaunchError as exc:
        log.error("process: startup failed: %s", exc)
        log.info("process: cleaning up firewall rules")
        _teardown(fw, cfg, use_ipt)
        raise _fatal("process: aborting") from exc

    name = _wait_for_signal()
    log.info("received %s, shutting down", name)
    manager.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command line; returns the process exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"sprs {VERSION}")
        return 0
    if args.example:
        sys.stdout.write(example_toml())
        return 0
    if not args.config:
        print("error: -c <config file> is required", file=sys.stderr)
        parser.print_help(sys.stderr)
        return 1
    if args.start and args.stop:
        print("error: --start and --stop are mutually exclusive", file=sys.stderr)
        return 1

    logging.basicConfig(
        format="[sprs] %(asctime)s %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S",
        level=logging.INFO,
    )
    logging.getLogger("sprs").setLevel(logging.INFO)
    try:
        _run(args)
    except _Fatal:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())