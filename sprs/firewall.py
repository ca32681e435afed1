"""Installing and removing the firewall rules and policy routes."""

from __future__ import annotations

import ipaddress
import logging
import shutil
import socket
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import psutil

from .config import Config, ProxyModes, TCPMode
from .nftrules import (
    NFT_TABLE,
    TP_FWMARK,
    TP_FWMASK,
    TP_TABLE,
    TUN_FWMARK,
    TUN_FWMASK,
    TUN_TABLE,
    build_table,
)

log = logging.getLogger(__name__)

NFT_CONF = "/tmp/sprs.nft"

Runner = Callable[[str], object]


class CommandError(RuntimeError):
    """Raised when a firewall or routing step fails."""


def run_command(command: str) -> str:
    """Run a whitespace-separated command and return its combined output."""
    parts = command.split()
    if not parts:
        return ""
    try:
        result = subprocess.run(
            parts,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"{command}: {exc} (output: )") from exc
    output = (result.stdout or "").strip()
    if result.returncode != 0:
        raise CommandError(
            f"{command}: exit status {result.returncode} (output: {output})"
        )
    return output


def gid_list(sprs_gid: int, bypass_gids: Iterable[int]) -> list[int]:
    """The proxy group's GID followed by the distinct extra bypass GIDs."""
    return list(dict.fromkeys([sprs_gid, *bypass_gids]))


def use_iptables() -> bool:
    """True when nft is missing but iptables is available."""
    return shutil.which("nft") is None and shutil.which("iptables") is not None


def _prefix_len(netmask: Optional[str], max_len: int) -> int:
    if not netmask:
        return max_len
    try:
        mask = ipaddress.ip_address(netmask.split("%", 1)[0])
    except ValueError:
        return max_len
    return bin(int(mask)).count("1")


def _local_networks() -> list[Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]]:
    found = []
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family == socket.AF_INET:
                max_len = 32
            elif addr.family == socket.AF_INET6:
                max_len = 128
            else:
                continue
            ip = addr.address.split("%", 1)[0]
            prefix = _prefix_len(addr.netmask, max_len)
            try:
                found.append(ipaddress.ip_interface(f"{ip}/{prefix}"))
            except ValueError:
                continue
    return found


class Firewall:
    """Applies and tears down the nftables or iptables setup and its routes."""

    def __init__(
        self,
        runner: Optional[Runner] = None,
        conf_path: Union[str, Path] = NFT_CONF,
    ) -> None:
        self._runner: Runner = runner if runner is not None else run_command
        self.conf_path = Path(conf_path)
        self.active_config: Optional[Config] = None
        self.active_modes = ProxyModes()

    # ── command helpers ────────────────────────────────────────────────

    def _run(self, command: str) -> None:
        self._runner(command)

    def _try(self, command: str) -> None:
        try:
            self._runner(command)
        except CommandError:
            pass

    def _run_logged(self, commands: Iterable[str], what: str) -> None:
        for command in commands:
            try:
                self._runner(command)
            except CommandError as exc:
                log.warning("%s: %s", what, exc)

    def _reset(self) -> None:
        self.active_config = None
        self.active_modes = ProxyModes()

    def _remove_conf(self) -> None:
        try:
            self.conf_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("firewall: remove %s: %s", self.conf_path, exc)

    # ── nftables ───────────────────────────────────────────────────────

    def apply(self, cfg: Config, gid: int) -> None:
        """Install the nftables ruleset and routes, cleaning up old state first."""
        self.stop()

        modes = cfg.modes()
        self.active_config = cfg
        self.active_modes = modes

        conf = build_table(cfg, modes, gid)
        try:
            self.conf_path.write_text(conf, encoding="utf-8")
        except OSError as exc:
            raise CommandError(f"write nft conf: {exc}") from exc

        try:
            self._setup_routes(cfg, modes)
        except CommandError:
            self._remove_conf()
            self._reset()
            raise

        if cfg.lan:
            self._enable_ip_forward(cfg.ipv6)

        try:
            self._run(f"nft -f {self.conf_path}")
        except CommandError as exc:
            self._cleanup_routes(cfg, modes)
            self._remove_conf()
            self._reset()
            raise CommandError(f"nft -f: {exc}") from exc

        self.sync_local_ips(cfg.ipv6)

        if cfg.bypass_mark > 0:
            self._setup_bypass_mark_route(cfg.bypass_mark, cfg.ipv6)

    def apply_tun_routes(self) -> None:
        """Add the TUN routes for the active configuration, if any."""
        if self.active_config is None:
            return
        self._setup_tun_routes(self.active_config)

    def stop(self) -> None:
        """Delete the nftables table and the routes of the active configuration."""
        self._try(f"nft delete table inet {NFT_TABLE}")
        self._remove_conf()
        if self.active_config is not None:
            self._cleanup_routes(self.active_config, self.active_modes)
        self._reset()

    def stop_with_config(self, cfg: Config) -> None:
        """Tear down rules and routes described by an explicit configuration."""
        self._try(f"nft delete table inet {NFT_TABLE}")
        self._remove_conf()
        self._cleanup_routes(cfg, cfg.modes())
        self._reset()

    def sync_local_ips(self, ipv6: bool) -> None:
        """Add the host's own addresses to the interface sets."""
        try:
            networks = _local_networks()
        except OSError as exc:
            log.warning("firewall: interface addrs: %s", exc)
            return
        for net in networks:
            is_v6 = net.version == 6
            if is_v6 and not ipv6:
                continue
            set_name = "interface6" if is_v6 else "interface"
            text = net.with_prefixlen
            try:
                self._run(f"nft add element inet {NFT_TABLE} {set_name} {{ {text} }}")
            except CommandError as exc:
                log.warning("firewall: sync %s: %s", text, exc)

    # ── routes ─────────────────────────────────────────────────────────

    def _setup_routes(self, cfg: Config, modes: ProxyModes) -> None:
        if modes.needs_tproxy_inbound():
            self._setup_tproxy_routes(cfg.ipv6)
        if modes.needs_tun_inbound():
            self._setup_tun_routes(cfg)

    def _cleanup_routes(self, cfg: Config, modes: ProxyModes) -> None:
        if modes.needs_tproxy_inbound():
            self._cleanup_tproxy_routes(cfg.ipv6)
        if modes.needs_tun_inbound():
            self._cleanup_tun_routes(cfg)
        if cfg.bypass_mark > 0:
            self._cleanup_bypass_mark_route(cfg.bypass_mark, cfg.ipv6)

    def _setup_tproxy_routes(self, ipv6: bool) -> None:
        commands = [
            f"ip rule add fwmark {TP_FWMARK}/{TP_FWMASK} table {TP_TABLE}",
            f"ip route add local 0.0.0.0/0 dev lo table {TP_TABLE}",
        ]
        if ipv6:
            commands += [
                f"ip -6 rule add fwmark {TP_FWMARK}/{TP_FWMASK} table {TP_TABLE}",
                f"ip -6 route add local ::/0 dev lo table {TP_TABLE}",
            ]
        for command in commands:
            try:
                self._run(command)
            except CommandError as exc:
                raise CommandError(f"tproxy route: {exc}") from exc

    def _cleanup_tproxy_routes(self, ipv6: bool) -> None:
        commands = [
            f"ip rule del fwmark {TP_FWMARK}/{TP_FWMASK} table {TP_TABLE}",
            f"ip route del local 0.0.0.0/0 dev lo table {TP_TABLE}",
        ]
        if ipv6:
            commands += [
                f"ip -6 rule del fwmark {TP_FWMARK}/{TP_FWMASK} table {TP_TABLE}",
                f"ip -6 route del local ::/0 dev lo table {TP_TABLE}",
            ]
        for command in commands:
            self._try(command)

    def _setup_bypass_mark_route(self, mark: int, ipv6: bool) -> None:
        commands = [f"ip rule add fwmark 0x{mark:x}/0x{mark:x} table main priority 100"]
        if ipv6:
            commands.append(
                f"ip -6 rule add fwmark 0x{mark:x}/0x{mark:x} table main priority 100"
            )
        self._run_logged(commands, "firewall: bypass mark route")

    def _cleanup_bypass_mark_route(self, mark: int, ipv6: bool) -> None:
        commands = [f"ip rule del fwmark 0x{mark:x}/0x{mark:x} table main priority 100"]
        if ipv6:
            commands.append(
                f"ip -6 rule del fwmark 0x{mark:x}/0x{mark:x} table main priority 100"
            )
        for command in commands:
            self._try(command)

    def _setup_tun_routes(self, cfg: Config) -> None:
        dev = cfg.tun_name
        commands = [
            f"ip rule add fwmark {TUN_FWMARK}/{TUN_FWMASK} table {TUN_TABLE}",
            f"ip route add default dev {dev} table {TUN_TABLE}",
        ]
        if cfg.fakeip:
            commands.append(f"ip route add {cfg.fakeip_v4_range} dev {dev}")
        if cfg.ipv6:
            commands += [
                f"ip -6 rule add fwmark {TUN_FWMARK}/{TUN_FWMASK} table {TUN_TABLE}",
                f"ip -6 route add default dev {dev} table {TUN_TABLE}",
            ]
            if cfg.fakeip:
                commands.append(f"ip -6 route add {cfg.fakeip_v6_range} dev {dev}")
        self._run_logged(commands, "firewall: tun route")

    def _cleanup_tun_routes(self, cfg: Config) -> None:
        dev = cfg.tun_name or "tun0"
        commands = [
            f"ip rule del fwmark {TUN_FWMARK}/{TUN_FWMASK} table {TUN_TABLE}",
            f"ip route del default dev {dev} table {TUN_TABLE}",
            f"ip route del {cfg.fakeip_v4_range} dev {dev}",
        ]
        if cfg.ipv6:
            commands += [
                f"ip -6 rule del fwmark {TUN_FWMARK}/{TUN_FWMASK} table {TUN_TABLE}",
                f"ip -6 route del default dev {dev} table {TUN_TABLE}",
                f"ip -6 route del {cfg.fakeip_v6_range} dev {dev}",
            ]
        for command in commands:
            self._try(command)

    def _enable_ip_forward(self, ipv6: bool) -> None:
        try:
            self._run("sysctl -w net.ipv4.ip_forward=1")
        except CommandError as exc:
            log.warning("firewall: ip_forward: %s", exc)
        if ipv6:
            try:
                self._run("sysctl -w net.ipv6.conf.all.forwarding=1")
            except CommandError as exc:
                log.warning("firewall: ipv6 forward: %s", exc)

    # ── iptables ───────────────────────────────────────────────────────

    def apply_iptables(self, cfg: Config, gid: int) -> None:
        """Install the iptables fallback rules, cleaning up old state first."""
        self.stop_iptables()
        modes = cfg.modes()
        self.active_config = cfg
        self.active_modes = modes

        exempt = gid_list(gid, cfg.bypass_gids)

        if cfg.hijack_dns and cfg.dns_port > 0:
            commands = ["iptables -t nat -N SPRS_NAT"]
            commands += [
                f"iptables -t nat -A SPRS_NAT -m owner --gid-owner {g} -j RETURN"
                for g in exempt
            ]
            commands += [
                f"iptables -t nat -A SPRS_NAT -p tcp --dport {cfg.dns_port} -j RETURN",
                f"iptables -t nat -A SPRS_NAT -p udp --dport {cfg.dns_port} -j RETURN",
                f"iptables -t nat -A SPRS_NAT -p tcp --dport 53 -j REDIRECT --to-port {cfg.dns_port}",
                f"iptables -t nat -A SPRS_NAT -p udp --dport 53 -j REDIRECT --to-port {cfg.dns_port}",
                "iptables -t nat -A OUTPUT -j SPRS_NAT",
                "iptables -t nat -A PREROUTING -j SPRS_NAT",
            ]
            self._run_logged(commands, "firewall(iptables)")

        if modes.tcp is TCPMode.REDIR:
            try:
                self._setup_tproxy_routes(cfg.ipv6)
            except CommandError:
                self.stop_iptables()
                raise
            commands = ["iptables -t nat -N SPRS_REDIR"]
            commands += [
                f"iptables -t nat -A SPRS_REDIR -m owner --gid-owner {g} -j RETURN"
                for g in exempt
            ]
            commands += [
                "iptables -t nat -A SPRS_REDIR -d 127.0.0.0/8 -j RETURN",
                "iptables -t nat -A SPRS_REDIR -d 10.0.0.0/8 -j RETURN",
                "iptables -t nat -A SPRS_REDIR -d 172.16.0.0/12 -j RETURN",
                "iptables -t nat -A SPRS_REDIR -d 192.168.0.0/16 -j RETURN",
                f"iptables -t nat -A SPRS_REDIR -p tcp -j REDIRECT --to-port {cfg.redirect_port}",
            ]
            if cfg.proxy_local_enabled():
                commands.append("iptables -t nat -A OUTPUT -p tcp -j SPRS_REDIR")
            if cfg.lan:
                if cfg.bypass_ips:
                    commands += [
                        f"iptables -t nat -I SPRS_REDIR 1 -s {net} -j RETURN"
                        for net in cfg.parsed_bypass_ips()
                    ]
                commands.append("iptables -t nat -A PREROUTING -p tcp -j SPRS_REDIR")
            self._run_logged(commands, "firewall(iptables)")

        if cfg.lan:
            self._enable_ip_forward(cfg.ipv6)

    def stop_iptables(self) -> None:
        """Remove the iptables chains and the routes of the active configuration."""
        for command in (
            "iptables -t nat -D OUTPUT -j SPRS_NAT",
            "iptables -t nat -D PREROUTING -j SPRS_NAT",
            "iptables -t nat -F SPRS_NAT",
            "iptables -t nat -X SPRS_NAT",
            "iptables -t nat -D OUTPUT -p tcp -j SPRS_REDIR",
            "iptables -t nat -D PREROUTING -p tcp -j SPRS_REDIR",
            "iptables -t nat -F SPRS_REDIR",
            "iptables -t nat -X SPRS_REDIR",
        ):
            self._try(command)
        if self.active_config is not None:
            self._cleanup_tproxy_routes(self.active_config.ipv6)
        self._reset()