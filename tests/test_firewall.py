import socket
from collections import namedtuple

import psutil
import pytest

from sprs.config import Config, ProxyModes
from sprs.firewall import CommandError, Firewall, gid_list, run_command
from sprs.nftrules import build_table

Addr = namedtuple("Addr", "family address netmask broadcast ptp")


class Recorder:
    def __init__(self, fail_prefixes=()):
        self.commands = []
        self.fail_prefixes = tuple(fail_prefixes)

    def __call__(self, command):
        self.commands.append(command)
        if self.fail_prefixes and command.startswith(self.fail_prefixes):
            raise CommandError(f"{command}: exit status 1 (output: )")


@pytest.fixture
def no_addrs(monkeypatch):
    monkeypatch.setattr(psutil, "net_if_addrs", lambda: {})


def make_cfg(**kwargs):
    base = dict(run="/usr/bin/core", mode="tproxy", tproxy_port=7893)
    base.update(kwargs)
    return Config(**base).filled()


def test_gid_list_dedupes_keeping_order():
    assert gid_list(990, [1000, 990, 1000, 65534]) == [990, 1000, 65534]


def test_run_command_returns_output():
    assert run_command("echo hello") == "hello"
    assert run_command("   ") == ""


def test_run_command_failure_raises():
    with pytest.raises(CommandError, match="false"):
        run_command("false")


def test_apply_tproxy_writes_table_and_routes(tmp_path, no_addrs):
    rec = Recorder()
    conf = tmp_path / "rules.nft"
    fw = Firewall(rec, conf)
    cfg = make_cfg()
    fw.apply(cfg, 990)
    assert rec.commands[0] == "nft delete table inet sprs"
    assert rec.commands[1:] == [
        "ip rule add fwmark 0x40/0xc0 table 100",
        "ip route add local 0.0.0.0/0 dev lo table 100",
        f"nft -f {conf}",
    ]
    assert conf.read_text() == build_table(cfg, cfg.modes(), 990)
    assert fw.active_config is cfg


def test_apply_route_failure_cleans_up(tmp_path, no_addrs):
    rec = Recorder(fail_prefixes=["ip route add local"])
    conf = tmp_path / "rules.nft"
    fw = Firewall(rec, conf)
    with pytest.raises(CommandError, match="tproxy route"):
        fw.apply(make_cfg(), 990)
    assert not conf.exists()
    assert fw.active_config is None
    assert fw.active_modes == ProxyModes()


def test_apply_nft_failure_removes_routes(tmp_path, no_addrs):
    rec = Recorder(fail_prefixes=["nft -f"])
    conf = tmp_path / "rules.nft"
    fw = Firewall(rec, conf)
    with pytest.raises(CommandError, match="nft -f"):
        fw.apply(make_cfg(), 990)
    assert "ip rule del fwmark 0x40/0xc0 table 100" in rec.commands
    assert not conf.exists()
    assert fw.active_config is None


def test_apply_lan_and_bypass_mark(tmp_path, no_addrs):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.apply(make_cfg(lan=True, bypass_mark=0xFF), 990)
    assert "sysctl -w net.ipv4.ip_forward=1" in rec.commands
    assert rec.commands[-1] == "ip rule add fwmark 0xff/0xff table main priority 100"


def test_stop_after_apply_removes_routes(tmp_path, no_addrs):
    rec = Recorder()
    conf = tmp_path / "rules.nft"
    fw = Firewall(rec, conf)
    fw.apply(make_cfg(), 990)
    rec.commands.clear()
    fw.stop()
    assert rec.commands == [
        "nft delete table inet sprs",
        "ip rule del fwmark 0x40/0xc0 table 100",
        "ip route del local 0.0.0.0/0 dev lo table 100",
    ]
    assert not conf.exists()
    assert fw.active_config is None


def test_stop_without_active_only_deletes_table(tmp_path):
    rec = Recorder(fail_prefixes=["nft"])
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.stop()
    assert rec.commands == ["nft delete table inet sprs"]


def test_stop_with_config_tun_cleanup(tmp_path):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    cfg = make_cfg(mode="tun", ipv6=True)
    fw.stop_with_config(cfg)
    assert f"ip route del {cfg.fakeip_v4_range} dev {cfg.tun_name}" in rec.commands
    assert f"ip -6 route del {cfg.fakeip_v6_range} dev {cfg.tun_name}" in rec.commands
    assert "ip rule del fwmark 0x41/0xc1 table 101" in rec.commands
    assert not any("0x40" in c for c in rec.commands)


def test_apply_tun_routes_requires_active(tmp_path, no_addrs):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.apply_tun_routes()
    assert rec.commands == []
    cfg = make_cfg(mode="tun", fakeip=True)
    fw.apply(cfg, 990)
    rec.commands.clear()
    fw.apply_tun_routes()
    assert rec.commands == [
        "ip rule add fwmark 0x41/0xc1 table 101",
        f"ip route add default dev {cfg.tun_name} table 101",
        f"ip route add {cfg.fakeip_v4_range} dev {cfg.tun_name}",
    ]


def test_sync_local_ips_formats_sets(tmp_path, monkeypatch):
    addrs = {
        "eth0": [
            Addr(socket.AF_INET, "192.168.1.5", "255.255.255.0", None, None),
            Addr(socket.AF_INET6, "fe80::1%eth0", "ffff:ffff:ffff:ffff::", None, None),
        ]
    }
    monkeypatch.setattr(psutil, "net_if_addrs", lambda: addrs)
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.sync_local_ips(False)
    assert rec.commands == ["nft add element inet sprs interface { 192.168.1.5/24 }"]
    rec.commands.clear()
    fw.sync_local_ips(True)
    assert rec.commands[1] == "nft add element inet sprs interface6 { fe80::1/64 }"


def test_apply_iptables_dns_hijack(tmp_path):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.apply_iptables(make_cfg(hijack_dns=True, dns_port=5353, bypass_gids=[1000]), 990)
    assert "iptables -t nat -N SPRS_NAT" in rec.commands
    assert "iptables -t nat -A SPRS_NAT -m owner --gid-owner 990 -j RETURN" in rec.commands
    assert "iptables -t nat -A SPRS_NAT -m owner --gid-owner 1000 -j RETURN" in rec.commands
    assert "iptables -t nat -A SPRS_NAT -p udp --dport 53 -j REDIRECT --to-port 5353" in rec.commands
    assert not any("SPRS_REDIR" in c and "-A" in c for c in rec.commands)


def test_apply_iptables_redir_lan_bypass(tmp_path):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    cfg = make_cfg(mode="redir", redirect_port=7892, lan=True, proxy_local=False,
                   bypass_ips="192.168.1.100 bogus")
    fw.apply_iptables(cfg, 990)
    assert "iptables -t nat -I SPRS_REDIR 1 -s 192.168.1.100/32 -j RETURN" in rec.commands
    assert "iptables -t nat -A PREROUTING -p tcp -j SPRS_REDIR" in rec.commands
    assert "iptables -t nat -A OUTPUT -p tcp -j SPRS_REDIR" not in rec.commands
    assert "iptables -t nat -A SPRS_REDIR -p tcp -j REDIRECT --to-port 7892" in rec.commands
    assert rec.commands[-1] == "sysctl -w net.ipv4.ip_forward=1"


def test_stop_iptables_cleans_routes_of_active(tmp_path):
    rec = Recorder()
    fw = Firewall(rec, tmp_path / "rules.nft")
    fw.apply_iptables(make_cfg(mode="redir", redirect_port=7892), 990)
    rec.commands.clear()
    fw.stop_iptables()
    assert rec.commands[-2:] == [
        "ip rule del fwmark 0x40/0xc0 table 100",
        "ip route del local 0.0.0.0/0 dev lo table 100",
    ]
    assert fw.active_config is None