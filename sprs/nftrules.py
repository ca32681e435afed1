"""Rendering of the nftables ruleset that steers traffic into the proxy."""

from __future__ import annotations

from typing import Iterable

from .config import Config, ProxyModes, TCPMode, UDPMode

NFT_TABLE = "sprs"
TP_FWMARK = "0x40"
TP_FWMASK = "0xc0"
TP_TABLE = 100
TUN_FWMARK = "0x41"
TUN_FWMASK = "0xc1"
TUN_TABLE = 101

_IND = "        "

_TP_MARK_CHAIN = (
    "\n"
    "    chain tp_mark {\n"
    "        tcp flags & (fin | syn | rst | ack) == syn meta mark set mark | 0x40\n"
    "        meta l4proto udp ct state new meta mark set mark | 0x40\n"
    "        ct mark set mark\n"
    "    }\n"
)

_TUN_MARK_CHAIN = (
    "\n"
    "    chain tun_mark {\n"
    f"        meta mark set meta mark | {TUN_FWMARK}\n"
    "        ct mark set meta mark\n"
    "    }\n"
)

_MANGLE_HOOKS = (
    "\n"
    "    chain prerouting_mangle {\n"
    "        type filter hook prerouting priority mangle - 5; policy accept;\n"
    "        jump proxy_pre\n"
    "    }\n"
    "\n"
    "    chain output_mangle {\n"
    "        type filter hook output priority mangle - 5; policy accept;\n"
    "        jump proxy_out\n"
    "    }\n"
)

_PRIVATE_V4 = (
    "0.0.0.0/8, 10.0.0.0/8, 100.64.0.0/10, 127.0.0.0/8, "
    "169.254.0.0/16, 172.16.0.0/12, 192.0.0.0/24, 192.0.2.0/24, 192.88.99.0/24, "
    "192.168.0.0/16, 198.18.0.0/15, 198.51.100.0/24, 203.0.113.0/24, 224.0.0.0/3"
)

_FIB_LOCAL = f"{_IND}fib daddr type {{ local, broadcast, anycast, multicast }} return\n"

# Keyed by whether IPv6 is enabled.
_NFPROTO = {
    False: "meta nfproto ipv4",
    True: "meta nfproto { ipv4, ipv6 }",
}


def _set_decl(name: str, addr_type: str, elements: str = "") -> str:
    body = (
        f"    set {name} {{\n"
        f"{_IND}type {addr_type}\n"
        f"{_IND}flags interval\n"
        f"{_IND}auto-merge\n"
    )
    if elements:
        body += f"{_IND}elements = {{{elements}}}\n"
    return body + "    }\n"


def _mark_exempt(cfg: Config) -> str:
    if cfg.bypass_mark > 0:
        return f"{_IND}meta mark 0x{cfg.bypass_mark:x} return\n"
    return ""


def private_ranges_v4(fakeip: bool, fakeip_v4_range: str) -> str:
    """Rules returning early for local and reserved IPv4 destinations."""
    if fakeip:
        return (
            _FIB_LOCAL
            + f"{_IND}ip daddr != {fakeip_v4_range} ip daddr {{ {_PRIVATE_V4} }} return\n"
        )
    return _FIB_LOCAL + f"{_IND}ip daddr {{ {_PRIVATE_V4} }} return\n"


def private_ranges_v6(fakeip: bool, fakeip_v6_range: str) -> str:
    """Rule returning early for reserved IPv6 destinations."""
    ranges = "{ ::/127, fc00::/7, fe80::/10, ff00::/8 }"
    if fakeip:
        return f"{_IND}ip6 daddr != {fakeip_v6_range} ip6 daddr {ranges} return\n"
    return f"{_IND}ip6 daddr {ranges} return\n"


def nft_skgid_expr(sprs_gid: int, bypass_gids: Iterable[int]) -> str:
    """Match expression exempting the proxy group and any extra bypass GIDs."""
    gids = list(dict.fromkeys([sprs_gid, *bypass_gids]))
    if len(gids) == 1:
        return f"skgid {gids[0]} return"
    return "skgid { " + ", ".join(str(g) for g in gids) + " } return"


def build_proxy_rule_chain(cfg: Config, modes: ProxyModes) -> str:
    lines = ["\n    chain proxy_rule {\n"]
    if modes.needs_tproxy_inbound():
        lines.append(f"{_IND}ct mark != 0 meta mark set ct mark\n")
        lines.append(f"{_IND}meta mark & {TP_FWMASK} == {TP_FWMARK} return\n")
    if modes.needs_tun_inbound():
        lines.append(f"{_IND}ct mark != 0 meta mark set ct mark\n")
        lines.append(f"{_IND}meta mark & {TUN_FWMASK} == {TUN_FWMARK} return\n")
    lines.append(_mark_exempt(cfg))
    lines.append(private_ranges_v4(cfg.fakeip, cfg.fakeip_v4_range))
    if cfg.ipv6:
        lines.append(private_ranges_v6(cfg.fakeip, cfg.fakeip_v6_range))
    lines.append(f"{_IND}ip daddr @interface return\n")
    if cfg.ipv6:
        lines.append(f"{_IND}ip6 daddr @interface6 return\n")
    if cfg.hijack_dns and cfg.dns_port > 0:
        lines.append(
            f"{_IND}meta l4proto {{ tcp, udp }} th dport {cfg.dns_port} return\n"
        )
    if modes.tcp is TCPMode.TPROXY:
        lines.append(f"{_IND}meta l4proto tcp jump tp_mark\n")
    elif modes.tcp is TCPMode.TUN:
        lines.append(f"{_IND}meta l4proto tcp jump tun_mark\n")
    if modes.udp is UDPMode.TPROXY:
        lines.append(f"{_IND}meta l4proto udp jump tp_mark\n")
    elif modes.udp is UDPMode.TUN:
        lines.append(f"{_IND}meta l4proto udp jump tun_mark\n")
    lines.append("    }\n")
    return "".join(lines)


def build_mangle_prerouting(cfg: Config, modes: ProxyModes) -> str:
    lines = ["\n    chain proxy_pre {\n"]
    if modes.needs_tun_inbound():
        lines.append(f'{_IND}iifname "{cfg.tun_name}" return\n')
        lines.append(f'{_IND}iifname "lo" meta mark & {TUN_FWMASK} != {TUN_FWMARK} return\n')
    if modes.needs_tproxy_inbound():
        lines.append(f'{_IND}iifname "lo" meta mark & {TP_FWMASK} != {TP_FWMARK} return\n')
    if cfg.lan:
        if cfg.bypass_ips and cfg.parsed_bypass_ips():
            lines.append(f"{_IND}ip saddr @bypass_src return\n")
        lines.append(
            f"{_IND}{_NFPROTO[bool(cfg.ipv6)]} meta l4proto {{ tcp, udp }} "
            "fib saddr type != local fib daddr type != local jump proxy_rule\n"
        )
    if modes.needs_tproxy_inbound():
        lines.append(
            f"{_IND}meta nfproto ipv4 meta l4proto {{ tcp, udp }} mark & {TP_FWMASK} == "
            f"{TP_FWMARK} tproxy ip to 127.0.0.1:{cfg.tproxy_port}\n"
        )
        if cfg.ipv6:
            lines.append(
                f"{_IND}meta nfproto ipv6 meta l4proto {{ tcp, udp }} mark & {TP_FWMASK} == "
                f"{TP_FWMARK} tproxy ip6 to [::1]:{cfg.tproxy_port}\n"
            )
    lines.append("    }\n")
    return "".join(lines)


def build_mangle_output(cfg: Config, modes: ProxyModes, gid: int) -> str:
    if not cfg.proxy_local_enabled():
        return "\n    chain proxy_out {\n" f"{_IND}return\n" "    }\n"
    return (
        "\n    chain proxy_out {\n"
        f"{_IND}{nft_skgid_expr(gid, cfg.bypass_gids)}\n"
        f"{_IND}{_NFPROTO[bool(cfg.ipv6)]} meta l4proto {{ tcp, udp }} "
        "fib saddr type local fib daddr type != local jump proxy_rule\n"
        "    }\n"
    )


def build_nat_chains(cfg: Config, modes: ProxyModes, gid: int) -> str:
    parts = []
    skgid = nft_skgid_expr(gid, cfg.bypass_gids)
    hijack = cfg.hijack_dns and cfg.dns_port > 0
    redir = modes.tcp is TCPMode.REDIR

    if hijack:
        dns_v4 = (
            f"{_IND}ip daddr != 127.0.0.1 meta l4proto {{ tcp, udp }} "
            f"th dport 53 redirect to :{cfg.dns_port}\n"
        )
        dns_v6 = ""
        if cfg.ipv6:
            dns_v6 = (
                f"{_IND}ip6 daddr != ::1 meta l4proto {{ tcp, udp }} "
                f"th dport 53 redirect to :{cfg.dns_port}\n"
            )
        parts.append(
            "\n    chain dns_redirect {\n"
            f"{_IND}{skgid}\n"
            f"{_mark_exempt(cfg)}"
            f"{_IND}meta l4proto {{ tcp, udp }} th dport {cfg.dns_port} return\n"
            f"{dns_v4}{dns_v6}"
            "    }\n"
        )
    if redir:
        v6 = private_ranges_v6(cfg.fakeip, cfg.fakeip_v6_range) if cfg.ipv6 else ""
        parts.append(
            "\n    chain tcp_redirect {\n"
            f"{_IND}{skgid}\n"
            f"{_mark_exempt(cfg)}"
            f"{private_ranges_v4(cfg.fakeip, cfg.fakeip_v4_range)}"
            f"{v6}"
            f"{_IND}ip daddr @interface return\n"
            f"{_IND}{_NFPROTO[bool(cfg.ipv6)]} meta l4proto tcp redirect to :{cfg.redirect_port}\n"
            "    }\n"
        )

    jumps = ""
    if hijack:
        jumps += f"{_IND}jump dns_redirect\n"
    if redir:
        jumps += f"{_IND}jump tcp_redirect\n"

    parts.append(
        "\n    chain prerouting_nat {\n"
        f"{_IND}type nat hook prerouting priority dstnat - 5; policy accept;\n"
        f"{jumps}"
        "    }\n"
    )
    parts.append(
        "\n    chain output_nat {\n"
        f"{_IND}type nat hook output priority -105; policy accept;\n"
        f"{jumps}"
        "    }\n"
    )
    return "".join(parts)


def build_table(cfg: Config, modes: ProxyModes, gid: int) -> str:
    """Render the complete ``table inet sprs`` ruleset."""
    parts = [f"table inet {NFT_TABLE} {{\n", _set_decl("interface", "ipv4_addr")]
    if cfg.ipv6:
        parts.append(_set_decl("interface6", "ipv6_addr"))
    if cfg.lan and cfg.bypass_ips:
        nets = cfg.parsed_bypass_ips()
        if nets:
            parts.append(
                _set_decl("bypass_src", "ipv4_addr", ", ".join(str(n) for n in nets))
            )
    if modes.needs_tproxy_inbound():
        parts.append(_TP_MARK_CHAIN)
    if modes.needs_tun_inbound():
        parts.append(_TUN_MARK_CHAIN)
    parts.append(build_proxy_rule_chain(cfg, modes))
    parts.append(build_mangle_prerouting(cfg, modes))
    parts.append(build_mangle_output(cfg, modes, gid))
    parts.append(_MANGLE_HOOKS)
    parts.append(build_nat_chains(cfg, modes, gid))
    parts.append("}\n")
    return "".join(parts)