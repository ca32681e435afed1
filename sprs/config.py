"""Configuration model, loading and validation."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class ConfigError(ValueError):
    """Raised when a configuration cannot be read, parsed or validated."""


class TCPMode(str, Enum):
    OFF = "off"
    REDIR = "redir"
    TPROXY = "tproxy"
    TUN = "tun"


class UDPMode(str, Enum):
    OFF = "off"
    TPROXY = "tproxy"
    TUN = "tun"


@dataclass(frozen=True)
class ProxyModes:
    """How TCP and UDP traffic are captured."""

    tcp: TCPMode = TCPMode.OFF
    udp: UDPMode = UDPMode.OFF

    def needs_tproxy_inbound(self) -> bool:
        return self.tcp is TCPMode.TPROXY or self.udp is UDPMode.TPROXY

    def needs_redirect_inbound(self) -> bool:
        return self.tcp is TCPMode.REDIR

    def needs_tun_inbound(self) -> bool:
        return self.tcp is TCPMode.TUN or self.udp is UDPMode.TUN

    def needs_any_inbound(self) -> bool:
        return (
            self.needs_tproxy_inbound()
            or self.needs_redirect_inbound()
            or self.needs_tun_inbound()
        )


_MODE_TABLE = {
    "redir": ProxyModes(TCPMode.REDIR, UDPMode.OFF),
    "tproxy": ProxyModes(TCPMode.TPROXY, UDPMode.TPROXY),
    "mixed": ProxyModes(TCPMode.TPROXY, UDPMode.TUN),
    "tun": ProxyModes(TCPMode.TUN, UDPMode.TUN),
}


class _Kind(Enum):
    STR = "string"
    INT = "int"
    UINT32 = "uint32"
    FLOAT = "float"
    BOOL = "bool"
    OPT_BOOL = "optional bool"
    STR_LIST = "string list"
    UINT32_LIST = "uint32 list"


# config key -> (attribute name, kind)
_FIELDS: dict[str, tuple[str, _Kind]] = {
    "run": ("run", _Kind.STR),
    "mode": ("mode", _Kind.STR),
    "dns_port": ("dns_port", _Kind.INT),
    "redirect_port": ("redirect_port", _Kind.INT),
    "tproxy_port": ("tproxy_port", _Kind.INT),
    "tun_name": ("tun_name", _Kind.STR),
    "hijack_dns": ("hijack_dns", _Kind.BOOL),
    "ipv6": ("ipv6", _Kind.BOOL),
    "lan": ("lan", _Kind.BOOL),
    "fakeip": ("fakeip", _Kind.BOOL),
    "fakeip_v4_range": ("fakeip_v4_range", _Kind.STR),
    "fakeip_v6_range": ("fakeip_v6_range", _Kind.STR),
    "mark": ("bypass_mark", _Kind.UINT32),
    "bypass_gids": ("bypass_gids", _Kind.UINT32_LIST),
    "bypass_ip": ("bypass_ips", _Kind.STR),
    "proxy_local": ("proxy_local", _Kind.OPT_BOOL),
    "start_wait_time": ("start_wait_time", _Kind.INT),
    "wait_process": ("wait_process", _Kind.STR_LIST),
    "wait_process_timeout": ("wait_process_timeout", _Kind.INT),
    "restart_on_fail": ("restart_on_fail", _Kind.BOOL),
    "max_restarts": ("max_restarts", _Kind.INT),
    "keepalive": ("keepalive", _Kind.BOOL),
    "watch_interval": ("watch_interval", _Kind.INT),
    "start_timeout": ("start_timeout", _Kind.INT),
    "max_memory_mb": ("max_memory_mb", _Kind.INT),
    "max_cpu_percent": ("max_cpu_pct", _Kind.FLOAT),
    "resource_check_interval": ("resource_check_interval", _Kind.INT),
    "cron_restart": ("cron_restart", _Kind.BOOL),
    "cron_expr": ("cron_expr", _Kind.STR),
}

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_UINT64_LIMIT = 1 << 64
_UINT32_MAX = (1 << 32) - 1


def _q(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


@dataclass
class Config:
    """Runtime configuration of the transparent proxy supervisor."""

    run: str = ""
    mode: str = ""

    dns_port: int = 0
    redirect_port: int = 0
    tproxy_port: int = 0
    tun_name: str = ""

    hijack_dns: bool = False
    ipv6: bool = False
    lan: bool = False
    fakeip: bool = False

    fakeip_v4_range: str = ""
    fakeip_v6_range: str = ""

    bypass_mark: int = 0
    bypass_gids: list[int] = field(default_factory=list)
    bypass_ips: str = ""
    proxy_local: Optional[bool] = None

    start_wait_time: int = 0
    wait_process: list[str] = field(default_factory=list)
    wait_process_timeout: int = 0

    restart_on_fail: bool = False
    max_restarts: int = 0
    keepalive: bool = False
    watch_interval: int = 0
    start_timeout: int = 0

    max_memory_mb: int = 0
    max_cpu_pct: float = 0.0
    resource_check_interval: int = 0

    cron_restart: bool = False
    cron_expr: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        """Build a config from a decoded JSON object; unknown keys are ignored."""
        if not isinstance(data, dict):
            raise ConfigError(
                f"cannot unmarshal {type(data).__name__} into config object"
            )
        cfg = cls()
        lowered = {key.lower(): spec for key, spec in _FIELDS.items()}
        for key, raw in data.items():
            spec = _FIELDS.get(key) or lowered.get(str(key).lower())
            if spec is None:
                continue
            attr, kind = spec
            if raw is None:
                if kind is _Kind.OPT_BOOL:
                    setattr(cfg, attr, None)
                elif kind in (_Kind.STR_LIST, _Kind.UINT32_LIST):
                    setattr(cfg, attr, [])
                continue
            setattr(cfg, attr, _json_value(key, kind, raw))
        return cfg

    def set_field(self, key: str, value: str) -> None:
        """Assign one raw TOML value to the field named by ``key``."""
        spec = _FIELDS.get(key)
        if spec is None:
            return
        attr, kind = spec
        if kind is _Kind.STR:
            parsed: Any = _unquote(value)
        elif kind is _Kind.STR_LIST:
            parsed = parse_string_array(value)
        elif kind is _Kind.UINT32_LIST:
            parsed = parse_uint32_array(value)
        elif kind is _Kind.INT:
            parsed = int_val(value)
        elif kind is _Kind.UINT32:
            parsed = uint_val(value)
        elif kind is _Kind.FLOAT:
            parsed = float_val(value)
        else:
            parsed = bool_val(value)
        setattr(self, attr, parsed)

    def filled(self) -> "Config":
        """Return a copy with defaults applied."""
        proxy_local = True if self.proxy_local is None else self.proxy_local
        if not proxy_local and not self.lan:
            proxy_local = True
        return dataclasses.replace(
            self,
            mode=self.mode or "tproxy",
            tun_name=self.tun_name or "tun0",
            fakeip_v4_range=self.fakeip_v4_range or "198.18.0.0/15",
            fakeip_v6_range=self.fakeip_v6_range or "fc00::/18",
            watch_interval=self.watch_interval if self.watch_interval > 0 else 5,
            start_timeout=self.start_timeout if self.start_timeout > 0 else 3,
            resource_check_interval=(
                self.resource_check_interval
                if self.resource_check_interval > 0
                else 10
            ),
            proxy_local=proxy_local,
            bypass_gids=list(self.bypass_gids),
            wait_process=list(self.wait_process),
        )

    def proxy_local_enabled(self) -> bool:
        """Whether locally originated traffic is proxied (default true)."""
        return True if self.proxy_local is None else self.proxy_local

    def parsed_bypass_ips(self) -> list[IPNetwork]:
        """Parse the space-separated bypass_ip list, skipping invalid entries."""
        nets: list[IPNetwork] = []
        for raw in self.bypass_ips.split():
            cidr = raw if "/" in raw else raw + "/32"
            try:
                nets.append(ipaddress.ip_network(cidr, strict=False))
            except ValueError:
                continue
        return nets

    def modes(self) -> ProxyModes:
        return _MODE_TABLE.get(self.mode.lower(), _MODE_TABLE["tproxy"])

    def validate(self) -> None:
        """Raise ConfigError if the configuration is inconsistent."""
        if not self.run:
            raise ConfigError("run is required")
        if self.mode.lower() not in ("redir", "tproxy", "mixed", "tun", ""):
            raise ConfigError(
                f"unknown mode {_q(self.mode)} (valid: redir, tproxy, mixed, tun)"
            )
        modes = self.modes()
        if modes.needs_tproxy_inbound() and self.tproxy_port == 0:
            raise ConfigError(f"tproxy_port is required for mode {_q(self.mode)}")
        if modes.needs_redirect_inbound() and self.redirect_port == 0:
            raise ConfigError(f"redirect_port is required for mode {_q(self.mode)}")
        if modes.needs_tun_inbound() and not self.tun_name:
            raise ConfigError(f"tun_name is required for mode {_q(self.mode)}")
        if self.hijack_dns and self.dns_port == 0:
            raise ConfigError("dns_port is required when hijack_dns = true")
        if self.cron_restart and not self.cron_expr:
            raise ConfigError("cron_expr is required when cron_restart = true")
        if self.max_memory_mb < 0:
            raise ConfigError("max_memory_mb must be >= 0")
        if self.max_cpu_pct < 0 or self.max_cpu_pct > 100:
            raise ConfigError("max_cpu_percent must be between 0 and 100")
        if self.wait_process_timeout < 0:
            raise ConfigError("wait_process_timeout must be >= 0")
        if self.start_wait_time < 0:
            raise ConfigError("start_wait_time must be >= 0")


def _json_value(key: str, kind: _Kind, raw: Any) -> Any:
    def mismatch() -> ConfigError:
        return ConfigError(
            f"cannot unmarshal {type(raw).__name__} into field {key} of type {kind.value}"
        )

    if kind is _Kind.STR:
        if not isinstance(raw, str):
            raise mismatch()
        return raw
    if kind in (_Kind.BOOL, _Kind.OPT_BOOL):
        if not isinstance(raw, bool):
            raise mismatch()
        return raw
    if kind is _Kind.INT:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise mismatch()
        if not _INT64_MIN <= raw <= _INT64_MAX:
            raise ConfigError(f"value {raw} overflows field {key}")
        return raw
    if kind is _Kind.UINT32:
        return _json_uint32(key, raw)
    if kind is _Kind.FLOAT:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise mismatch()
        return float(raw)
    if not isinstance(raw, list):
        raise mismatch()
    if kind is _Kind.STR_LIST:
        if not all(isinstance(item, str) for item in raw):
            raise mismatch()
        return list(raw)
    return [_json_uint32(key, item) for item in raw]


def _json_uint32(key: str, raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(
            f"cannot unmarshal {type(raw).__name__} into field {key} of type uint32"
        )
    if not 0 <= raw <= _UINT32_MAX:
        raise ConfigError(f"value {raw} overflows field {key}")
    return raw


def _unquote(s: str) -> str:
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        return s[1:-1]
    return s


def load(path: Union[str, Path]) -> Config:
    """Read, parse, fill and validate a .toml or .json configuration file."""
    path_str = str(path)
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"read config {_q(path_str)}: {exc}") from exc
    if path_str.lower().endswith(".toml"):
        try:
            cfg = parse_toml(text)
        except ConfigError as exc:
            raise ConfigError(f"parse toml: {exc}") from exc
    else:
        try:
            cfg = Config.from_dict(json.loads(text))
        except (json.JSONDecodeError, ConfigError) as exc:
            raise ConfigError(f"parse json: {exc}") from exc
    filled = cfg.filled()
    try:
        filled.validate()
    except ConfigError as exc:
        raise ConfigError(f"config validation: {exc}") from exc
    return filled


def parse_toml(text: str) -> Config:
    """Parse the flat ``key = value`` subset of TOML used by the config file."""
    cfg = Config()
    for raw in text.split("\n"):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, val = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        val = val.strip()
        comment = val.find(" #")
        if comment >= 0:
            val = val[:comment].strip()
        try:
            cfg.set_field(key, val)
        except ConfigError as exc:
            raise ConfigError(f"key {_q(key)}: {exc}") from exc
    return cfg


def parse_string_array(s: str) -> list[str]:
    """Parse ``["a", "b"]`` or a single bare value into a list of strings."""
    s = s.strip()
    if not (s.startswith("[") and s.endswith("]")):
        value = s.strip('"')
        return [value] if value else []
    return [
        part
        for part in (item.strip().strip('"') for item in s[1:-1].split(","))
        if part
    ]


def parse_uint32_array(s: str) -> list[int]:
    """Parse ``[1000, 0xff]`` or a single bare value, dropping invalid items."""
    s = s.strip()
    if not (s.startswith("[") and s.endswith("]")):
        try:
            return [uint_val(s)]
        except ConfigError:
            return []
    result = []
    for part in s[1:-1].split(","):
        part = part.strip()
        if not part:
            continue
        try:
            result.append(uint_val(part))
        except ConfigError:
            continue
    return result


def bool_val(s: str) -> bool:
    lowered = s.lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise ConfigError(f"invalid bool {_q(s)}")


_INT_RE = re.compile(
    r"(?P<body>0[xX][0-9a-fA-F_]+|0[bB][01_]+|0[oO][0-7_]+|0[0-7_]*|[1-9][0-9_]*)"
)


def _scan_unsigned(s: str) -> int:
    match = _INT_RE.match(s)
    if match is None:
        raise ConfigError(f"expected integer, got {_q(s)}")
    body = match.group("body")
    try:
        if len(body) > 1 and body[0] == "0" and body[1] not in "xXbBoO":
            return int(body, 8)
        return int(body, 0)
    except ValueError as exc:
        raise ConfigError(f"invalid integer {_q(body)}") from exc


def int_val(s: str) -> int:
    """Scan a leading signed integer (decimal, 0x, 0o, 0b or leading-0 octal)."""
    text = s.lstrip()
    negative = False
    if text[:1] in ("+", "-"):
        negative = text[0] == "-"
        text = text[1:]
    value = _scan_unsigned(text)
    if negative:
        value = -value
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ConfigError(f"integer {_q(s)} out of range")
    return value


def uint_val(s: str) -> int:
    """Scan a leading unsigned integer and truncate it to 32 bits."""
    value = _scan_unsigned(s.strip())
    if value >= _UINT64_LIMIT:
        raise ConfigError(f"integer {_q(s)} out of range")
    return value & _UINT32_MAX


_FLOAT_RE = re.compile(
    r"[+-]?(?:inf|nan|(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)", re.IGNORECASE
)


def float_val(s: str) -> float:
    """Scan a leading floating point number."""
    match = _FLOAT_RE.match(s.lstrip())
    if match is None:
        raise ConfigError(f"expected float, got {_q(s)}")
    return float(match.group(0))


def example_toml() -> str:
    """Return an annotated example configuration file."""
    return _EXAMPLE_TOML


_EXAMPLE_TOML = """\
# sprs 配置文件
# 布尔值不填写默认为 false

# 代理核心启动命令（必填）
run = "/usr/bin/sing-box -c /etc/sing-box/config.json"

# 透明代理模式（必填）
# redir  → 仅 TCP，NAT redirect，兼容最旧内核
# tproxy → TCP + UDP，需内核 >= 5.2
# mixed  → TCP 走 tproxy，UDP 走 TUN
# tun    → TCP + UDP 全走 TUN
mode = "tproxy"

# ── 端口 ──────────────────────────────────────────────────────
tproxy_port   = 7893    # tproxy 入站端口（mode = tproxy/mixed 时必填）
# redirect_port = 7892  # redir 入站端口（mode = redir 时必填）
# dns_port      = 5353  # 代理 DNS 端口（hijack_dns = true 时必填）
# tun_name      = "tun0"  # TUN 网卡名（mode = tun/mixed 时必填）

# ── 功能开关 ──────────────────────────────────────────────────
hijack_dns = false   # 劫持 :53 → dns_port
ipv6       = false   # 启用 IPv6 规则
lan        = false   # 代理局域网设备（自动开启 ip_forward）
fakeip     = false   # FakeIP 模式

# 是否代理本机流量（默认 true）
# 设为 false 后，本机发出的流量不走代理，只代理局域网设备（需 lan = true）
# 注意：当 proxy_local = false 且 lan = false 时，强制代理本机
# proxy_local = true

# 局域网 IP 过滤（仅 lan = true 时生效）
# 来自这些源 IP/CIDR 的流量不走代理，空格分隔
# 支持 x.x.x.x/前缀长度 或 x.x.x.x（等同于 /32）
# bypass_ip = "192.168.1.100 192.168.2.0/24 10.0.0.1"

# FakeIP 地址池（不填使用 sing-box 默认值）
# fakeip_v4_range = "198.18.0.0/15"
# fakeip_v6_range = "fc00::/18"

# ── mark 豁免（可选）─────────────────────────────────────────
# 带此 fwmark 的流量跳过所有代理规则和路由，不依赖 group
# 不填则不开启此功能（group 豁免始终有效）
# mark = 0xff

# ── GID 豁免（可选）──────────────────────────────────────────
# 额外指定的 GID，这些 GID 的进程流量不走代理，等同于 sprs 组
# 与 mark 豁免完全独立，互不影响
# bypass_gids = [1000, 65534]

# ── 启动等待 ──────────────────────────────────────────────────
# sprs 启动后先等待 N 秒再配置规则和路由（0 或不填 = 不等待）
# start_wait_time = 5

# 等待指定完整进程名全部出现后再启动（不填 = 不等待）
# 进程名为完整名称，不支持模糊匹配
# wait_process = ["mosdns", "NetworkManager"]

# 等待进程超时秒数（0 或不填 = 永久等待）
# wait_process_timeout = 30

# ── 进程管理 ──────────────────────────────────────────────────
restart_on_fail = true   # 异常退出时自动重启
max_restarts    = 5      # 最大重启次数（0 = 不限）
keepalive       = true   # 进程被意外杀死时自动拉起
watch_interval  = 5      # 保活探测间隔（秒）
start_timeout   = 3      # 启动确认：进程启动后等待 N 秒确认没有立即崩溃

# ── 资源限制（超限则重启核心，规则/路由不动）─────────────────
# 两项都为 0 时不启动资源监控
max_memory_mb           = 0     # 内存上限 MB（0 = 不限）
max_cpu_percent         = 0     # CPU 上限 %（0 = 不限，例如 90.0）
resource_check_interval = 10    # 资源检查间隔（秒）

# ── 定时重启 ──────────────────────────────────────────────────
# 按 cron 定时重启核心（规则和路由保持不变，只重启进程）
cron_restart = false
# cron_expr  = "0 3 * * *"   # 每天凌晨 3 点
"""