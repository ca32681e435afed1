import json

import pytest

from sprs.config import (
    Config,
    ConfigError,
    ProxyModes,
    TCPMode,
    UDPMode,
    bool_val,
    example_toml,
    float_val,
    int_val,
    load,
    parse_string_array,
    parse_toml,
    parse_uint32_array,
    uint_val,
)


@pytest.mark.parametrize(
    "mode, tcp, udp",
    [
        ("redir", TCPMode.REDIR, UDPMode.OFF),
        ("tproxy", TCPMode.TPROXY, UDPMode.TPROXY),
        ("MIXED", TCPMode.TPROXY, UDPMode.TUN),
        ("tun", TCPMode.TUN, UDPMode.TUN),
        ("", TCPMode.TPROXY, UDPMode.TPROXY),
        ("weird", TCPMode.TPROXY, UDPMode.TPROXY),
    ],
)
def test_modes_mapping(mode, tcp, udp):
    assert Config(mode=mode).modes() == ProxyModes(tcp, udp)


def test_proxy_modes_needs():
    mixed = ProxyModes(TCPMode.TPROXY, UDPMode.TUN)
    assert mixed.needs_tproxy_inbound() and mixed.needs_tun_inbound()
    assert not mixed.needs_redirect_inbound()
    assert ProxyModes(TCPMode.REDIR, UDPMode.OFF).needs_redirect_inbound()
    assert not ProxyModes().needs_any_inbound()
    assert ProxyModes(TCPMode.TUN, UDPMode.OFF).needs_any_inbound()


def test_filled_defaults():
    cfg = Config(run="x").filled()
    assert cfg.mode == "tproxy"
    assert cfg.tun_name == "tun0"
    assert cfg.fakeip_v4_range == "198.18.0.0/15"
    assert cfg.fakeip_v6_range == "fc00::/18"
    assert (cfg.watch_interval, cfg.start_timeout, cfg.resource_check_interval) == (5, 3, 10)
    assert cfg.proxy_local is True


def test_filled_keeps_explicit_values_and_does_not_mutate():
    original = Config(run="x", mode="tun", tun_name="utun", watch_interval=7)
    cfg = original.filled()
    assert (cfg.mode, cfg.tun_name, cfg.watch_interval) == ("tun", "utun", 7)
    assert original.proxy_local is None


def test_proxy_local_forced_without_lan():
    assert Config(proxy_local=False).filled().proxy_local is True
    assert Config(proxy_local=False, lan=True).filled().proxy_local is False


def test_proxy_local_enabled_default():
    assert Config().proxy_local_enabled() is True
    assert Config(proxy_local=False).proxy_local_enabled() is False


def test_parsed_bypass_ips():
    cfg = Config(bypass_ips="192.168.1.100 192.168.2.0/24 bogus 10.0.0.1")
    assert [str(n) for n in cfg.parsed_bypass_ips()] == [
        "192.168.1.100/32",
        "192.168.2.0/24",
        "10.0.0.1/32",
    ]
    assert Config().parsed_bypass_ips() == []


def test_parsed_bypass_ips_masks_host_bits():
    nets = Config(bypass_ips="10.1.2.3/8").parsed_bypass_ips()
    assert [str(n) for n in nets] == ["10.0.0.0/8"]


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"run": ""}, "run is required"),
        ({"mode": "bogus"}, "unknown mode"),
        ({"tproxy_port": 0}, "tproxy_port is required"),
        ({"mode": "redir"}, "redirect_port is required"),
        ({"mode": "tun", "tun_name": ""}, "tun_name is required"),
        ({"hijack_dns": True}, "dns_port is required"),
        ({"cron_restart": True}, "cron_expr is required"),
        ({"max_memory_mb": -1}, "max_memory_mb must be >= 0"),
        ({"max_cpu_pct": 101.0}, "max_cpu_percent must be between 0 and 100"),
        ({"wait_process_timeout": -1}, "wait_process_timeout must be >= 0"),
        ({"start_wait_time": -1}, "start_wait_time must be >= 0"),
    ],
)
def test_validate_errors(changes, message):
    base = {"run": "proxy", "mode": "tproxy", "tproxy_port": 7893, "tun_name": "tun0"}
    base.update(changes)
    with pytest.raises(ConfigError, match=message):
        Config(**base).validate()


def test_validate_accepts_valid():
    cfg = Config(run="proxy", mode="redir", redirect_port=7892).filled()
    cfg.validate()
    assert cfg.modes().needs_redirect_inbound()


def test_parse_toml_example_round_trip():
    cfg = parse_toml(example_toml())
    assert cfg.run == "/usr/bin/sing-box -c /etc/sing-box/config.json"
    assert cfg.mode == "tproxy"
    assert cfg.tproxy_port == 7893
    assert cfg.restart_on_fail is True and cfg.keepalive is True
    assert cfg.max_restarts == 5
    assert cfg.resource_check_interval == 10
    assert cfg.cron_restart is False
    assert cfg.redirect_port == 0


def test_parse_toml_arrays_and_special_fields():
    text = "\n".join(
        [
            'wait_process = ["mosdns", "NetworkManager"]',
            "bypass_gids = [1000, 65534]",
            "mark = 0xff",
            'bypass_ip = "192.168.1.100 10.0.0.1"',
            "proxy_local = no",
            "max_cpu_percent = 90.5  # limit",
            "unknown_key = whatever",
            "no equals sign here",
        ]
    )
    cfg = parse_toml(text)
    assert cfg.wait_process == ["mosdns", "NetworkManager"]
    assert cfg.bypass_gids == [1000, 65534]
    assert cfg.bypass_mark == 0xFF
    assert cfg.bypass_ips == "192.168.1.100 10.0.0.1"
    assert cfg.proxy_local is False
    assert cfg.max_cpu_pct == 90.5


def test_parse_toml_bad_value_names_key():
    with pytest.raises(ConfigError, match='key "tproxy_port"'):
        parse_toml('tproxy_port = "abc"')
    with pytest.raises(ConfigError, match='key "ipv6"'):
        parse_toml("ipv6 = maybe")


def test_set_field_unquotes_strings_only_when_quoted():
    cfg = Config()
    cfg.set_field("tun_name", '"tun9"')
    cfg.set_field("cron_expr", "bare")
    assert (cfg.tun_name, cfg.cron_expr) == ("tun9", "bare")


def test_parse_string_array():
    assert parse_string_array('["a", "b", ""]') == ["a", "b"]
    assert parse_string_array('"single"') == ["single"]
    assert parse_string_array('""') == []
    assert parse_string_array("[]") == []


def test_parse_uint32_array():
    assert parse_uint32_array("[1000, 0xff, 65534]") == [1000, 0xFF, 65534]
    assert parse_uint32_array("[1, x, , 2]") == [1, 2]
    assert parse_uint32_array("42") == [42]
    assert parse_uint32_array("nope") == []


@pytest.mark.parametrize("text", ["true", "YES", "1"])
def test_bool_val_true(text):
    assert bool_val(text) is True


@pytest.mark.parametrize("text", ["false", "No", "0"])
def test_bool_val_false(text):
    assert bool_val(text) is False


def test_bool_val_invalid():
    with pytest.raises(ConfigError, match="invalid bool"):
        bool_val("on")


def test_int_val_forms():
    assert int_val("7893") == 7893
    assert int_val("-12") == -12
    assert int_val("0x1f") == 0x1F
    assert int_val("010") == 0o10
    with pytest.raises(ConfigError):
        int_val('"7893"')
    with pytest.raises(ConfigError):
        int_val("")


def test_uint_val_forms():
    assert uint_val("0xff") == 0xFF
    assert uint_val(" 65534 ") == 65534
    assert uint_val("0x100000001") == 1
    with pytest.raises(ConfigError):
        uint_val("-1")


def test_float_val():
    assert float_val("90.0") == 90.0
    assert float_val("3") == 3.0
    with pytest.raises(ConfigError):
        float_val("abc")


def test_from_dict_maps_json_names():
    cfg = Config.from_dict(
        {
            "run": "proxy",
            "mark": 255,
            "bypass_ip": "10.0.0.1",
            "max_cpu_percent": 50,
            "bypass_gids": [1000],
            "wait_process": ["mosdns"],
            "proxy_local": None,
            "ignored": 1,
        }
    )
    assert cfg.run == "proxy"
    assert cfg.bypass_mark == 255
    assert cfg.bypass_ips == "10.0.0.1"
    assert cfg.max_cpu_pct == 50.0
    assert cfg.bypass_gids == [1000]
    assert cfg.wait_process == ["mosdns"]
    assert cfg.proxy_local is None


@pytest.mark.parametrize(
    "data",
    [
        {"tproxy_port": "7893"},
        {"tproxy_port": 1.5},
        {"ipv6": 1},
        {"mark": -1},
        {"bypass_gids": ["a"]},
        {"run": 3},
        [],
    ],
)
def test_from_dict_type_mismatch(data):
    with pytest.raises(ConfigError):
        Config.from_dict(data)


def test_load_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"run": "proxy", "mode": "mixed", "tproxy_port": 7893}))
    cfg = load(path)
    assert cfg.modes() == ProxyModes(TCPMode.TPROXY, UDPMode.TUN)
    assert cfg.tun_name == "tun0"


def test_load_toml_example(tmp_path):
    path = tmp_path / "config.TOML"
    path.write_text(example_toml(), encoding="utf-8")
    cfg = load(path)
    assert cfg.tproxy_port == 7893
    assert cfg.start_timeout == 3
    assert cfg.proxy_local is True


def test_load_errors(tmp_path):
    with pytest.raises(ConfigError, match="read config"):
        load(tmp_path / "missing.json")
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json")
    with pytest.raises(ConfigError, match="parse json"):
        load(bad_json)
    bad_toml = tmp_path / "bad.toml"
    bad_toml.write_text("dns_port = abc\n")
    with pytest.raises(ConfigError, match="parse toml"):
        load(bad_toml)
    invalid = tmp_path / "invalid.toml"
    invalid.write_text('mode = "tproxy"\n')
    with pytest.raises(ConfigError, match="config validation: run is required"):
        load(invalid)