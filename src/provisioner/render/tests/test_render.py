"""
测试服务端配置渲染与读回。
"""

from pathlib import Path

import pytest

from src.provisioner.errors import RenderValidationFailure
from src.provisioner.render import core
from src.provisioner.render.schemas import ServerParams


def _params(**overrides):
    base = Path("/etc/openvpn/server")
    values = dict(
        port=1194,
        proto="udp",
        dev="tun",
        cipher="AES-256-CBC",
        auth="SHA256",
        network="10.8.0.0/24",
        ca=base / "ca.crt",
        cert=base / "server.crt",
        key=base / "server.key",
        dh=base / "dh.pem",
        server_dir=base,
    )
    values.update(overrides)
    return ServerParams(**values)


def test_round_trip():
    """渲染后再解析，得到与输入完全一致的参数"""
    text = core.render_server_config(_params(), (2, 5, 9))
    parsed = core.params_from_config(text)
    assert parsed["port"] == 1194
    assert parsed["proto"] == "udp"
    assert parsed["cipher"] == "AES-256-CBC"
    assert parsed["auth"] == "SHA256"
    assert parsed["network"] == "10.8.0.0/24"
    assert parsed["netmask"] == "255.255.255.0"
    assert parsed["topology"] == "subnet"


def test_round_trip_custom_values():
    text = core.render_server_config(
        _params(port=443, proto="tcp", cipher="AES-128-GCM", auth="SHA512", network="172.16.32.0/20"),
        (2, 6, 0),
    )
    parsed = core.params_from_config(text)
    assert (parsed["port"], parsed["proto"], parsed["cipher"], parsed["auth"], parsed["network"]) == (
        443, "tcp", "AES-128-GCM", "SHA512", "172.16.32.0/20",
    )


def test_required_lines_bit_exact():
    lines = core.render_server_config(_params(), (2, 4, 12)).splitlines()
    for expected in [
        "port 1194",
        "proto udp",
        "dev tun",
        "cipher AES-256-CBC",
        "auth SHA256",
        "topology subnet",
        "server 10.8.0.0 255.255.255.0",
        "ca ca.crt",
        "key server.key",
        "keepalive 10 120",
        "explicit-exit-notify 1",
    ]:
        assert expected in lines


def test_no_tls_auth_or_crypt():
    text = core.render_server_config(_params(), (2, 6, 8))
    directives = core.parse_server_config(text)
    for name in ("tls-auth", "tls-crypt", "tls-crypt-v2"):
        assert name not in directives


def test_data_ciphers_only_on_25_plus():
    old = core.parse_server_config(core.render_server_config(_params(), (2, 4, 12)))
    new = core.parse_server_config(core.render_server_config(_params(), (2, 5, 0)))
    assert "data-ciphers" not in old
    assert new["data-ciphers"] == "AES-256-GCM:AES-128-GCM:AES-256-CBC"
    assert new["data-ciphers-fallback"] == "AES-256-CBC"


def test_tcp_has_no_exit_notify():
    text = core.render_server_config(_params(proto="tcp"), (2, 5, 9))
    assert "explicit-exit-notify" not in core.parse_server_config(text)


def test_absolute_paths_outside_server_dir():
    text = core.render_server_config(_params(dh=Path("/srv/pki/dh.pem")), (2, 5, 9))
    assert core.parse_server_config(text)["dh"] == "/srv/pki/dh.pem"


@pytest.mark.parametrize(
    "overrides,version",
    [
        ({"cipher": "CHACHA20-POLY1305"}, (2, 6, 0)),
        ({"cipher": "BF-CBC"}, (2, 6, 0)),
        ({"auth": "SHA384"}, (2, 5, 0)),
        ({"proto": "icmp"}, (2, 5, 0)),
        ({"dev": "wg"}, (2, 5, 0)),
        ({"port": 0}, (2, 5, 0)),
        ({"port": 70000}, (2, 5, 0)),
        ({"network": "10.8.0.1/24"}, (2, 5, 0)),
        ({"network": "10.8.0.0/30"}, (2, 5, 0)),
        ({"keepalive_timeout": 5}, (2, 5, 0)),
        ({}, (2, 3, 0)),
    ],
)
def test_validation_failures(overrides, version):
    with pytest.raises(RenderValidationFailure):
        core.render_server_config(_params(**overrides), version)


def test_bf_cbc_allowed_before_26():
    core.validate_params(_params(cipher="BF-CBC"), (2, 5, 9))


def test_write_server_config_overwrites(tmp_path):
    path = tmp_path / "server.conf"
    first = core.write_server_config(path, _params(server_dir=tmp_path), (2, 5, 9))
    assert first.changed is True
    again = core.write_server_config(path, _params(server_dir=tmp_path), (2, 5, 9))
    assert again.changed is False
    changed = core.write_server_config(path, _params(server_dir=tmp_path, port=1195), (2, 5, 9))
    assert changed.changed is True
    assert core.params_from_config(path.read_text())["port"] == 1195
    assert [p.name for p in tmp_path.iterdir()] == ["server.conf"]


def test_failed_validation_keeps_previous_file(tmp_path):
    path = tmp_path / "server.conf"
    core.write_server_config(path, _params(server_dir=tmp_path), (2, 5, 9))
    before = path.read_text()
    with pytest.raises(RenderValidationFailure):
        core.write_server_config(path, _params(server_dir=tmp_path, cipher="NONE"), (2, 5, 9))
    assert path.read_text() == before


def test_parse_ignores_comments():
    parsed = core.parse_server_config("# port 1\n; port 2\n\nport 3\npersist-key\n")
    assert parsed == {"port": "3", "persist-key": ""}
