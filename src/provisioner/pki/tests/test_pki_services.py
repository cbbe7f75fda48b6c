"""
测试 PKI 编排层：ensure_pki 的幂等性与服务端凭据安装。
"""

import pytest

from src.provisioner.errors import DuplicateSubject, PKIError
from src.provisioner.pki import core, services


def test_ensure_pki_full(make_config, fake_openssl):
    cfg = make_config()
    artifacts = services.ensure_pki(cfg)

    assert artifacts.created == ["pki", "ca", "server:server", "client:mikrotik-client"]
    assert artifacts.server.subject == "server"
    assert artifacts.client.subject == "mikrotik-client"
    assert core.verify_issued_by_ca(cfg.pki_dir, artifacts.server.cert_path)
    assert core.verify_issued_by_ca(cfg.pki_dir, artifacts.client.cert_path)

    installed = artifacts.installed
    assert installed.ca_cert == cfg.server_dir / "ca.crt"
    assert installed.key.read_bytes() == artifacts.server.key_path.read_bytes()
    assert installed.key.stat().st_mode & 0o777 == 0o600
    assert installed.cert.stat().st_mode & 0o777 == 0o644
    assert installed.dh.exists()


def test_ensure_pki_rerun_is_noop(make_config, fake_openssl):
    """第二次运行复用已有 CA 与证书，不重新签发"""
    cfg = make_config()
    first = services.ensure_pki(cfg)
    ca_before = first.ca_cert.read_bytes()
    cert_before = first.server.cert_path.read_bytes()

    second = services.ensure_pki(cfg)
    assert second.created == []
    assert second.ca_cert.read_bytes() == ca_before
    assert second.server.cert_path.read_bytes() == cert_before
    assert second.server.serial == first.server.serial
    assert len(fake_openssl.instances) == 1


def test_ensure_pki_rejects_same_names(make_config, fake_openssl):
    cfg = make_config(client_name="server")
    with pytest.raises(PKIError):
        services.ensure_pki(cfg)


def test_force_ca_archives_and_reissues(make_config, fake_openssl):
    """强制重建 CA：旧材料归档，服务端与客户端证书重新签发，之后普通重跑无变化"""
    cfg = make_config()
    first = services.ensure_pki(cfg)
    old_ca = first.ca_cert.read_bytes()
    old_server = first.server.cert_path.read_bytes()

    forced = services.ensure_pki(make_config(force_ca=True))
    assert forced.created == ["ca", "server:server", "client:mikrotik-client"]
    assert forced.ca_cert.read_bytes() != old_ca
    assert core.verify_issued_by_ca(cfg.pki_dir, forced.server.cert_path)
    assert core.verify_issued_by_ca(cfg.pki_dir, forced.client.cert_path)
    assert forced.installed.ca_cert.read_bytes() == forced.ca_cert.read_bytes()

    archives = list((cfg.pki_dir / "revoked").iterdir())
    assert len(archives) == 1
    assert (archives[0] / "ca.crt").read_bytes() == old_ca
    assert (archives[0] / "private" / "ca.key").exists()
    assert (archives[0] / "issued" / "server.crt").read_bytes() == old_server
    index = (cfg.pki_dir / "index.txt").read_text().splitlines()
    assert [l[0] for l in index] == ["R", "R", "V", "V"]

    again = services.ensure_pki(cfg)
    assert again.created == []
    assert again.ca_cert.read_bytes() == forced.ca_cert.read_bytes()


def test_stale_certificate_leaves_ca_untouched(make_config, fake_openssl):
    """证书链不到当前 CA 时报错，不改动 CA"""
    cfg = make_config()
    services.ensure_pki(cfg)
    core.issue_ca(cfg.pki_dir, "Replaced-CA", force=True)
    ca_bytes = (cfg.pki_dir / "ca.crt").read_bytes()
    with pytest.raises(PKIError):
        services.ensure_pki(cfg)
    assert (cfg.pki_dir / "ca.crt").read_bytes() == ca_bytes


def test_orphan_ca_key_rebuilds_same_ca(make_config, fake_openssl):
    """ca.crt 写入前中断只留下 ca.key 时，重跑用原私钥重建 CA，已签发证书仍然有效"""
    cfg = make_config()
    first = services.ensure_pki(cfg)
    key_before = (cfg.pki_dir / "private" / "ca.key").read_bytes()
    first.ca_cert.unlink()

    second = services.ensure_pki(cfg)
    assert second.created == ["ca"]
    assert (cfg.pki_dir / "private" / "ca.key").read_bytes() == key_before
    assert second.server.cert_path.read_bytes() == first.server.cert_path.read_bytes()
    assert core.verify_issued_by_ca(cfg.pki_dir, second.server.cert_path)

    assert services.ensure_pki(cfg).created == []


def test_issue_client_duplicate(make_config, fake_openssl):
    cfg = make_config()
    services.ensure_pki(cfg)
    extra = services.issue_client(cfg, "branch-office")
    assert extra.cert_path.exists()
    with pytest.raises(DuplicateSubject):
        services.issue_client(cfg, "branch-office")


def test_issue_client_requires_ca(make_config):
    with pytest.raises(PKIError):
        services.issue_client(make_config(), "branch-office")
