"""
测试依赖安装与 OpenVPN 版本探测。
"""

import pytest

from src.provisioner.errors import DependencyInstallFailure
from src.provisioner.packages import core


PACKAGES = ["openvpn", "openssl", "firewalld"]


def test_ensure_packages_installs_missing(fake_host):
    fake_host.installed = {"openssl"}
    installed = core.ensure_packages(PACKAGES, "rocky")
    assert installed == ["epel-release", "openvpn", "firewalld"]
    assert ["dnf", "install", "-y", "openvpn", "firewalld"] in fake_host.calls


def test_ensure_packages_skips_when_present(fake_host):
    """全部已安装时不调用 dnf"""
    fake_host.installed = set(PACKAGES)
    assert core.ensure_packages(PACKAGES, "rocky") == []
    assert not any(c[0] == "dnf" for c in fake_host.calls)


def test_ensure_packages_fedora_skips_epel(fake_host):
    fake_host.installed = set()
    installed = core.ensure_packages(PACKAGES, "fedora")
    assert "epel-release" not in installed


def test_ensure_packages_failure(fake_host):
    fake_host.installed = set()
    fake_host.fail["dnf install"] = 1
    with pytest.raises(DependencyInstallFailure) as exc:
        core.ensure_packages(PACKAGES, "rocky")
    assert exc.value.stage == "dependencies"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("OpenVPN 2.5.9 x86_64-redhat-linux-gnu [SSL (OpenSSL)]", (2, 5, 9)),
        ("OpenVPN 2.6.12 x86_64-redhat-linux-gnu", (2, 6, 12)),
        ("OpenVPN 2.4 arm", (2, 4, 0)),
    ],
)
def test_parse_openvpn_version(text, expected):
    assert core.parse_openvpn_version(text) == expected


def test_parse_openvpn_version_invalid():
    with pytest.raises(ValueError):
        core.parse_openvpn_version("command not found")


def test_detect_openvpn_version_nonzero_exit(fake_host):
    """openvpn --version 以非零码退出时仍能解析版本"""
    fake_host.openvpn_version = "2.6.8"
    assert core.detect_openvpn_version() == (2, 6, 8)


def test_detect_openvpn_version_too_old(fake_host):
    fake_host.openvpn_version = "2.3.18"
    with pytest.raises(DependencyInstallFailure):
        core.detect_openvpn_version()
