"""
测试公共夹具：

- fake_host: 用内存状态模拟 rpm / dnf / sysctl / firewall-cmd / systemctl / hostname
- fake_openssl: 模拟 openssl dhparam 子进程
- make_config: 所有路径指向 tmp_path 的 Config
"""

import subprocess
from pathlib import Path

import pytest

from src.provisioner import system
from src.provisioner.config import Config

ROCKY_OS_RELEASE = '''NAME="Rocky Linux"
VERSION="9.3 (Blue Onyx)"
ID="rocky"
ID_LIKE="rhel centos fedora"
VERSION_ID="9.3"
PRETTY_NAME="Rocky Linux 9.3 (Blue Onyx)"
'''

FAKE_DH = b"-----BEGIN DH PARAMETERS-----\nMIIBCAKCAQEA\n-----END DH PARAMETERS-----\n"


class FakeHost:
    def __init__(self):
        self.calls = []
        self.installed = {"epel-release"}
        self.openvpn_version = "2.5.9"
        self.ip_forward = "0"
        self.firewalld_running = False
        self.ports = []
        self.masquerade = False
        self.daemon_reloads = 0
        self.enabled = set()
        self.active = set()
        self.service_starts = True
        self.polls_until_active = 1
        self._polls = {}
        self.hostname_ips = "192.0.2.10 10.8.0.1"
        self.fail = {}

    def _result(self, cmd, rc=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(cmd, rc, stdout, stderr)

    def run(self, cmd, *, check=False, timeout=None, cwd=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        key = " ".join(cmd)
        for prefix, rc in self.fail.items():
            if key.startswith(prefix):
                result = self._result(cmd, rc, "", f"simulated failure: {key}")
                if check:
                    raise subprocess.CalledProcessError(rc, cmd, output="", stderr=result.stderr)
                return result
        result = self._dispatch(cmd)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, cmd, output=result.stdout, stderr=result.stderr)
        return result

    def _dispatch(self, cmd):
        prog, args = cmd[0], cmd[1:]
        if prog == "rpm":
            return self._result(cmd, 0 if args[-1] in self.installed else 1)
        if prog == "dnf":
            self.installed.update(a for a in args if not a.startswith("-") and a != "install")
            return self._result(cmd)
        if prog == "openvpn":
            out = f"OpenVPN {self.openvpn_version} x86_64-redhat-linux-gnu [SSL (OpenSSL)]\n"
            return self._result(cmd, 1, out)
        if prog == "sysctl":
            if args[0] == "-n":
                return self._result(cmd, 0, self.ip_forward + "\n")
            self.ip_forward = args[-1].split("=", 1)[1]
            return self._result(cmd, 0, f"net.ipv4.ip_forward = {self.ip_forward}\n")
        if prog == "hostname":
            return self._result(cmd, 0, self.hostname_ips + "\n")
        if prog == "firewall-cmd":
            return self._firewall(cmd, args)
        if prog == "systemctl":
            return self._systemctl(cmd, args)
        raise AssertionError(f"unexpected command: {cmd}")

    def _firewall(self, cmd, args):
        if not self.firewalld_running:
            return self._result(cmd, 252, "", "FirewallD is not running")
        flag = args[-1]
        if flag.startswith("--query-port="):
            return self._result(cmd, 0 if flag.split("=", 1)[1] in self.ports else 1)
        if flag.startswith("--add-port="):
            # 真实 firewall-cmd 会去重，这里刻意不去重以检验调用方的幂等性
            self.ports.append(flag.split("=", 1)[1])
            return self._result(cmd, 0, "success\n")
        if flag == "--query-masquerade":
            return self._result(cmd, 0 if self.masquerade else 1)
        if flag == "--add-masquerade":
            self.masquerade = True
            return self._result(cmd, 0, "success\n")
        if flag in ("--reload", "--list-ports"):
            return self._result(cmd, 0, " ".join(self.ports) + "\n")
        raise AssertionError(f"unexpected firewall-cmd: {cmd}")

    def _systemctl(self, cmd, args):
        action = args[0]
        if action == "enable" and args[1] == "--now":
            self.firewalld_running = True
            self.enabled.add(args[2])
            self.active.add(args[2])
            return self._result(cmd)
        if action == "enable":
            self.enabled.add(args[1])
            return self._result(cmd)
        if action == "restart":
            self.active.discard(args[1])
            self._polls[args[1]] = 0
            return self._result(cmd)
        if action == "daemon-reload":
            self.daemon_reloads += 1
            return self._result(cmd)
        if action == "is-active":
            unit = args[1]
            if unit not in self.active and self.service_starts and unit in self._polls:
                self._polls[unit] += 1
                if self._polls[unit] >= self.polls_until_active:
                    self.active.add(unit)
            if unit in self.active:
                return self._result(cmd, 0, "active\n")
            return self._result(cmd, 3, "activating\n" if self.service_starts else "failed\n")
        if action == "is-enabled":
            unit = args[1]
            if unit in self.enabled:
                return self._result(cmd, 0, "enabled\n")
            return self._result(cmd, 1, "disabled\n")
        raise AssertionError(f"unexpected systemctl: {cmd}")


class FakeDHProcess:
    """模拟 openssl dhparam：立即完成并写出参数文件；hang=True 时一直运行直到被终止。"""

    hang = False
    returncode_on_exit = 0
    instances = []

    def __init__(self, cmd, stdout=None, stderr=None):
        self.cmd = cmd
        self.out = Path(cmd[cmd.index("-out") + 1])
        self.terminated = False
        self.returncode = None
        FakeDHProcess.instances.append(self)
        if self.hang:
            self.out.write_bytes(b"-----BEGIN DH PARAMETERS-----\npartial")
        else:
            if self.returncode_on_exit == 0:
                self.out.write_bytes(FAKE_DH)
            self.returncode = self.returncode_on_exit

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture
def fake_host(monkeypatch):
    host = FakeHost()
    monkeypatch.setattr(system, "run_command", host.run)
    return host


@pytest.fixture
def fake_openssl(monkeypatch):
    from src.provisioner.pki import dh

    FakeDHProcess.hang = False
    FakeDHProcess.returncode_on_exit = 0
    FakeDHProcess.instances = []
    monkeypatch.setattr(dh.subprocess, "Popen", FakeDHProcess)
    return FakeDHProcess


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        os_release = tmp_path / "os-release"
        if not os_release.exists():
            os_release.write_text(ROCKY_OS_RELEASE, encoding="utf-8")
        values = dict(
            pki_dir=tmp_path / "easy-rsa" / "pki",
            server_dir=tmp_path / "server",
            systemd_dir=tmp_path / "systemd",
            sysctl_dropin=tmp_path / "sysctl.d" / "99-openvpn-forward.conf",
            export_root=tmp_path / "export",
            report_path=tmp_path / "report.txt",
            os_release_path=os_release,
            log_file=tmp_path / "install.log",
            service_timeout=0.2,
            service_poll_interval=0.01,
            ip_lookup_urls=["https://a.example/ip", "https://b.example/ip"],
            ip_lookup_timeout=0.5,
        )
        values.update(overrides)
        return Config(**values)

    return _make
