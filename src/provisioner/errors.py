"""
流水线错误类型定义。

每个错误都携带所属阶段 stage 与排查建议 hint，入口处据此输出可定位的错误信息。
致命错误：preflight / dependencies / pki / render / service / bundle。
可降级错误：HostMutationFailure、AddressResolutionFailure（记录后继续）。
"""

from __future__ import annotations


class ProvisioningError(RuntimeError):
    """所有流水线错误的基类。"""

    stage = "pipeline"
    hint = "查看安装日志获取详细信息"

    def __init__(self, message: str, *, stage: str | None = None, hint: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        if hint is not None:
            self.hint = hint

    def describe(self) -> str:
        return f"[{self.stage}] {self} (排查: {self.hint})"


class InsufficientPrivilege(ProvisioningError):
    stage = "preflight"
    hint = "请使用 root 或 sudo 运行"


class UnsupportedHost(ProvisioningError):
    stage = "preflight"
    hint = "cat /etc/os-release"


class DependencyInstallFailure(ProvisioningError):
    stage = "dependencies"
    hint = "dnf install -y openvpn openssl firewalld"


class PKIError(ProvisioningError):
    stage = "pki"
    hint = "检查 PKI 目录权限与磁盘空间"


class CAAlreadyExists(PKIError):
    hint = "已存在 CA；如确需重建请设置 OVPN_FORCE_CA=true（旧证书归档到 pki/revoked/ 并全部重新签发，MikroTik 端需重新导入）"


class DuplicateSubject(PKIError):
    hint = "该名称已签发证书；轮换证书前请先移除 issued/、private/、reqs/ 下的同名文件"


class DHGenerationCancelled(PKIError):
    hint = "重新运行安装程序以重新生成 DH 参数"


class RenderValidationFailure(ProvisioningError):
    stage = "render"
    hint = "检查 OVPN_CIPHER / OVPN_AUTH / OVPN_PROTO / OVPN_NETWORK 配置"


class HostMutationFailure(ProvisioningError):
    stage = "host"
    hint = "firewall-cmd --list-all; sysctl net.ipv4.ip_forward"

    def __init__(self, message: str, *, operation: str, hint: str | None = None):
        super().__init__(message, hint=hint)
        self.operation = operation


class ServiceStartTimeout(ProvisioningError):
    stage = "service"
    hint = "journalctl -u openvpn-server@server"


class BundleExistsError(ProvisioningError):
    stage = "bundle"
    hint = "确认后删除旧的客户端文件目录或以 overwrite=True 重新导出"


class AddressResolutionFailure(ProvisioningError):
    stage = "report"
    hint = "手动将报告中的 YOUR_SERVER_IP 替换为服务器公网地址"
