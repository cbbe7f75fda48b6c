#!/usr/bin/env python
"""
命令行入口：
- ovpn-mikrotik-install: 无参数，执行完整部署
- ovpn-mikrotik-add-client <name>: 为额外的 MikroTik 客户端签发证书
"""

import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from src.provisioner.config import Config
from src.provisioner.errors import ProvisioningError


def _setup_logging(cfg: Config) -> None:
    logger.remove()
    logger.add(sys.stderr, level=cfg.log_level, format="<level>{level: <8}</level> {message}")
    try:
        logger.add(str(cfg.log_file), level="DEBUG", rotation="10 MB", retention=5, encoding="utf-8")
    except OSError as e:
        logger.warning(f"无法写入日志文件 {cfg.log_file}: {e}")


def _load_config() -> Config:
    load_dotenv(Path.cwd() / ".env")
    cfg = Config()
    _setup_logging(cfg)
    return cfg


def main() -> int:
    from src.provisioner.pipeline.services import provision

    cfg = _load_config()
    logger.info("OpenVPN Server Installer for MikroTik RouterOS 7, start running!")
    try:
        result = provision(cfg)
    except ProvisioningError as e:
        logger.error(e.describe())
        return 1
    except KeyboardInterrupt:
        logger.error("操作已中断；已完成的阶段保持不变，可直接重新运行")
        return 130
    print(result.report.text)
    return 0


def add_client_main(argv: list[str] | None = None) -> int:
    from src.provisioner.pipeline.services import add_client

    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: ovpn-mikrotik-add-client <client-name>", file=sys.stderr)
        return 2
    cfg = _load_config()
    try:
        bundle = add_client(cfg, args[0])
    except ProvisioningError as e:
        logger.error(e.describe())
        return 1
    logger.info(f"客户端 {bundle.client} 的文件位于: {bundle.directory}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
