"""
Diffie-Hellman 参数生成。

openssl dhparam 可能耗时数分钟，因此放在后台线程中监督子进程运行，
主流程阻塞等待；可随时取消，取消或失败时不会留下半成品文件。
"""

from __future__ import annotations

import os
import subprocess
import tempfile
import threading
from pathlib import Path

from loguru import logger

from ..errors import DHGenerationCancelled, PKIError


class DHParamsJob:
    """在后台生成 DH 参数的任务。"""

    def __init__(self, output: Path, key_size: int = 2048, poll_interval: float = 0.5) -> None:
        self.output = output
        self.key_size = key_size
        self.poll_interval = poll_interval
        self._tmp = output.with_name(f".{output.name}.{os.getpid()}.tmp")
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

    def start(self) -> "DHParamsJob":
        self._thread = threading.Thread(target=self._run, name="dhparam", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait(self, timeout: float | None = None) -> Path:
        """
        阻塞等待任务结束。
        :raises DHGenerationCancelled: 任务被取消。
        :raises PKIError: openssl 失败或等待超时。
        """
        if self._thread is None:
            raise PKIError("DH 参数任务尚未启动")
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise PKIError(f"等待 DH 参数生成超时 ({timeout}s)")
        if self._error is not None:
            raise self._error
        return self.output

    def _cleanup(self) -> None:
        if self._tmp.exists():
            self._tmp.unlink()

    def _run(self) -> None:
        cmd = ["openssl", "dhparam", "-out", str(self._tmp), str(self.key_size)]
        logger.debug(f"Executing command: {' '.join(cmd)}")
        try:
            with tempfile.TemporaryFile() as errf:
                proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=errf)
                while proc.poll() is None:
                    if self._cancel.wait(self.poll_interval):
                        proc.terminate()
                        try:
                            proc.wait(timeout=10)
                        except subprocess.TimeoutExpired:
                            proc.kill()
                            proc.wait()
                        self._cleanup()
                        self._error = DHGenerationCancelled("DH 参数生成已取消，未写入任何文件")
                        return
                if proc.returncode != 0:
                    errf.seek(0)
                    detail = errf.read().decode("utf-8", "replace").strip()[-500:]
                    self._cleanup()
                    self._error = PKIError(f"openssl dhparam 失败 (rc={proc.returncode}): {detail}")
                    return
            if not self._tmp.exists():
                self._error = PKIError("openssl dhparam 未生成输出文件")
                return
            os.chmod(self._tmp, 0o644)
            os.replace(self._tmp, self.output)
            logger.info(f"DH 参数已生成: {self.output}")
        except OSError as e:
            self._cleanup()
            self._error = PKIError(f"无法运行 openssl dhparam: {e}")


def generate_dh_params(output: Path, key_size: int = 2048, poll_interval: float = 0.5) -> Path:
    """
    生成 DH 参数；已存在时直接复用。
    操作员中断（Ctrl+C）时取消子进程后再向上抛出。
    """
    if output.exists():
        logger.info(f"DH 参数已存在，跳过生成: {output}")
        return output

    logger.info(f"正在生成 {key_size} 位 DH 参数（可能需要数分钟）...")
    job = DHParamsJob(output, key_size, poll_interval).start()
    try:
        return job.wait()
    except KeyboardInterrupt:
        job.cancel()
        try:
            job.wait()
        except DHGenerationCancelled:
            pass
        raise
