"""Lifecycle of the single inference backend child process.

The manager is a two-state resource: either no process, or exactly one live
handle. `restart` is `stop` followed by `start` under one lock, so a second
backend is never spawned while the first may still be alive.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)


class ProcessError(RuntimeError):
    pass


class SpawnError(ProcessError):
    pass


class ShutdownError(ProcessError):
    pass


class ProcessManager:
    def __init__(
        self,
        *,
        executable: str = "llama-server",
        host: str = "127.0.0.1",
        port: int = 8080,
        log_path: str | Path | None = None,
        term_grace_s: float = 10.0,
        kill_grace_s: float = 5.0,
    ) -> None:
        self.executable = executable
        self.host = host
        self.port = int(port)
        self.log_path = Path(log_path) if log_path is not None else None
        self.term_grace_s = float(term_grace_s)
        self.kill_grace_s = float(kill_grace_s)

        self._process: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def build_command(self, path: str, args: Sequence[str], *, executable: str | None = None) -> list[str]:
        return [executable or self.executable, "-m", path, *args, "--host", self.host, "--port", str(self.port)]

    async def start(self, path: str, args: Sequence[str], *, executable: str | None = None) -> None:
        async with self._lock:
            await self._start_locked(path, args, executable=executable)

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def restart(self, path: str, args: Sequence[str], *, executable: str | None = None) -> None:
        async with self._lock:
            await self._stop_locked()
            await self._start_locked(path, args, executable=executable)

    async def _start_locked(self, path: str, args: Sequence[str], *, executable: str | None) -> None:
        if self._process is not None:
            # Only reachable after a failed stop; the old handle may still be alive.
            raise SpawnError(f"Backend process is still held (pid={self._process.pid}); refusing to spawn another")

        cmd = self.build_command(path, args, executable=executable)
        logger.info("Starting backend: %s", " ".join(cmd))

        try:
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "ab") as logf:
                    proc = await asyncio.create_subprocess_exec(
                        *cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=logf,
                        stderr=logf,
                        start_new_session=True,
                    )
            else:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            raise SpawnError(f"Failed to spawn {cmd[0]!r}: {exc}") from exc

        self._process = proc
        logger.info("Backend started pid=%s port=%s", proc.pid, self.port)

    async def _stop_locked(self) -> None:
        proc = self._process
        if proc is None:
            return

        if proc.returncode is None:
            logger.info("Stopping backend pid=%s", proc.pid)
            if not await self._signal_and_wait(proc, signal.SIGTERM, self.term_grace_s):
                logger.warning(
                    "Backend pid=%s did not exit within %.1fs of SIGTERM; sending SIGKILL",
                    proc.pid,
                    self.term_grace_s,
                )
                if not await self._signal_and_wait(proc, signal.SIGKILL, self.kill_grace_s):
                    raise ShutdownError(f"Backend pid={proc.pid} did not exit after SIGKILL")
        else:
            logger.info("Backend pid=%s had already exited (code=%s)", proc.pid, proc.returncode)

        self._process = None

    @staticmethod
    async def _signal_and_wait(proc: asyncio.subprocess.Process, sig: int, timeout_s: float) -> bool:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        return True
