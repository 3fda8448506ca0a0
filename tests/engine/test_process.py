import asyncio
import os
import stat
import sys

import pytest

from chatrelay.engine.process import ProcessManager, ShutdownError, SpawnError

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals and shell scripts")


def _write_script(path, body: str):
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def fake_backend(tmp_path):
    """A stand-in backend that records its argv and then idles."""
    args_file = tmp_path / "argv.txt"
    script = _write_script(tmp_path / "fake-backend", f'echo "$@" > "{args_file}"\nexec sleep 60')
    return script, args_file


class TrackingManager(ProcessManager):
    """Records, at every spawn, how many earlier backends were still alive."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.spawned = []
        self.alive_at_spawn = []

    async def _start_locked(self, path, args, *, executable):
        self.alive_at_spawn.append(sum(1 for p in self.spawned if p.returncode is None))
        await super()._start_locked(path, args, executable=executable)
        self.spawned.append(self._process)


async def _wait_for_file(path, timeout_s: float = 5.0) -> str:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while asyncio.get_running_loop().time() < deadline:
        if path.exists() and path.read_text(encoding="utf-8").strip():
            return path.read_text(encoding="utf-8").strip()
        await asyncio.sleep(0.02)
    raise AssertionError(f"{path} was not written")


def test_build_command_appends_model_args_host_and_port():
    pm = ProcessManager(executable="llama-server", port=8123)
    assert pm.build_command("/models/a.gguf", ["-c", "2048"]) == [
        "llama-server",
        "-m",
        "/models/a.gguf",
        "-c",
        "2048",
        "--host",
        "127.0.0.1",
        "--port",
        "8123",
    ]
    assert pm.build_command("/m", [], executable="/opt/other")[0] == "/opt/other"
    assert pm.base_url == "http://127.0.0.1:8123"

    ipv6 = ProcessManager(host="::1", port=8124)
    assert ipv6.build_command("/m", [])[-4:] == ["--host", "::1", "--port", "8124"]
    assert ipv6.base_url == "http://[::1]:8124"


@pytest.mark.anyio
async def test_start_and_stop(fake_backend):
    script, args_file = fake_backend
    pm = ProcessManager(executable=str(script), port=9100, term_grace_s=5.0)

    await pm.start("/models/a.gguf", ["-c", "512"])
    try:
        assert pm.running
        assert pm.pid is not None
        assert await _wait_for_file(args_file) == "-m /models/a.gguf -c 512 --host 127.0.0.1 --port 9100"
    finally:
        await pm.stop()

    assert not pm.running
    assert pm.pid is None


@pytest.mark.anyio
async def test_stop_without_process_is_noop():
    pm = ProcessManager()
    await pm.stop()
    assert not pm.running


@pytest.mark.anyio
async def test_start_missing_executable_raises_spawn_error(tmp_path):
    pm = ProcessManager(executable=str(tmp_path / "does-not-exist"))
    with pytest.raises(SpawnError):
        await pm.start("/m", [])
    assert not pm.running


@pytest.mark.anyio
async def test_start_non_executable_raises_spawn_error(tmp_path):
    path = tmp_path / "not-executable"
    path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    os.chmod(path, 0o644)
    pm = ProcessManager(executable=str(path))
    with pytest.raises(SpawnError):
        await pm.start("/m", [])


@pytest.mark.anyio
async def test_start_refuses_second_live_process(fake_backend):
    script, _ = fake_backend
    pm = ProcessManager(executable=str(script))
    await pm.start("/a", [])
    try:
        with pytest.raises(SpawnError):
            await pm.start("/b", [])
    finally:
        await pm.stop()


@pytest.mark.anyio
async def test_stop_escalates_to_sigkill(tmp_path):
    stubborn = _write_script(tmp_path / "stubborn", "trap '' TERM\nexec sleep 60")
    pm = ProcessManager(executable=str(stubborn), term_grace_s=0.3, kill_grace_s=5.0)
    await pm.start("/m", [])
    # Give the shell time to install the trap before signalling.
    await asyncio.sleep(0.2)
    await pm.stop()
    assert not pm.running


@pytest.mark.anyio
async def test_restart_replaces_process(fake_backend):
    script, args_file = fake_backend
    pm = ProcessManager(executable=str(script))
    await pm.start("/a", [])
    first_pid = pm.pid
    try:
        args_file.unlink(missing_ok=True)
        await pm.restart("/b", ["--x"])
        assert pm.pid != first_pid
        assert "-m /b --x" in await _wait_for_file(args_file)
    finally:
        await pm.stop()


@pytest.mark.anyio
async def test_concurrent_restarts_never_overlap(fake_backend):
    script, _ = fake_backend
    pm = TrackingManager(executable=str(script), term_grace_s=5.0)

    await asyncio.gather(*(pm.restart(f"/model-{i}", []) for i in range(6)))
    try:
        assert len(pm.spawned) == 6
        assert pm.alive_at_spawn == [0] * 6
        assert sum(1 for p in pm.spawned if p.returncode is None) == 1
    finally:
        await pm.stop()


@pytest.mark.anyio
async def test_failed_stop_blocks_restart(fake_backend, monkeypatch):
    script, _ = fake_backend
    pm = TrackingManager(executable=str(script))
    await pm.start("/a", [])

    async def never_exits(proc, sig, timeout_s):
        return False

    monkeypatch.setattr(ProcessManager, "_signal_and_wait", staticmethod(never_exits))
    with pytest.raises(ShutdownError):
        await pm.restart("/b", [])
    assert len(pm.spawned) == 1
    assert pm.running

    with pytest.raises(SpawnError):
        await pm.start("/b", [])

    monkeypatch.undo()
    await pm.stop()
    assert not pm.running


@pytest.mark.anyio
async def test_backend_output_goes_to_log_file(tmp_path):
    chatty = _write_script(tmp_path / "chatty", 'echo "loading $2"\nexec sleep 60')
    log_path = tmp_path / "logs" / "backend.log"
    pm = ProcessManager(executable=str(chatty), log_path=log_path)
    await pm.start("/models/a.gguf", [])
    try:
        assert await _wait_for_file(log_path) == "loading /models/a.gguf"
    finally:
        await pm.stop()
