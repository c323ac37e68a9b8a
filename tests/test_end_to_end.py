"""End-to-end tests: a real client spawning a real service host process."""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import FAKE_COMPILER, FakeResolver, requires_unix_sockets

from incremental_compiler.bootstrap import PopenServiceProcess, spawn_service
from incremental_compiler.client import run_client
from incremental_compiler.config import Settings
from incremental_compiler.service import endpoint_path

pytestmark = [
    requires_unix_sockets,
    pytest.mark.skipif(sys.platform == "win32", reason="POSIX service host"),
]

_REPO_ROOT = str(Path(__file__).resolve().parent.parent)


def _wait_exited(process: PopenServiceProcess, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while not process.has_exited():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.02)
    return True


@pytest.fixture
def e2e_settings(runtime_dir: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Settings shared by this process and the spawned host through the environment."""
    monkeypatch.setenv("INCC_RUNTIME_DIR", runtime_dir)
    monkeypatch.setenv("INCC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("INCC_COMPILER", f"{sys.executable} {FAKE_COMPILER}")
    monkeypatch.setenv("INCC_POLL_INTERVAL", "0.05")
    monkeypatch.setenv("INCC_OWNER_CHECK_INTERVAL", "0.2")
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", _REPO_ROOT if not pythonpath else os.pathsep.join([_REPO_ROOT, pythonpath]))
    return Settings.from_env(cwd=str(tmp_path))


@pytest.fixture
def spawned(e2e_settings: Settings) -> Iterator[list[PopenServiceProcess]]:
    """Hosts started by the client; terminated after the test."""
    processes: list[PopenServiceProcess] = []
    try:
        yield processes
    finally:
        for process in processes:
            if not process.has_exited():
                os.kill(process.pid, signal.SIGTERM)
                if not _wait_exited(process):
                    os.kill(process.pid, signal.SIGKILL)
                    _wait_exited(process)


class TestClientSpawnsHost:
    """The full client → spawn → compile → reuse cycle."""

    def test_spawn_compile_reuse(
        self,
        e2e_settings: Settings,
        spawned: list[PopenServiceProcess],
        tmp_path: Path,
        logger: logging.Logger,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """The first invocation starts a host; later ones reuse it until it is stopped."""
        owner_id = os.getpid()

        def spawner(owner: int, settings: Settings, log: logging.Logger) -> PopenServiceProcess:
            process = spawn_service(owner, settings, log, cwd=str(tmp_path))
            spawned.append(process)
            return process

        def client(args: list[str]) -> int:
            return run_client(
                args,
                cwd=str(tmp_path),
                settings=e2e_settings,
                resolver=FakeResolver(lookup=owner_id),
                spawner=spawner,
                logger=logger,
            )

        with caplog.at_level(logging.DEBUG, logger=logger.name):
            assert client(["-out:a.dll", "warn.cs"]) == 0
        assert len(spawned) == 1
        assert "Spawn server" in caplog.messages
        assert any("warning CS0168" in m for m in caplog.messages)
        assert (tmp_path / "a.dll.args").read_text().splitlines() == ["-out:a.dll", "warn.cs"]

        caplog.clear()
        with caplog.at_level(logging.DEBUG, logger=logger.name):
            assert client(["-out:b.dll", "fail.cs"]) == 1
        assert len(spawned) == 1
        assert "Spawn server" not in caplog.messages
        assert any("error CS1002" in m for m in caplog.messages)

        host = spawned[0]
        assert host.has_exited() is False
        os.kill(host.pid, signal.SIGTERM)
        assert _wait_exited(host)
        assert host.returncode == 0
        assert not os.path.exists(endpoint_path(owner_id, e2e_settings))

        server_log = (tmp_path / "logs" / "IncrementalCompiler-Server.log").read_text()
        assert "|Server|Started" in server_log
        assert "|Server|Stopped" in server_log

    def test_host_exits_early(
        self,
        e2e_settings: Settings,
        spawned: list[PopenServiceProcess],
        tmp_path: Path,
        logger: logging.Logger,
    ) -> None:
        """A host that dies before answering makes the client fail instead of waiting forever."""
        broken = Settings(
            runtime_dir=e2e_settings.runtime_dir,
            log_dir=e2e_settings.log_dir,
            poll_interval=0.05,
            server_command=(sys.executable, "-c", "import sys; sys.exit(4)"),
        )

        def spawner(owner: int, settings: Settings, log: logging.Logger) -> PopenServiceProcess:
            process = spawn_service(owner, settings, log, cwd=str(tmp_path))
            spawned.append(process)
            return process

        code = run_client(
            ["-out:a.dll", "a.cs"],
            cwd=str(tmp_path),
            settings=broken,
            resolver=FakeResolver(lookup=os.getpid()),
            spawner=spawner,
            logger=logger,
        )
        assert code == 1
        assert len(spawned) == 1
        assert spawned[0].returncode == 4
