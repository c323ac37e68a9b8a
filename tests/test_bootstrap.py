"""Tests for incremental_compiler.bootstrap: launching a detached service host."""

from __future__ import annotations

import logging
import subprocess
import sys
import time
from typing import Any

import pytest

from incremental_compiler.bootstrap import PopenServiceProcess, ServiceProcess, server_command, spawn_service
from incremental_compiler.config import Settings
from incremental_compiler.exceptions import SpawnFailed


class TestServerCommand:
    """The command line of a spawned host."""

    def test_appends_server_mode(self, settings: Settings) -> None:
        """The owner id follows ``-server``."""
        assert server_command(1234, settings) == [*settings.server_command, "-server", "1234"]

    def test_custom_command(self) -> None:
        """The base command comes from settings."""
        settings = Settings(server_command=("incremental-compiler",))
        assert server_command(7, settings) == ["incremental-compiler", "-server", "7"]


class TestSpawnService:
    """Spawning and observing the host process."""

    def test_detached_and_silent(
        self, settings: Settings, logger: logging.Logger, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The host gets no standard streams and its own session."""
        captured: dict[str, Any] = {}

        class _Popen:
            pid = 5150

            def __init__(self, args: list[str], **kwargs: Any) -> None:
                captured["args"] = args
                captured.update(kwargs)

            def poll(self) -> int | None:
                return None

        monkeypatch.setattr(subprocess, "Popen", _Popen)
        process = spawn_service(1234, settings, logger, cwd="/project")
        assert process.pid == 5150
        assert captured["args"] == server_command(1234, settings)
        assert captured["cwd"] == "/project"
        assert captured["stdin"] is subprocess.DEVNULL
        assert captured["stdout"] is subprocess.DEVNULL
        assert captured["stderr"] is subprocess.DEVNULL
        if sys.platform == "win32":
            assert captured["creationflags"] & subprocess.CREATE_NO_WINDOW
        else:
            assert captured["start_new_session"] is True

    def test_launch_failure(self, logger: logging.Logger) -> None:
        """A missing executable raises SpawnFailed carrying the command."""
        settings = Settings(server_command=("/nonexistent/incremental-compiler",))
        with pytest.raises(SpawnFailed) as exc_info:
            spawn_service(1234, settings, logger)
        assert exc_info.value.command == ["/nonexistent/incremental-compiler", "-server", "1234"]

    @pytest.mark.parametrize(
        "error",
        [ValueError("embedded null byte"), subprocess.SubprocessError("preexec failed")],
        ids=["value_error", "subprocess_error"],
    )
    def test_rejected_arguments(
        self, settings: Settings, logger: logging.Logger, monkeypatch: pytest.MonkeyPatch, error: Exception
    ) -> None:
        """Popen errors other than OSError also surface as SpawnFailed."""

        def _popen(args: list[str], **kwargs: Any) -> None:
            raise error

        monkeypatch.setattr(subprocess, "Popen", _popen)
        with pytest.raises(SpawnFailed) as exc_info:
            spawn_service(1234, settings, logger)
        assert exc_info.value.__cause__ is error

    def test_has_exited(self, logger: logging.Logger) -> None:
        """The handle reports when the real process has terminated."""
        settings = Settings(server_command=(sys.executable, "-c", "import sys; sys.exit(3)"))
        process = spawn_service(1234, settings, logger)
        assert isinstance(process, ServiceProcess)
        deadline = time.monotonic() + 10
        while not process.has_exited() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert process.has_exited()
        assert process.returncode == 3

    def test_running_process_has_not_exited(self, logger: logging.Logger) -> None:
        """A process that is still running is reported as such."""
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            assert PopenServiceProcess(proc).has_exited() is False
        finally:
            proc.kill()
            proc.wait(timeout=10)
