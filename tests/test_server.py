"""Tests for incremental_compiler.server: the service host and server mode."""

from __future__ import annotations

import logging
import os
import signal
import socket
import stat
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest
from conftest import FakeCompiler, requires_unix_sockets

from incremental_compiler.config import Settings
from incremental_compiler.log import Level, Message
from incremental_compiler.logging_utils import SERVER_LOG_FILE
from incremental_compiler.model import CompileOptions, CompileRequest, CompileResult
from incremental_compiler.server import CompilerServiceImpl, ServiceHost, run_server
from incremental_compiler.service import ServiceClient, endpoint_path


def _start(host: ServiceHost) -> tuple[threading.Thread, list[int]]:
    """Run *host* in a thread; return the thread and a list receiving the exit code."""
    codes: list[int] = []
    thread = threading.Thread(target=lambda: codes.append(host.run()), daemon=True)
    thread.start()
    return thread, codes


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(timeout=10)
    return proc.pid


# ---------------------------------------------------------------------------
# CompilerServiceImpl
# ---------------------------------------------------------------------------


class TestCompilerServiceImpl:
    """The RPC-facing implementation."""

    def test_compile_delegates(self, logger: logging.Logger) -> None:
        """compile runs the backend in the request's working directory."""
        compiler = FakeCompiler(CompileResult(succeeded=False, errors=["e"]))
        impl = CompilerServiceImpl(compiler, logger)
        options = CompileOptions(output="a.dll", files=["a.cs"])
        result = impl.compile(CompileRequest(owner_id=1, working_directory="/w", options=options))
        assert result == CompileResult(succeeded=False, errors=["e"])
        assert compiler.calls == [("/w", options)]

    def test_compile_emits_log(self, logger: logging.Logger) -> None:
        """compile reports what it is building through emit_log."""
        messages: list[Message] = []
        impl = CompilerServiceImpl(FakeCompiler(), logger)
        impl.compile(
            CompileRequest(owner_id=1, working_directory="/w", options=CompileOptions(output="a.dll", files=["a.cs"])),
            emit_log=messages.append,
        )
        assert len(messages) == 1
        assert messages[0].level is Level.INFO
        assert messages[0].message == "Compiling a.dll"
        assert messages[0].extra["files"] == 1

    def test_ping(self, logger: logging.Logger) -> None:
        """ping returns the host pid."""
        assert CompilerServiceImpl(FakeCompiler(), logger).ping() == os.getpid()


# ---------------------------------------------------------------------------
# ServiceHost
# ---------------------------------------------------------------------------


@requires_unix_sockets
class TestServiceHost:
    """Endpoint lifecycle and owner binding."""

    def test_stop_removes_socket(self, settings: Settings, logger: logging.Logger) -> None:
        """A stopped host exits 0 and removes its socket file."""
        host = ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler())
        thread, codes = _start(host)
        assert host.listening.wait(5)
        assert os.path.exists(host.endpoint)
        host.stop()
        thread.join(timeout=5)
        assert codes == [0]
        assert not os.path.exists(host.endpoint)

    def test_socket_is_private(self, running_host: ServiceHost) -> None:
        """Only the owning user may connect."""
        mode = stat.S_IMODE(os.stat(running_host.endpoint).st_mode)
        assert mode == 0o600

    def test_serves_several_clients(
        self, running_host: ServiceHost, settings: Settings, logger: logging.Logger
    ) -> None:
        """Requests from successive clients are all served."""
        client = ServiceClient(settings, logger)
        for i in range(3):
            result = client.request(os.getpid(), "/w", CompileOptions(output=f"{i}.dll"))
            assert result.succeeded

    def test_second_host_defers_to_first(
        self, running_host: ServiceHost, settings: Settings, logger: logging.Logger, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A host started while another answers exits 0 and leaves the first one serving."""
        second = ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler())
        with caplog.at_level(logging.DEBUG, logger=logger.name):
            assert second.run() == 0
        assert any("already running" in r.getMessage() for r in caplog.records)
        assert ServiceClient(settings, logger).ping(os.getpid()) == os.getpid()

    @pytest.mark.skipif(sys.platform == "win32", reason="flock is POSIX-only")
    def test_startup_waits_for_lock(self, settings: Settings, logger: logging.Logger) -> None:
        """A host does not touch the endpoint while another startup holds the lock."""
        import fcntl

        path = endpoint_path(os.getpid(), settings)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path + ".lock", "a+b") as held:
            fcntl.flock(held.fileno(), fcntl.LOCK_EX)
            host = ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler())
            thread, codes = _start(host)
            try:
                assert not host.listening.wait(0.5)
                assert not os.path.exists(path)
            finally:
                fcntl.flock(held.fileno(), fcntl.LOCK_UN)
        try:
            assert host.listening.wait(5)
            assert ServiceClient(settings, logger).ping(os.getpid()) == os.getpid()
        finally:
            host.stop()
            thread.join(timeout=5)
        assert codes == [0]

    def test_concurrent_startups_leave_one_host(self, settings: Settings, logger: logging.Logger) -> None:
        """Of two hosts started together, one serves and the other defers to it."""
        hosts = [ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler()) for _ in range(2)]
        started = [_start(host) for host in hosts]
        try:
            finished: list[int] = []
            for _ in range(100):
                finished = [i for i, (thread, _) in enumerate(started) if not thread.is_alive()]
                if finished:
                    break
                time.sleep(0.05)
            assert len(finished) == 1
            deferred = finished[0]
            assert started[deferred][1] == [0]
            assert not hosts[deferred].listening.is_set()
            assert hosts[1 - deferred].listening.is_set()
            assert ServiceClient(settings, logger).ping(os.getpid()) == os.getpid()
        finally:
            for host in hosts:
                host.stop()
            for thread, _ in started:
                thread.join(timeout=5)

    def test_replaces_stale_socket(self, settings: Settings, logger: logging.Logger) -> None:
        """A socket file left behind by a dead host is replaced."""
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(endpoint_path(os.getpid(), settings))
        stale.close()
        host = ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler())
        thread, codes = _start(host)
        try:
            assert host.listening.wait(5)
            assert ServiceClient(settings, logger).ping(os.getpid()) == os.getpid()
        finally:
            host.stop()
            thread.join(timeout=5)
        assert codes == [0]

    def test_stops_when_owner_exits(self, settings: Settings, logger: logging.Logger) -> None:
        """Once the owner is gone the host stops, exits 0 and removes its socket."""
        owner_alive = threading.Event()
        owner_alive.set()
        host = ServiceHost(4242, logger, settings, compiler=FakeCompiler(), is_alive=lambda pid: owner_alive.is_set())
        thread, codes = _start(host)
        assert host.listening.wait(5)
        owner_alive.clear()
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert codes == [0]
        assert not os.path.exists(host.endpoint)

    def test_owner_not_running_at_start(self, settings: Settings, logger: logging.Logger) -> None:
        """A host whose owner is already gone exits 1 without listening."""
        host = ServiceHost(4242, logger, settings, compiler=FakeCompiler(), is_alive=lambda pid: False)
        assert host.run() == 1
        assert not host.listening.is_set()
        assert not os.path.exists(host.endpoint)

    def test_owner_zero_is_unbound(self, settings: Settings, logger: logging.Logger) -> None:
        """Owner id 0 never checks liveness."""
        checked: list[int] = []

        def is_alive(pid: int) -> bool:
            checked.append(pid)
            return False

        host = ServiceHost(0, logger, settings, compiler=FakeCompiler(), is_alive=is_alive)
        thread, codes = _start(host)
        assert host.listening.wait(5)
        assert not host._stop.wait(settings.owner_check_interval * 4)
        host.stop()
        thread.join(timeout=5)
        assert codes == [0]
        assert checked == []

    def test_unbindable_endpoint(self, tmp_path: Path, logger: logging.Logger) -> None:
        """A runtime directory that cannot hold the socket is a startup failure."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        settings = Settings(runtime_dir=str(blocker / "sub"), log_dir=str(tmp_path))
        host = ServiceHost(os.getpid(), logger, settings, compiler=FakeCompiler())
        assert host.run() == 1


# ---------------------------------------------------------------------------
# run_server
# ---------------------------------------------------------------------------


class TestRunServer:
    """Server mode argument handling."""

    @pytest.fixture(autouse=True)
    def _no_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(signal, "signal", lambda signum, handler: None)

    @pytest.mark.parametrize("arg", ["abc", "12x", "1.5"])
    def test_bad_owner_argument(self, settings: Settings, arg: str) -> None:
        """An owner id that does not parse exits 1 and logs the argument."""
        assert run_server(["-server", arg], settings=settings) == 1
        content = (Path(settings.log_dir) / SERVER_LOG_FILE).read_text()
        assert "|Server|Started" in content
        assert f"ERROR|Server|Error in parsing parentProcessId (arg={arg})" in content

    @pytest.mark.parametrize("arg", ["-5", "-1"])
    def test_negative_owner_parses(self, settings: Settings, arg: str) -> None:
        """A negative id is a valid integer that names no running owner."""
        assert run_server(["-server", arg], settings=settings, compiler=FakeCompiler()) == 1
        content = (Path(settings.log_dir) / SERVER_LOG_FILE).read_text()
        assert "Error in parsing parentProcessId" not in content
        assert f"ERROR|Server|Owner process {arg} is not running" in content

    @requires_unix_sockets
    def test_dead_owner(self, settings: Settings) -> None:
        """A host for an owner that has exited does not start."""
        assert run_server(["-server", str(_dead_pid())], settings=settings, compiler=FakeCompiler()) == 1
