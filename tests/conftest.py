"""Shared test fixtures and fakes for incremental_compiler tests."""

from __future__ import annotations

import logging
import os
import shutil
import socket
import sys
import tempfile
import threading
from collections.abc import Iterable, Iterator
from pathlib import Path

import pytest

from incremental_compiler.config import Settings
from incremental_compiler.model import CompileOptions, CompileResult
from incremental_compiler.server import ServiceHost

FAKE_COMPILER = str(Path(__file__).parent / "fake_compiler.py")

requires_unix_sockets = pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs AF_UNIX sockets")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProcess:
    """``ServiceProcess`` whose exit status is set by the test."""

    def __init__(self, pid: int = 4242, exited: bool = False) -> None:
        self.pid = pid
        self.exited = exited
        self.exit_checks = 0

    def has_exited(self) -> bool:
        self.exit_checks += 1
        return self.exited


class FakeResolver:
    """``OwnerResolver`` returning canned ids."""

    def __init__(self, explicit: int | None = None, lookup: int | None = None) -> None:
        self.explicit = explicit
        self.lookup = lookup
        self.lookups = 0

    def resolve_explicit(self, defines: Iterable[str]) -> int | None:
        return self.explicit

    def resolve_by_lookup(self) -> int | None:
        self.lookups += 1
        return self.lookup


class FakeServiceClient:
    """Service client replaying a script of results and exceptions."""

    def __init__(self, outcomes: Iterable[CompileResult | BaseException]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[int, str, CompileOptions]] = []

    def request(self, owner_id: int, working_directory: str, options: CompileOptions) -> CompileResult:
        self.calls.append((owner_id, working_directory, options))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeCompiler:
    """``Compiler`` returning a fixed result and recording its calls."""

    def __init__(self, result: CompileResult | None = None, error: Exception | None = None) -> None:
        self.result = result if result is not None else CompileResult(succeeded=True)
        self.error = error
        self.calls: list[tuple[str, CompileOptions]] = []

    def compile(self, working_directory: str, options: CompileOptions) -> CompileResult:
        self.calls.append((working_directory, options))
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runtime_dir() -> Iterator[str]:
    """A short temporary directory for endpoint sockets.

    ``tmp_path`` can exceed the ``AF_UNIX`` path length limit on some
    platforms, so sockets live under a short ``/tmp`` prefix instead.
    """
    path = tempfile.mkdtemp(prefix="incc-")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(runtime_dir: str, tmp_path: Path) -> Settings:
    """Settings with fast intervals and the fake compiler."""
    return Settings(
        runtime_dir=runtime_dir,
        log_dir=str(tmp_path / "logs"),
        poll_interval=0.01,
        owner_check_interval=0.05,
        compiler_command=(sys.executable, FAKE_COMPILER),
        server_command=(sys.executable, "-m", "incremental_compiler"),
    )


@pytest.fixture
def logger() -> logging.Logger:
    """A logger that propagates to ``caplog``."""
    log = logging.getLogger("incremental_compiler.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    """A compiler that succeeds with one warning."""
    return FakeCompiler(CompileResult(succeeded=True, warnings=["a.cs(1,1): warning CS0168: unused"]))


@pytest.fixture
def running_host(settings: Settings, logger: logging.Logger, fake_compiler: FakeCompiler) -> Iterator[ServiceHost]:
    """A service host for this test process, served from a background thread."""
    if not hasattr(socket, "AF_UNIX"):
        pytest.skip("needs AF_UNIX sockets")
    host = ServiceHost(os.getpid(), logger, settings, compiler=fake_compiler)
    thread = threading.Thread(target=host.run, daemon=True)
    thread.start()
    assert host.listening.wait(5), "service host did not start listening"
    try:
        yield host
    finally:
        host.stop()
        thread.join(timeout=5)
