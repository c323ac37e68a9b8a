"""Launching a service host for an owner.

The host is this same program started in server mode (``-server <owner id>``),
detached from the client: its own session on POSIX, no console window on
Windows, and no inherited standard streams.  The client keeps the handle only
to ask whether the host has already exited; it never waits on it or kills it.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Any, Protocol, runtime_checkable

from incremental_compiler.config import Settings
from incremental_compiler.exceptions import SpawnFailed

__all__ = [
    "PopenServiceProcess",
    "ServiceProcess",
    "server_command",
    "spawn_service",
]


@runtime_checkable
class ServiceProcess(Protocol):
    """Handle to a launched service host."""

    @property
    def pid(self) -> int:
        """OS process id."""
        ...

    def has_exited(self) -> bool:
        """Return whether the process has terminated."""
        ...


class PopenServiceProcess:
    """``ServiceProcess`` backed by a ``subprocess.Popen``."""

    __slots__ = ("_proc",)

    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        """Wrap a started process."""
        self._proc = proc

    @property
    def pid(self) -> int:
        """OS process id."""
        return self._proc.pid

    def has_exited(self) -> bool:
        """Return whether the process has terminated (reaping it if so)."""
        return self._proc.poll() is not None

    @property
    def returncode(self) -> int | None:
        """Exit status once the process has exited, else ``None``."""
        return self._proc.returncode


def server_command(owner_id: int, settings: Settings) -> list[str]:
    """Return the command line that starts a service host for *owner_id*."""
    return [*settings.server_command, "-server", str(owner_id)]


def _detach_kwargs() -> dict[str, Any]:
    if sys.platform == "win32":
        flags = subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP
        return {"creationflags": flags}
    return {"start_new_session": True}


def spawn_service(
    owner_id: int,
    settings: Settings,
    logger: logging.Logger,
    cwd: str | None = None,
) -> PopenServiceProcess:
    """Start a detached service host bound to *owner_id*.

    Raises:
        SpawnFailed: If the process could not be started.

    """
    args = server_command(owner_id, settings)
    logger.info("Starting server: %s", " ".join(args))
    try:
        proc = subprocess.Popen(  # noqa: S603
            args,
            cwd=cwd if cwd is not None else os.getcwd(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            **_detach_kwargs(),
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        raise SpawnFailed(args, str(exc)) from exc
    logger.debug("Server started: pid=%d", proc.pid)
    return PopenServiceProcess(proc)
