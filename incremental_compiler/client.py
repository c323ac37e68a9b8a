"""Client mode: find or start the service for the owner and forward one compile.

The connection loop is a small state machine::

    ATTEMPTING ──ok──────────────▶ SUCCEEDED / FAILED (by result)
        │
        ├─unreachable, not spawned──▶ spawn, WAITING ──▶ ATTEMPTING
        ├─unreachable, spawned, alive──▶ WAITING ──▶ ATTEMPTING
        ├─unreachable, spawned, exited──▶ FAILED
        └─any other error──▶ FAILED

At most one host is spawned per invocation.  The loop has no deadline: a
spawned host that neither answers nor exits keeps the client polling.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Sequence
from enum import Enum

from incremental_compiler.bootstrap import ServiceProcess, spawn_service
from incremental_compiler.config import Settings
from incremental_compiler.exceptions import RequestFailed, ServiceUnreachable, SpawnFailed
from incremental_compiler.identity import OwnerResolver, ProcessOwnerResolver, resolve_owner_id
from incremental_compiler.logging_utils import CLIENT_LOG_FILE, open_log
from incremental_compiler.model import CompileOptions, CompileResult, InvocationContext
from incremental_compiler.options import parse_arguments
from incremental_compiler.service import ServiceClient

__all__ = [
    "ConnectionLoop",
    "LoopState",
    "Spawner",
    "run_client",
]

Spawner = Callable[[int, Settings, logging.Logger], ServiceProcess]
"""Starts a service host for an owner id; raises ``SpawnFailed`` on failure."""


class LoopState(Enum):
    """States of the connection loop."""

    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ConnectionLoop:
    """Retries a request across service start-up, spawning the service at most once.

    Args:
        request: Performs one attempt; raises ``ServiceUnreachable`` when no
            service answers.
        spawn: Starts the service and returns its handle.
        logger: Log handle for progress and diagnostics.
        sleep: Pause function, injectable for tests.
        interval: Seconds to pause between attempts.

    """

    def __init__(
        self,
        request: Callable[[], CompileResult],
        spawn: Callable[[], ServiceProcess],
        logger: logging.Logger,
        *,
        sleep: Callable[[float], None] = time.sleep,
        interval: float = 0.1,
    ) -> None:
        """Initialize the loop in the ``ATTEMPTING`` state."""
        self._request = request
        self._spawn = spawn
        self._logger = logger
        self._sleep = sleep
        self._interval = interval
        self.state = LoopState.ATTEMPTING
        self.process: ServiceProcess | None = None
        self.spawn_count = 0
        self.attempts = 0

    def run(self) -> int:
        """Drive the loop to completion and return the exit code."""
        while True:
            self.state = LoopState.ATTEMPTING
            self.attempts += 1
            started = time.monotonic()
            self._logger.info("Request to server")
            try:
                result = self._request()
            except ServiceUnreachable:
                if not self._on_unreachable():
                    return self._finish(LoopState.FAILED)
                continue
            except RequestFailed as exc:
                self._logger.error("Error in request: %s", exc)
                if exc.remote_traceback:
                    self._logger.debug("Remote traceback:\n%s", exc.remote_traceback)
                return self._finish(LoopState.FAILED)
            except Exception:
                self._logger.exception("Error in request")
                return self._finish(LoopState.FAILED)

            elapsed = time.monotonic() - started
            self._logger.info("Done: Succeeded=%s. Duration=%.3fsec.", result.succeeded, elapsed)
            for warning in result.warnings:
                self._logger.warning(warning)
            for error in result.errors:
                self._logger.error(error)
            return self._finish(LoopState.SUCCEEDED if result.succeeded else LoopState.FAILED)

    def _on_unreachable(self) -> bool:
        """Handle an unreachable service; return whether to keep trying."""
        if self.process is None:
            self._logger.info("Spawn server")
            try:
                self.process = self._spawn()
            except SpawnFailed as exc:
                self._logger.error("Failed to spawn server: %s", exc)
                return False
            except Exception:
                self._logger.exception("Failed to spawn server")
                return False
            self.spawn_count += 1
        else:
            try:
                exited = self.process.has_exited()
            except Exception:
                self._logger.exception("Failed to check server process (pid=%d)", self.process.pid)
                return False
            if exited:
                self._logger.error("Server process exited before answering (pid=%d)", self.process.pid)
                return False
        self.state = LoopState.WAITING
        self._sleep(self._interval)
        return True

    def _finish(self, state: LoopState) -> int:
        self.state = state
        return 0 if state is LoopState.SUCCEEDED else 1


def run_client(
    args: Sequence[str],
    *,
    cwd: str | None = None,
    settings: Settings | None = None,
    resolver: OwnerResolver | None = None,
    client: ServiceClient | None = None,
    spawner: Spawner | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> int:
    """Run client mode and return the process exit code.

    Every collaborator is injectable; defaults come from *settings*
    (``Settings.from_env()`` when omitted).
    """
    working_directory = os.path.abspath(cwd if cwd is not None else os.getcwd())
    settings = settings if settings is not None else Settings.from_env(cwd=working_directory)
    if logger is None:
        with open_log("Client", CLIENT_LOG_FILE, settings) as log:
            return _run_client(args, working_directory, settings, resolver, client, spawner, sleep, log)
    return _run_client(args, working_directory, settings, resolver, client, spawner, sleep, logger)


def _run_client(
    args: Sequence[str],
    working_directory: str,
    settings: Settings,
    resolver: OwnerResolver | None,
    client: ServiceClient | None,
    spawner: Spawner | None,
    sleep: Callable[[float], None],
    logger: logging.Logger,
) -> int:
    logger.info("Started")
    try:
        options = parse_arguments(args, working_directory)
    except (OSError, ValueError) as exc:
        logger.error("Error in parsing arguments: %s", exc)
        return 1

    logger.info("CurrentDir: %s", working_directory)
    logger.info("Output: %s", options.output)
    if not options.output:
        logger.error("No output")
        return 1

    resolver = resolver if resolver is not None else ProcessOwnerResolver(
        settings.owner_process_name, settings.owner_define_prefix
    )
    owner_id = resolve_owner_id(resolver, options.defines)
    if owner_id == 0:
        logger.error("No parent process")
        return 1
    logger.info("Parent process ID: %d", owner_id)

    context = InvocationContext(owner_id=owner_id, working_directory=working_directory)
    client = client if client is not None else ServiceClient(settings, logger)
    spawn = spawner if spawner is not None else _default_spawner(working_directory)
    loop = ConnectionLoop(
        request=lambda: _send(client, context, options),
        spawn=lambda: spawn(context.owner_id, settings, logger),
        logger=logger,
        sleep=sleep,
        interval=settings.poll_interval,
    )
    return loop.run()


def _send(client: ServiceClient, context: InvocationContext, options: CompileOptions) -> CompileResult:
    return client.request(context.owner_id, context.working_directory, options)


def _default_spawner(working_directory: str) -> Spawner:
    def spawn(owner_id: int, settings: Settings, logger: logging.Logger) -> ServiceProcess:
        return spawn_service(owner_id, settings, logger, cwd=working_directory)

    return spawn
