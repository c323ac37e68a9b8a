"""Server mode: the long-running service host bound to an owner process.

A host listens on ``<runtime_dir>/incc-<owner id>.sock`` and serves compile
requests one connection at a time.  Its lifetime is bound to the owner: a
watcher thread polls the owner pid and stops the host once the owner has gone
away, after which the socket file is removed and the process exits.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import socket
import sys
import threading
from collections.abc import Callable, Iterator, Sequence

from incremental_compiler.compiler import CommandCompiler, Compiler
from incremental_compiler.config import Settings
from incremental_compiler.exceptions import RequestFailed, ServiceUnreachable
from incremental_compiler.identity import owner_is_alive
from incremental_compiler.log import Message
from incremental_compiler.logging_utils import SERVER_LOG_FILE, open_log
from incremental_compiler.model import CompileRequest, CompileResult
from incremental_compiler.rpc import EmitLog, RpcServer, serve_unix
from incremental_compiler.service import CompilerService, ServiceClient, endpoint_path

__all__ = [
    "CompilerServiceImpl",
    "ServiceHost",
    "run_server",
]

_ACCEPT_TIMEOUT = 0.2


@contextlib.contextmanager
def _startup_lock(path: str) -> Iterator[None]:
    """Hold an exclusive lock on ``<path>.lock`` across processes.

    Hosts for one endpoint take it from the liveness ping until they listen,
    so a starting host either finds the earlier one answering or owns the
    socket file alone.  The lock file itself is never removed.
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path + ".lock", "a+b") as lock_file:
        if sys.platform == "win32":
            import msvcrt

            lock_file.seek(0)
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            import fcntl

            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


class CompilerServiceImpl:
    """``CompilerService`` implementation delegating to a ``Compiler`` backend."""

    def __init__(self, compiler: Compiler, logger: logging.Logger) -> None:
        """Initialize with the backend and the host's log handle."""
        self._compiler = compiler
        self._logger = logger

    def compile(self, request: CompileRequest, emit_log: EmitLog | None = None) -> CompileResult:
        """Compile the request's options in its working directory."""
        options = request.options
        self._logger.info(
            "Compile: %s (files=%d, dir=%s)", options.output, len(options.files), request.working_directory
        )
        if emit_log is not None:
            emit_log(Message.info(f"Compiling {options.output}", files=len(options.files), pid=os.getpid()))
        result = self._compiler.compile(request.working_directory, options)
        self._logger.info(
            "Done: Succeeded=%s, warnings=%d, errors=%d", result.succeeded, len(result.warnings), len(result.errors)
        )
        return result

    def ping(self) -> int:
        """Return this process's pid."""
        return os.getpid()


class ServiceHost:
    """Serves ``CompilerService`` for one owner until stopped or the owner exits.

    Args:
        owner_id: Owner pid; 0 disables the owner binding.
        logger: The host's log handle.
        settings: Endpoint location, compiler command and check interval.
        compiler: Backend; defaults to ``CommandCompiler(settings.compiler_command)``.
        is_alive: Owner liveness check; defaults to ``owner_is_alive``.

    """

    def __init__(
        self,
        owner_id: int,
        logger: logging.Logger,
        settings: Settings,
        compiler: Compiler | None = None,
        is_alive: Callable[[int], bool] | None = None,
    ) -> None:
        """Initialize a stopped host."""
        self._owner_id = owner_id
        self._logger = logger
        self._settings = settings
        self._compiler = compiler if compiler is not None else CommandCompiler(settings.compiler_command)
        self._is_alive = is_alive if is_alive is not None else owner_is_alive
        self._stop = threading.Event()
        self.listening = threading.Event()

    @property
    def endpoint(self) -> str:
        """Socket path this host listens on."""
        return endpoint_path(self._owner_id, self._settings)

    def stop(self) -> None:
        """Ask a running host to stop; ``run()`` returns shortly after."""
        self._stop.set()

    def run(self) -> int:
        """Serve until stopped; return the process exit code."""
        if self._owner_id and not self._is_alive(self._owner_id):
            self._logger.error("Owner process %d is not running", self._owner_id)
            return 1

        path = self.endpoint
        try:
            with _startup_lock(path):
                running_pid = self._existing_host_pid()
                if running_pid is not None:
                    self._logger.info("Server already running for owner %d (pid=%d)", self._owner_id, running_pid)
                    return 0
                listener, inode = self._listen(path)
        except OSError as exc:
            self._logger.error("Failed to listen on %s: %s", path, exc)
            return 1

        watcher: threading.Thread | None = None
        if self._owner_id:
            watcher = threading.Thread(target=self._watch_owner, name="incc-owner-watch", daemon=True)
            watcher.start()

        rpc_server = RpcServer(CompilerService, CompilerServiceImpl(self._compiler, self._logger))
        self._logger.info("Listening on %s", path)
        self.listening.set()
        try:
            serve_unix(rpc_server, listener, stop=self._stop, accept_timeout=_ACCEPT_TIMEOUT)
        except Exception:
            self._logger.exception("Server error")
            return 1
        finally:
            self._stop.set()
            listener.close()
            self._remove_socket(path, inode)
            if watcher is not None:
                watcher.join(timeout=self._settings.owner_check_interval + 1)
            self._logger.info("Stopped")
        return 0

    def _existing_host_pid(self) -> int | None:
        try:
            return ServiceClient(self._settings, self._logger).ping(self._owner_id)
        except (ServiceUnreachable, OSError):
            return None
        except RequestFailed as exc:
            self._logger.warning("Endpoint answered but ping failed, replacing it: %s", exc)
            return None

    def _listen(self, path: str) -> tuple[socket.socket, int]:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(path)
            os.chmod(path, 0o600)
            listener.listen()
        except OSError:
            listener.close()
            raise
        return listener, os.stat(path).st_ino

    def _remove_socket(self, path: str, inode: int) -> None:
        # Another host may have replaced the file since; only remove our own.
        try:
            if os.stat(path).st_ino == inode:
                os.unlink(path)
        except FileNotFoundError:
            pass

    def _watch_owner(self) -> None:
        while not self._stop.wait(self._settings.owner_check_interval):
            if not self._is_alive(self._owner_id):
                self._logger.info("Owner process %d exited, shutting down", self._owner_id)
                self._stop.set()
                return


def run_server(
    args: Sequence[str],
    settings: Settings | None = None,
    compiler: Compiler | None = None,
) -> int:
    """Run server mode (``-server [owner id]``) and return the exit code."""
    settings = settings if settings is not None else Settings.from_env()
    with open_log("Server", SERVER_LOG_FILE, settings) as logger:
        logger.info("Started")

        owner_id = 0
        if len(args) >= 2:
            try:
                owner_id = int(args[1])
            except ValueError:
                logger.error("Error in parsing parentProcessId (arg=%s)", args[1])
                return 1

        host = ServiceHost(owner_id, logger, settings, compiler=compiler)
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, lambda signum, frame: host.stop())
        return host.run()
