"""The compiler service protocol and its client.

A service host listens on a Unix domain socket named after its owner id:
``<runtime_dir>/incc-<owner id>.sock``.  Clients connect, make one call and
disconnect.

``ServiceClient`` makes exactly one attempt per call and classifies failures:

- nothing answers at the endpoint → ``ServiceUnreachable`` (retryable)
- the host answered but the call failed → ``RequestFailed`` (fatal)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import pyarrow as pa

from incremental_compiler.config import Settings
from incremental_compiler.exceptions import RequestFailed, ServiceUnreachable
from incremental_compiler.log import Message
from incremental_compiler.model import CompileOptions, CompileRequest, CompileResult
from incremental_compiler.rpc import RpcConnection, RpcError, VersionError, connect_unix

__all__ = [
    "CompilerService",
    "ServiceClient",
    "endpoint_path",
]

_T = TypeVar("_T")


class CompilerService(Protocol):
    """RPC interface served by a service host."""

    def compile(self, request: CompileRequest) -> CompileResult:
        """Compile ``request.options`` in ``request.working_directory``."""
        ...

    def ping(self) -> int:
        """Return the pid of the service host."""
        ...


def endpoint_path(owner_id: int, settings: Settings) -> str:
    """Return the socket path of the service bound to *owner_id*."""
    return os.path.join(settings.runtime_dir, f"incc-{owner_id}.sock")


class ServiceClient:
    """Makes single request/response exchanges with the service for an owner."""

    __slots__ = ("_logger", "_settings")

    def __init__(self, settings: Settings, logger: logging.Logger) -> None:
        """Initialize with settings (for the endpoint location) and a log handle."""
        self._settings = settings
        self._logger = logger

    def _forward(self, msg: Message) -> None:
        self._logger.debug("server: %s", msg.message)

    def request(self, owner_id: int, working_directory: str, options: CompileOptions) -> CompileResult:
        """Send one compile request to the service bound to *owner_id*.

        Raises:
            ServiceUnreachable: If no service answers at the endpoint.
            RequestFailed: If the service was reached but the call failed.

        """
        request = CompileRequest(owner_id=owner_id, working_directory=working_directory, options=options)
        return self._call(owner_id, lambda svc: svc.compile(request=request))

    def ping(self, owner_id: int) -> int:
        """Return the pid of the service bound to *owner_id*.

        Raises:
            ServiceUnreachable: If no service answers at the endpoint.
            RequestFailed: If the service was reached but the call failed.

        """
        return self._call(owner_id, lambda svc: svc.ping())

    def _call(self, owner_id: int, fn: Callable[[Any], _T]) -> _T:
        path = endpoint_path(owner_id, self._settings)
        try:
            transport = connect_unix(path)
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise ServiceUnreachable(owner_id, path) from exc
        try:
            with RpcConnection(CompilerService, transport, on_log=self._forward) as svc:
                return fn(svc)
        except RpcError as exc:
            raise RequestFailed(exc.error_type, exc.error_message, exc.remote_traceback) from exc
        except (VersionError, OSError, EOFError, pa.ArrowInvalid) as exc:
            raise RequestFailed(type(exc).__name__, str(exc)) from exc
