"""Exception hierarchy for the compile client, its bootstrap and the backend."""

from __future__ import annotations

__all__ = [
    "CompilerNotFound",
    "IncrementalCompilerError",
    "RequestFailed",
    "ServiceUnreachable",
    "SpawnFailed",
]


class IncrementalCompilerError(Exception):
    """Base class for all errors raised by incremental_compiler."""


class ServiceUnreachable(IncrementalCompilerError):
    """No service host is currently answering for the requested owner.

    This is the only condition the connection loop retries.
    """

    def __init__(self, owner_id: int, endpoint: str) -> None:
        """Initialize with the owner id and the endpoint that did not answer."""
        self.owner_id = owner_id
        self.endpoint = endpoint
        super().__init__(f"No service for owner {owner_id} at {endpoint}")


class RequestFailed(IncrementalCompilerError):
    """The service was reached but the call itself failed.

    Attributes:
        error_type: Remote exception type name, or the local fault type.
        remote_traceback: Formatted traceback from the host, when it sent one.

    """

    def __init__(self, error_type: str, message: str, remote_traceback: str = "") -> None:
        """Initialize with the failure type, its message and optional remote traceback."""
        self.error_type = error_type
        self.error_message = message
        self.remote_traceback = remote_traceback
        super().__init__(f"{error_type}: {message}")


class SpawnFailed(IncrementalCompilerError):
    """The service host process could not be launched."""

    def __init__(self, command: list[str], reason: str) -> None:
        """Initialize with the attempted command line and the OS reason."""
        self.command = command
        super().__init__(f"Failed to start {command!r}: {reason}")


class CompilerNotFound(IncrementalCompilerError):
    """The configured compiler executable does not exist."""
