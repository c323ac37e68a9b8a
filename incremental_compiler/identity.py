"""Owner process resolution.

The owner is the host application process a service host is bound to.  Its
pid comes from an explicit define (``-define:__UNITY_PROCESSID__1234``) when
one is present, otherwise from the first running process with the configured
name.  Zero means unresolved.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

import psutil

__all__ = [
    "OwnerResolver",
    "ProcessOwnerResolver",
    "owner_is_alive",
    "resolve_owner_id",
]

_logger = logging.getLogger(__name__)


@runtime_checkable
class OwnerResolver(Protocol):
    """Source of owner process ids."""

    def resolve_explicit(self, defines: Iterable[str]) -> int | None:
        """Return the owner id carried by a define, or ``None``."""
        ...

    def resolve_by_lookup(self) -> int | None:
        """Return the pid of a running owner process, or ``None``."""
        ...


class ProcessOwnerResolver:
    """Resolve the owner from a define prefix or by scanning running processes."""

    __slots__ = ("_define_prefix", "_process_name")

    def __init__(self, process_name: str, define_prefix: str) -> None:
        """Initialize with the owner process name and the define prefix."""
        self._process_name = process_name
        self._define_prefix = define_prefix

    def resolve_explicit(self, defines: Iterable[str]) -> int | None:
        """Parse the integer suffix of the first define carrying the prefix.

        A suffix that is not an integer, or is negative, counts as absent.
        """
        for define in defines:
            if not define.startswith(self._define_prefix):
                continue
            suffix = define[len(self._define_prefix) :]
            try:
                value = int(suffix)
            except ValueError:
                _logger.debug("ignoring owner define with bad suffix: %r", define)
                return None
            return value if value >= 0 else None
        return None

    def resolve_by_lookup(self) -> int | None:
        """Return the pid of the first process named like the owner application."""
        wanted = self._process_name.lower()
        for proc in psutil.process_iter(["pid", "name"]):
            name = (proc.info.get("name") or "").lower()
            if name in (wanted, f"{wanted}.exe"):
                pid: int = proc.info["pid"]
                return pid
        return None


def resolve_owner_id(resolver: OwnerResolver, defines: Iterable[str]) -> int:
    """Resolve the owner id, preferring an explicit define over a process lookup.

    Returns:
        The owner pid, or 0 when it cannot be determined.

    """
    explicit = resolver.resolve_explicit(defines)
    if explicit is not None:
        return explicit
    found = resolver.resolve_by_lookup()
    return found if found is not None and found > 0 else 0


def owner_is_alive(pid: int) -> bool:
    """Return whether *pid* names a running, non-zombie process."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
