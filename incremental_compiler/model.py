"""Values exchanged between the compile client and the service host."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from incremental_compiler.codec import ArrowRecord

__all__ = [
    "CompileOptions",
    "CompileRequest",
    "CompileResult",
    "InvocationContext",
]


@dataclass(frozen=True)
class CompileOptions(ArrowRecord):
    """Parsed compiler arguments.

    Attributes:
        output: Output assembly path; empty when no ``-out:`` was given.
        files: Source files, de-duplicated in first-seen order.
        references: Referenced assemblies, de-duplicated in first-seen order.
        defines: Preprocessor symbols.
        switches: Any other compiler switches, passed through verbatim.

    """

    output: str = ""
    files: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    defines: list[str] = field(default_factory=list)
    switches: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CompileRequest(ArrowRecord):
    """A compile request addressed to the service bound to ``owner_id``."""

    owner_id: int
    working_directory: str
    options: CompileOptions


@dataclass(frozen=True)
class CompileResult(ArrowRecord):
    """Outcome of one compilation, in the order the compiler reported it."""

    succeeded: bool
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class InvocationContext:
    """Identity of one client invocation: who owns the service and where we run.

    Raises:
        ValueError: If *owner_id* is not positive or *working_directory* is
            not absolute.

    """

    owner_id: int
    working_directory: str

    def __post_init__(self) -> None:
        """Validate the owner id and working directory."""
        if self.owner_id <= 0:
            raise ValueError(f"owner_id must be > 0, got {self.owner_id}")
        if not os.path.isabs(self.working_directory):
            raise ValueError(f"working_directory must be absolute, got {self.working_directory!r}")
