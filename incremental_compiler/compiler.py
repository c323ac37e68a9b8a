"""Compiler backends run by the service host."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from typing import Protocol

from incremental_compiler.exceptions import CompilerNotFound
from incremental_compiler.model import CompileOptions, CompileResult

__all__ = [
    "CommandCompiler",
    "Compiler",
    "build_command_line",
    "classify_output",
]

_logger = logging.getLogger(__name__)

# file.cs(10,5): error CS1002: ; expected
# error CS2001: Source file `a.cs' could not be found
_DIAGNOSTIC = re.compile(r"\b(error|warning)\s+[A-Za-z]+\d+\s*:")


class Compiler(Protocol):
    """Something that turns ``CompileOptions`` into a ``CompileResult``."""

    def compile(self, working_directory: str, options: CompileOptions) -> CompileResult:
        """Compile *options* with *working_directory* as the current directory."""
        ...


def build_command_line(command: Sequence[str], options: CompileOptions) -> list[str]:
    """Return the full compiler command line for *options*."""
    args = list(command)
    if options.output:
        args.append(f"-out:{options.output}")
    args.extend(f"-r:{ref}" for ref in options.references)
    if options.defines:
        args.append("-define:" + ";".join(options.defines))
    args.extend(options.switches)
    args.extend(options.files)
    return args


def classify_output(lines: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split compiler output into ``(warnings, errors)``, keeping the order of each."""
    warnings: list[str] = []
    errors: list[str] = []
    for line in lines:
        match = _DIAGNOSTIC.search(line)
        if match is None:
            continue
        if match.group(1) == "error":
            errors.append(line)
        else:
            warnings.append(line)
    return warnings, errors


class CommandCompiler:
    """Runs an external command-line compiler once per request."""

    __slots__ = ("_command",)

    def __init__(self, command: Sequence[str]) -> None:
        """Initialize with the compiler command line (executable first)."""
        self._command = tuple(command)

    @property
    def command(self) -> tuple[str, ...]:
        """The compiler command line."""
        return self._command

    def compile(self, working_directory: str, options: CompileOptions) -> CompileResult:
        """Run the compiler and collect its diagnostics.

        Raises:
            CompilerNotFound: If the compiler executable does not exist.

        """
        args = build_command_line(self._command, options)
        _logger.debug("running %s in %s", args, working_directory)
        try:
            proc = subprocess.run(args, cwd=working_directory, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise CompilerNotFound(f"Compiler not found: {self._command[0]}") from exc

        lines = [line.rstrip() for line in (proc.stdout + proc.stderr).splitlines() if line.strip()]
        warnings, errors = classify_output(lines)
        if proc.returncode != 0 and not errors:
            errors.append(f"{self._command[0]} exited with status {proc.returncode}")
        return CompileResult(succeeded=proc.returncode == 0 and not errors, warnings=warnings, errors=errors)
