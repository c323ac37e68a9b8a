"""Compiler-style command line parsing for the client.

Only the pieces the client itself needs are interpreted: the output path, the
source files, the references and the defines.  Every other switch is carried
through untouched for the compiler backend.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Iterable, Iterator

from incremental_compiler.model import CompileOptions

__all__ = ["parse_arguments"]

_OUTPUT_SWITCHES = ("out:",)
_REFERENCE_SWITCHES = ("reference:", "r:")
_DEFINE_SWITCHES = ("define:", "d:")


def parse_arguments(args: Iterable[str], base_directory: str) -> CompileOptions:
    """Parse compiler arguments into ``CompileOptions``.

    ``@file`` arguments are replaced by the arguments listed in that response
    file, resolved against *base_directory*.  Files and references keep their
    first occurrence only.

    Raises:
        OSError: If a response file cannot be read.
        ValueError: If a response file includes itself, directly or not.

    """
    output = ""
    files: list[str] = []
    references: list[str] = []
    defines: list[str] = []
    switches: list[str] = []

    for arg in _expand(args, base_directory, seen=()):
        if arg[:1] in ("-", "/") and len(arg) > 1 and not _looks_like_path(arg):
            body = arg[1:]
            lowered = body.lower()
            if (value := _switch_value(body, lowered, _OUTPUT_SWITCHES)) is not None:
                output = value.strip('"')
            elif (value := _switch_value(body, lowered, _REFERENCE_SWITCHES)) is not None:
                references.extend(_split_list(value))
            elif (value := _switch_value(body, lowered, _DEFINE_SWITCHES)) is not None:
                defines.extend(_split_list(value))
            else:
                switches.append(arg)
        else:
            files.append(arg)

    return CompileOptions(
        output=output,
        files=_unique(files),
        references=_unique(references),
        defines=defines,
        switches=switches,
    )


def _looks_like_path(arg: str) -> bool:
    # "/usr/src/a.cs" is a file on POSIX, "/out:x" and "/d:X" are switches.
    return arg.startswith("/") and ":" not in arg.split("/", 2)[1] and arg.count("/") > 1


def _switch_value(body: str, lowered: str, names: tuple[str, ...]) -> str | None:
    for name in names:
        if lowered.startswith(name):
            return body[len(name) :]
    return None


def _split_list(value: str) -> list[str]:
    return [item.strip().strip('"') for item in value.replace(",", ";").split(";") if item.strip()]


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _expand(args: Iterable[str], base_directory: str, seen: tuple[str, ...]) -> Iterator[str]:
    for arg in args:
        if arg.startswith("@") and len(arg) > 1:
            path = os.path.normpath(os.path.join(base_directory, arg[1:]))
            if path in seen:
                raise ValueError(f"Response file includes itself: {path}")
            yield from _expand(_read_response_file(path), base_directory, (*seen, path))
        else:
            yield arg


def _read_response_file(path: str) -> list[str]:
    result: list[str] = []
    with open(path, encoding="utf-8-sig") as f:
        for line in f:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            result.extend(token.strip('"') for token in shlex.split(stripped, posix=False))
    return result
