"""Command-line entry point.

The first argument selects the mode::

    incremental-compiler -server <owner id>      service host
    incremental-compiler -dev compile [ARGS...]  compile in-process, no service
    incremental-compiler -dev status <owner id>  ask whether a host is up
    incremental-compiler [ARGS...]               client (compiler-style args)

Client and server mode take compiler-style single-dash arguments, so they are
dispatched by hand; developer mode is a regular Typer application.
"""

from __future__ import annotations

import os
import sys
import time
from collections.abc import Sequence
from typing import Annotated

import typer

from incremental_compiler.client import run_client
from incremental_compiler.compiler import CommandCompiler
from incremental_compiler.config import Settings
from incremental_compiler.exceptions import CompilerNotFound, RequestFailed, ServiceUnreachable
from incremental_compiler.logging_utils import open_log
from incremental_compiler.options import parse_arguments
from incremental_compiler.server import run_server
from incremental_compiler.service import ServiceClient, endpoint_path

__all__ = ["dev_app", "main"]

_DEV_PROG_NAME = "incremental-compiler -dev"

dev_app = typer.Typer(
    name="incremental-compiler-dev",
    help="Developer mode: run the compiler without a service, or inspect a service host.",
    add_completion=False,
    no_args_is_help=True,
)


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# compile command
# ---------------------------------------------------------------------------


@dev_app.command(context_settings={"ignore_unknown_options": True, "allow_extra_args": True})
def compile(
    args: Annotated[list[str] | None, typer.Argument(help="Compiler arguments, e.g. -out:a.dll a.cs")] = None,
    repeat: Annotated[int, typer.Option("--repeat", min=1, help="Number of times to compile")] = 1,
) -> None:
    """Compile in-process with the configured compiler, printing diagnostics and timing."""
    settings = _load_settings()
    cwd = os.getcwd()
    with open_log("Dev", None, settings) as logger:
        try:
            options = parse_arguments(args or [], cwd)
        except (OSError, ValueError) as e:
            logger.error("Error in parsing arguments: %s", e)
            raise typer.Exit(1) from None
        if not options.output:
            logger.error("No output")
            raise typer.Exit(1)

        compiler = CommandCompiler(settings.compiler_command)
        succeeded = False
        for i in range(repeat):
            started = time.monotonic()
            try:
                result = compiler.compile(cwd, options)
            except CompilerNotFound as e:
                logger.error("%s", e)
                raise typer.Exit(1) from None
            elapsed = time.monotonic() - started
            logger.info("Run %d/%d: Succeeded=%s. Duration=%.3fsec.", i + 1, repeat, result.succeeded, elapsed)
            for warning in result.warnings:
                logger.warning(warning)
            for error in result.errors:
                logger.error(error)
            succeeded = result.succeeded

    if not succeeded:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# status command
# ---------------------------------------------------------------------------


@dev_app.command()
def status(owner_id: Annotated[int, typer.Argument(help="Owner process id", min=1)]) -> None:
    """Report whether a service host is running for OWNER_ID."""
    settings = _load_settings()
    with open_log("Dev", None, settings) as logger:
        try:
            pid = ServiceClient(settings, logger).ping(owner_id)
        except ServiceUnreachable:
            typer.echo(f"Server for owner {owner_id} is not running ({endpoint_path(owner_id, settings)})")
            raise typer.Exit(1) from None
        except RequestFailed as e:
            typer.echo(f"Server for owner {owner_id} did not answer: {e}", err=True)
            raise typer.Exit(1) from None
    typer.echo(f"Server for owner {owner_id} is running (pid={pid})")


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def _run_dev(args: Sequence[str]) -> int:
    try:
        dev_app(args=list(args), prog_name=_DEV_PROG_NAME)
    except SystemExit as e:
        if e.code is None:
            return 0
        return e.code if isinstance(e.code, int) else 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Dispatch to developer, server or client mode and return the exit code."""
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == "-dev":
        return _run_dev(args[1:])

    try:
        settings = Settings.from_env()
    except ValueError as e:
        sys.stderr.write(f"Invalid configuration: {e}\n")
        return 1

    if args and args[0] == "-server":
        return run_server(args, settings=settings)
    return run_client(args, settings=settings)
