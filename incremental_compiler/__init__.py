"""Reuse a long-lived compiler service from short-lived client invocations."""

import logging

from incremental_compiler.bootstrap import PopenServiceProcess, ServiceProcess, server_command, spawn_service
from incremental_compiler.client import ConnectionLoop, LoopState, run_client
from incremental_compiler.compiler import CommandCompiler, Compiler
from incremental_compiler.config import Settings
from incremental_compiler.exceptions import (
    CompilerNotFound,
    IncrementalCompilerError,
    RequestFailed,
    ServiceUnreachable,
    SpawnFailed,
)
from incremental_compiler.identity import OwnerResolver, ProcessOwnerResolver, owner_is_alive, resolve_owner_id
from incremental_compiler.log import Level, Message
from incremental_compiler.model import CompileOptions, CompileRequest, CompileResult, InvocationContext
from incremental_compiler.options import parse_arguments
from incremental_compiler.rpc import RpcConnection, RpcError, RpcServer, VersionError
from incremental_compiler.server import CompilerServiceImpl, ServiceHost, run_server
from incremental_compiler.service import CompilerService, ServiceClient, endpoint_path

__all__ = [
    # Model
    "CompileOptions",
    "CompileRequest",
    "CompileResult",
    "InvocationContext",
    "parse_arguments",
    # Client
    "ConnectionLoop",
    "LoopState",
    "run_client",
    "ServiceClient",
    "CompilerService",
    "endpoint_path",
    # Identity
    "OwnerResolver",
    "ProcessOwnerResolver",
    "owner_is_alive",
    "resolve_owner_id",
    # Bootstrap
    "PopenServiceProcess",
    "ServiceProcess",
    "server_command",
    "spawn_service",
    # Server
    "CompilerServiceImpl",
    "ServiceHost",
    "run_server",
    "CommandCompiler",
    "Compiler",
    # RPC
    "RpcConnection",
    "RpcError",
    "RpcServer",
    "VersionError",
    "Level",
    "Message",
    # Config & errors
    "Settings",
    "CompilerNotFound",
    "IncrementalCompilerError",
    "RequestFailed",
    "ServiceUnreachable",
    "SpawnFailed",
]

# Attach NullHandler so library users don't get "No handler found" warnings
# from the wire diagnostics loggers.
logging.getLogger("incremental_compiler").addHandler(logging.NullHandler())
