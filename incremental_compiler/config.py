"""Runtime configuration for the client, the service host and developer mode.

``Settings`` is a frozen dataclass validated on construction.  Entry points
build one with ``Settings.from_env()``, which reads ``INCC_*`` environment
variables and falls back to defaults for anything unset:

=============================  ==============================================
Variable                       Meaning
=============================  ==============================================
``INCC_OWNER_PROCESS_NAME``    Process name searched for the owner pid
``INCC_OWNER_DEFINE_PREFIX``   Define prefix carrying an explicit owner pid
``INCC_POLL_INTERVAL``         Seconds between connection attempts
``INCC_OWNER_CHECK_INTERVAL``  Seconds between owner liveness checks (host)
``INCC_RUNTIME_DIR``           Directory holding service endpoint sockets
``INCC_LOG_DIR``               Directory receiving log files
``INCC_LOG_LEVEL``             Minimum level for the log handle
``INCC_LOG_JSON``              Write the log file as JSON lines
``INCC_COMPILER``              Compiler command line used by the host
``INCC_SERVER_COMMAND``        Command line that starts this program
=============================  ==============================================
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field

__all__ = ["Settings"]

_ENV_PREFIX = "INCC_"
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


def _default_server_command() -> tuple[str, ...]:
    return (sys.executable, "-m", "incremental_compiler")


def _default_log_dir(cwd: str) -> str:
    temp = os.path.join(cwd, "Temp")
    return temp if os.path.isdir(temp) else cwd


@dataclass(frozen=True)
class Settings:
    """Configuration shared by every entry point.

    Attributes:
        owner_process_name: Name of the host application process whose pid
            becomes the owner id when no explicit define is given.
        owner_define_prefix: Define prefix whose integer suffix is an
            explicit owner id.
        poll_interval: Seconds to wait between connection attempts.
        owner_check_interval: Seconds between owner liveness checks in the
            service host.
        runtime_dir: Directory holding the per-owner endpoint sockets.
        log_dir: Directory receiving the log files.
        log_level: Minimum level name for the log handle.
        log_json: Whether the log file is written as JSON lines.
        compiler_command: Command line of the compiler run by the host.
        server_command: Command line that starts this program; ``-server
            <owner id>`` is appended when a host is spawned.

    Raises:
        ValueError: If an interval is not positive, the log level is unknown,
            or a command line is empty.

    """

    owner_process_name: str = "Unity"
    owner_define_prefix: str = "__UNITY_PROCESSID__"
    poll_interval: float = 0.1
    owner_check_interval: float = 1.0
    runtime_dir: str = field(default_factory=tempfile.gettempdir)
    log_dir: str = "."
    log_level: str = "DEBUG"
    log_json: bool = False
    compiler_command: tuple[str, ...] = ("mcs",)
    server_command: tuple[str, ...] = field(default_factory=_default_server_command)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.owner_check_interval <= 0:
            raise ValueError(f"owner_check_interval must be > 0, got {self.owner_check_interval}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log_level: {self.log_level!r}")
        if not self.compiler_command:
            raise ValueError("compiler_command must not be empty")
        if not self.server_command:
            raise ValueError("server_command must not be empty")
        if not self.owner_define_prefix:
            raise ValueError("owner_define_prefix must not be empty")

    @property
    def level(self) -> int:
        """The numeric ``logging`` level for ``log_level``."""
        level: int = logging.getLevelName(self.log_level.upper())
        return level

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, cwd: str | None = None) -> Settings:
        """Build settings from ``INCC_*`` variables in *environ* (default ``os.environ``).

        Args:
            environ: Environment mapping to read.
            cwd: Directory used to locate the default log directory.

        Raises:
            ValueError: If a variable holds an unparseable or invalid value.

        """
        env = os.environ if environ is None else environ
        base = cwd if cwd is not None else os.getcwd()

        def get(name: str) -> str | None:
            value = env.get(_ENV_PREFIX + name)
            return value if value else None

        kwargs: dict[str, object] = {"log_dir": _default_log_dir(base)}
        if (value := get("OWNER_PROCESS_NAME")) is not None:
            kwargs["owner_process_name"] = value
        if (value := get("OWNER_DEFINE_PREFIX")) is not None:
            kwargs["owner_define_prefix"] = value
        if (value := get("POLL_INTERVAL")) is not None:
            kwargs["poll_interval"] = _parse_float("POLL_INTERVAL", value)
        if (value := get("OWNER_CHECK_INTERVAL")) is not None:
            kwargs["owner_check_interval"] = _parse_float("OWNER_CHECK_INTERVAL", value)
        if (value := get("RUNTIME_DIR")) is not None:
            kwargs["runtime_dir"] = value
        if (value := get("LOG_DIR")) is not None:
            kwargs["log_dir"] = value
        if (value := get("LOG_LEVEL")) is not None:
            kwargs["log_level"] = value
        if (value := env.get(_ENV_PREFIX + "LOG_JSON")) is not None:
            kwargs["log_json"] = _parse_bool("LOG_JSON", value)
        if (value := get("COMPILER")) is not None:
            kwargs["compiler_command"] = tuple(shlex.split(value))
        if (value := get("SERVER_COMMAND")) is not None:
            kwargs["server_command"] = tuple(shlex.split(value))
        return cls(**kwargs)  # type: ignore[arg-type]


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {value!r}") from None


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{_ENV_PREFIX}{name} must be a boolean, got {value!r}")
