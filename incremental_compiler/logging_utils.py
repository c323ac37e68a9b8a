"""Log handles for the client, the service host and developer mode.

Each entry point opens exactly one log handle before doing anything else and
passes it to every component that logs.  The handle is a standalone
``logging.Logger`` that is not registered in the global logger tree, so
nothing here touches the root logger or any process-wide configuration.

Two sinks are attached:

- console (stdout): ``date|logger|message``
- file (``<log_dir>/<file_name>``): ``date LEVEL|logger|message``, or one JSON
  object per line via :class:`JsonFormatter` when ``log_json`` is set.

Library internals (``incremental_compiler.wire`` and friends) keep using
module-level ``logging.getLogger`` loggers and stay silent unless the
embedding application configures them.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
from collections.abc import Iterator

from incremental_compiler.config import Settings

__all__ = [
    "CLIENT_LOG_FILE",
    "JsonFormatter",
    "LOG_NAME",
    "SERVER_LOG_FILE",
    "open_log",
]

LOG_NAME = "IncrementalCompiler"
CLIENT_LOG_FILE = "IncrementalCompiler.log"
SERVER_LOG_FILE = "IncrementalCompiler-Server.log"

_CONSOLE_FORMAT = "%(asctime)s|%(name)s|%(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s|%(name)s|%(message)s"

_STANDARD_ATTRS = set(vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Keys are ``timestamp``, ``level``, ``logger`` and ``message``, then any
    ``extra=`` attributes passed to the logging call (they never replace the
    fixed keys), then ``exception`` and ``stack_info`` when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a JSON line."""
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS:
                entry.setdefault(key, value)
        if record.exc_info is not None and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


@contextlib.contextmanager
def open_log(name: str, file_name: str | None, settings: Settings) -> Iterator[logging.Logger]:
    """Open a log handle with a console sink and an optional file sink.

    Args:
        name: Logger name shown in every line.
        file_name: File created in ``settings.log_dir``; ``None`` for console
            output only.
        settings: Supplies the log directory, level and file format.

    Yields:
        A logger that is not attached to the global logger tree.  Its
        handlers are flushed and closed when the context exits.

    """
    logger = logging.Logger(name, level=settings.level)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if file_name is not None:
        os.makedirs(settings.log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(settings.log_dir, file_name), encoding="utf-8")
        file_handler.setFormatter(JsonFormatter() if settings.log_json else logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    try:
        yield logger
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
