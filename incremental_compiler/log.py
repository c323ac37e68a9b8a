"""Messages the service host sends back alongside a response.

A host can report what it is doing while it serves a call (which output it is
compiling, which backend ran).  Those messages reach the client as zero-row
batches ahead of the result, and the client copies them into its own log.

An exception raised by a service method travels the same way at the
``EXCEPTION`` level and becomes an ``RpcError`` on the client.
"""

from __future__ import annotations

import contextlib
import json
import logging
import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

import pyarrow as pa

from incremental_compiler.metadata import LOG_EXTRA_KEY, LOG_LEVEL_KEY, LOG_MESSAGE_KEY

__all__ = [
    "Level",
    "Message",
]

MAX_TRACEBACK_CHARS = 16_000


class Level(Enum):
    """Severity of a ``Message``; ``EXCEPTION`` ends the call."""

    EXCEPTION = "EXCEPTION"
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"

    @property
    def logging_level(self) -> int:
        """The matching stdlib ``logging`` level."""
        if self is Level.DEBUG:
            return logging.DEBUG
        if self is Level.INFO:
            return logging.INFO
        if self is Level.WARN:
            return logging.WARNING
        return logging.ERROR


@dataclass(frozen=True)
class Message:
    """A leveled message with optional structured extras.

    Attributes:
        level: Severity.
        message: Human-readable text.
        extra: JSON-serializable key/value pairs; values that are not JSON
            types are sent as their ``str()``.

    """

    level: Level
    message: str
    extra: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def debug(cls, message: str, **extra: object) -> Message:
        return cls(Level.DEBUG, message, extra)

    @classmethod
    def info(cls, message: str, **extra: object) -> Message:
        return cls(Level.INFO, message, extra)

    @classmethod
    def warn(cls, message: str, **extra: object) -> Message:
        return cls(Level.WARN, message, extra)

    @classmethod
    def error(cls, message: str, **extra: object) -> Message:
        return cls(Level.ERROR, message, extra)

    @classmethod
    def from_exception(cls, exc: BaseException) -> Message:
        """Describe *exc* at the ``EXCEPTION`` level, traceback included.

        Tracebacks longer than ``MAX_TRACEBACK_CHARS`` are cut short.
        """
        formatted = "".join(traceback.format_exception(exc))
        if len(formatted) > MAX_TRACEBACK_CHARS:
            formatted = formatted[:MAX_TRACEBACK_CHARS] + "\n… <traceback truncated>"
        return cls(
            Level.EXCEPTION,
            f"{type(exc).__name__}: {exc}",
            {"exception_type": type(exc).__name__, "exception_message": str(exc), "traceback": formatted},
        )

    def to_metadata(self) -> pa.KeyValueMetadata:
        """Encode as batch metadata; extras become one JSON value."""
        entries = {LOG_LEVEL_KEY: self.level.value.encode(), LOG_MESSAGE_KEY: self.message.encode()}
        if self.extra:
            entries[LOG_EXTRA_KEY] = json.dumps(dict(self.extra), default=str).encode()
        return pa.KeyValueMetadata(entries)

    @classmethod
    def from_metadata(cls, metadata: pa.KeyValueMetadata | None) -> Message | None:
        """Decode a message from batch metadata, or return ``None`` if it carries none.

        Unreadable extras are dropped rather than failing the call.

        Raises:
            ValueError: If the level is not a ``Level`` value.

        """
        if metadata is None:
            return None
        level = metadata.get(LOG_LEVEL_KEY)
        text = metadata.get(LOG_MESSAGE_KEY)
        if level is None or text is None:
            return None
        extra: object = {}
        raw_extra = metadata.get(LOG_EXTRA_KEY)
        if raw_extra is not None:
            with contextlib.suppress(ValueError):
                extra = json.loads(raw_extra)
        return cls(Level(level.decode()), text.decode(), extra if isinstance(extra, dict) else {})
