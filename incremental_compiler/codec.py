"""Arrow encoding of the values that cross the service boundary.

Request and result types are dataclasses that mix in ``ArrowRecord``.  Their
Arrow schema is derived from the field annotations the first time it is
needed:

=================  ====================
annotation         Arrow type
=================  ====================
``str``            ``string``
``bytes``          ``binary``
``int``            ``int64``
``float``          ``float64``
``bool``           ``bool``
``list[T]``        ``list<T>``
``ArrowRecord``    ``struct``
``T | None``       ``T``, nullable
=================  ====================

A record travels as a one-row batch inside a complete IPC stream.  Set
``INCC_IPC_DEBUG=1`` to trace every encoded and decoded batch on stderr.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from collections.abc import Mapping
from types import UnionType
from typing import Any, Self, Union, get_args, get_origin, get_type_hints

import pyarrow as pa
import structlog
from pyarrow import ipc

from incremental_compiler.metadata import metadata_to_dict

__all__ = [
    "ArrowRecord",
    "CodecError",
    "arrow_type",
    "decode_batch",
    "encode_batch",
    "is_record_type",
    "unwrap_optional",
    "zero_row_batch",
]

_TRACE = os.environ.get("INCC_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_trace_log: Any = None

_SCALAR_TYPES: dict[Any, pa.DataType] = {
    str: pa.string(),
    bytes: pa.binary(),
    int: pa.int64(),
    float: pa.float64(),
    bool: pa.bool_(),
}

_schemas: dict[type, pa.Schema] = {}


class CodecError(Exception):
    """An IPC payload could not be decoded."""


def _trace(event: str, batch: pa.RecordBatch, metadata: pa.KeyValueMetadata | None, **fields: object) -> None:
    global _trace_log
    if _trace_log is None:
        _trace_log = structlog.wrap_logger(
            structlog.PrintLogger(file=sys.stderr),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(colors=False),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        ).bind(component="codec")
    _trace_log.debug(
        event,
        rows=batch.num_rows,
        columns={f.name: str(f.type) for f in batch.schema},
        metadata=metadata_to_dict(metadata),
        **fields,
    )


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def zero_row_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return a batch with *schema* and no rows."""
    return pa.record_batch([pa.array([], type=f.type) for f in schema], schema=schema)


def encode_batch(batch: pa.RecordBatch, metadata: pa.KeyValueMetadata | None = None) -> bytes:
    """Encode *batch* as a complete IPC stream (schema, batch, end marker)."""
    sink = pa.BufferOutputStream()
    with ipc.new_stream(sink, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=metadata)
    data = sink.getvalue().to_pybytes()
    if _TRACE:
        _trace("encode", batch, metadata, nbytes=len(data))
    return data


def decode_batch(data: bytes) -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Decode the first batch of an IPC stream, with its custom metadata.

    Raises:
        CodecError: If the stream holds a schema but no batch.

    """
    reader = ipc.open_stream(data)
    try:
        batch, metadata = reader.read_next_batch_with_custom_metadata()
    except StopIteration:
        raise CodecError("IPC stream holds no record batch") from None
    if _TRACE:
        _trace("decode", batch, metadata, nbytes=len(data))
    return batch, metadata


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------


def unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Split ``T | None`` into ``(T, True)``; anything else gives ``(annotation, False)``."""
    if get_origin(annotation) in (Union, UnionType):
        args = get_args(annotation)
        members = [a for a in args if a is not type(None)]
        if len(args) == 2 and len(members) == 1:
            return members[0], True
    return annotation, False


def is_record_type(annotation: Any) -> bool:
    """Return whether *annotation* is an ``ArrowRecord`` subclass."""
    return isinstance(annotation, type) and issubclass(annotation, ArrowRecord)


def arrow_type(annotation: Any) -> pa.DataType:
    """Return the Arrow type for a field or parameter annotation.

    Raises:
        TypeError: If the annotation has no Arrow counterpart.

    """
    inner, _ = unwrap_optional(annotation)
    if is_record_type(inner):
        return pa.struct(list(inner.arrow_schema()))
    if get_origin(inner) is list:
        (item,) = get_args(inner) or (str,)
        return pa.list_(arrow_type(item))
    try:
        return _SCALAR_TYPES[inner]
    except (KeyError, TypeError):
        raise TypeError(f"No Arrow type for annotation {annotation!r}") from None


def _schema_of(cls: type[ArrowRecord]) -> pa.Schema:
    hints = get_type_hints(cls)
    fields = []
    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        annotation = hints[f.name]
        try:
            fields.append(pa.field(f.name, arrow_type(annotation), nullable=unwrap_optional(annotation)[1]))
        except TypeError as exc:
            raise TypeError(f"{cls.__name__}.{f.name}: {exc}") from exc
    return pa.schema(fields)


# ---------------------------------------------------------------------------
# ArrowRecord
# ---------------------------------------------------------------------------


class ArrowRecord:
    """Mixin for dataclasses that travel as one-row Arrow batches.

    Usage::

        @dataclass(frozen=True)
        class CompileResult(ArrowRecord):
            succeeded: bool
            warnings: list[str] = field(default_factory=list)

        data = CompileResult(succeeded=True).to_bytes()
        CompileResult.from_bytes(data)

    Columns missing from a decoded batch fall back to the field defaults, so
    fields with defaults can be added without breaking older peers.
    """

    @classmethod
    def arrow_schema(cls) -> pa.Schema:
        """Return the Arrow schema derived from the field annotations."""
        schema = _schemas.get(cls)
        if schema is None:
            schema = _schemas[cls] = _schema_of(cls)
        return schema

    def to_row(self) -> dict[str, Any]:
        """Return the fields as a plain dict, nested records included."""
        return {f.name: _to_wire(getattr(self, f.name)) for f in dataclasses.fields(self)}  # type: ignore[arg-type]

    def to_batch(self) -> pa.RecordBatch:
        """Return a one-row batch holding this record."""
        return pa.RecordBatch.from_pylist([self.to_row()], schema=self.arrow_schema())

    def to_bytes(self) -> bytes:
        """Encode this record as an IPC stream."""
        return encode_batch(self.to_batch())

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        """Build a record from a plain dict; absent keys take their defaults."""
        hints = get_type_hints(cls)
        return cls(
            **{
                f.name: _from_wire(row[f.name], hints[f.name])
                for f in dataclasses.fields(cls)  # type: ignore[arg-type]
                if f.name in row
            }
        )

    @classmethod
    def from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Build a record from a one-row batch.

        Raises:
            ValueError: If the batch does not have exactly one row, or lacks
                a column for a field without a default.

        """
        if batch.num_rows != 1:
            raise ValueError(f"{cls.__name__} needs a one-row batch, got {batch.num_rows} rows")
        row = batch.to_pylist()[0]
        missing = [
            f.name
            for f in dataclasses.fields(cls)  # type: ignore[arg-type]
            if f.name not in row and f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        ]
        if missing:
            raise ValueError(f"{cls.__name__} batch lacks required columns: {', '.join(missing)}")
        return cls.from_row(row)

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        """Decode a record from an IPC stream."""
        batch, _ = decode_batch(data)
        return cls.from_batch(batch)


def _to_wire(value: Any) -> Any:
    if isinstance(value, ArrowRecord):
        return value.to_row()
    if isinstance(value, (list, tuple)):
        return [_to_wire(v) for v in value]
    return value


def _from_wire(value: Any, annotation: Any) -> Any:
    if value is None:
        return None
    inner, _ = unwrap_optional(annotation)
    if is_record_type(inner) and isinstance(value, dict):
        return inner.from_row(value)
    if get_origin(inner) is list and isinstance(value, list):
        (item,) = get_args(inner) or (str,)
        return [_from_wire(v, item) for v in value]
    return value
