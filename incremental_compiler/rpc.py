"""Unary request/response RPC over Arrow IPC streams.

A service is described by a ``typing.Protocol`` class.  Parameter and result
schemas come from the method annotations; ``ArrowRecord`` values travel as
nested IPC blobs so each keeps its own schema.

Wire format
-----------
Each call is two complete IPC streams written back to back on one byte
stream, so a connection can carry any number of calls::

    client → server   params schema, 1 request batch, EOS
    server → client   result schema, 0..N message batches, 1 result batch, EOS

The request batch carries ``incc.method`` and ``incc.request_version`` in its
custom metadata.  Message batches have zero rows and carry a ``Message`` in
their metadata.  At the ``EXCEPTION`` level the message replaces the result
batch and the client raises ``RpcError``.

Implementations may accept an ``emit_log`` keyword (``EmitLog``) that does
not appear in the protocol.  Messages passed to it are written to the
response stream immediately, ahead of the result.
"""

from __future__ import annotations

import contextlib
import functools
import inspect
import io
import logging
import os
import socket
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from io import IOBase
from types import TracebackType
from typing import Any, Protocol, cast, get_type_hints, runtime_checkable

import pyarrow as pa
from pyarrow import ipc

from incremental_compiler.codec import ArrowRecord, arrow_type, is_record_type, unwrap_optional, zero_row_batch
from incremental_compiler.log import Level, Message
from incremental_compiler.metadata import METHOD_KEY, PROTOCOL_VERSION, VERSION_KEY

__all__ = [
    "EmitLog",
    "MethodSpec",
    "PipeTransport",
    "ProtocolError",
    "RpcConnection",
    "RpcError",
    "RpcServer",
    "RpcTransport",
    "UnixTransport",
    "VersionError",
    "check_message_batch",
    "connect_unix",
    "make_pipe_pair",
    "make_unix_pair",
    "protocol_methods",
    "serve_pipe",
    "serve_unix",
    "unix_connect",
]

_logger = logging.getLogger(__name__)

wire_logger = logging.getLogger("incremental_compiler.wire")
"""Per-call and per-connection diagnostics."""

EmitLog = Callable[[Message], None]
"""Type of the ``emit_log`` callback injected into implementations."""

_NO_FIELDS = pa.schema([])
_CONNECTION_CLOSED = (EOFError, StopIteration, pa.ArrowInvalid, BrokenPipeError, ConnectionResetError)


class RpcError(Exception):
    """The server answered a call with an error."""

    def __init__(self, error_type: str, error_message: str, remote_traceback: str) -> None:
        """Initialize from the remote exception's type name, message and traceback."""
        self.error_type = error_type
        self.error_message = error_message
        self.remote_traceback = remote_traceback
        super().__init__(f"{error_type}: {error_message}")


class VersionError(Exception):
    """A request carried no protocol version, or one this server does not speak."""


class ProtocolError(Exception):
    """A request or response did not follow the wire format."""


# ---------------------------------------------------------------------------
# Method descriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MethodSpec:
    """Wire description of one protocol method."""

    name: str
    params_schema: pa.Schema
    result_schema: pa.Schema
    param_types: Mapping[str, Any]
    result_type: Any

    @property
    def returns_value(self) -> bool:
        """Whether the method is annotated to return something other than ``None``."""
        return self.result_type is not None and self.result_type is not type(None)


def _wire_field(name: str, annotation: Any) -> pa.Field:
    inner, nullable = unwrap_optional(annotation)
    return pa.field(name, pa.binary() if is_record_type(inner) else arrow_type(inner), nullable=nullable)


def protocol_methods(protocol: type) -> dict[str, MethodSpec]:
    """Describe every public method of *protocol*."""
    specs: dict[str, MethodSpec] = {}
    for name, function in inspect.getmembers(protocol, inspect.isfunction):
        if name.startswith("_"):
            continue
        hints = get_type_hints(function)
        result_type = hints.pop("return", None)
        if result_type in (None, type(None)):
            result_schema = _NO_FIELDS
        else:
            result_schema = pa.schema([_wire_field("result", result_type)])
        specs[name] = MethodSpec(
            name=name,
            params_schema=pa.schema([_wire_field(p, t) for p, t in hints.items()]),
            result_schema=result_schema,
            param_types=hints,
            result_type=result_type,
        )
    return specs


def _check_implementation(protocol: type, implementation: object, specs: Mapping[str, MethodSpec]) -> None:
    problems: list[str] = []
    for spec in specs.values():
        method = getattr(implementation, spec.name, None)
        if not callable(method):
            problems.append(f"missing method '{spec.name}'")
            continue
        accepted = inspect.signature(method).parameters
        problems.extend(f"'{spec.name}' lacks parameter '{p}'" for p in spec.param_types if p not in accepted)
    if problems:
        name = type(implementation).__name__
        raise TypeError(f"{name} does not implement {protocol.__name__}: {'; '.join(problems)}")


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


def _encode_value(value: object) -> object:
    return value.to_bytes() if isinstance(value, ArrowRecord) else value


def _decode_value(value: object, annotation: Any) -> object:
    inner, _ = unwrap_optional(annotation)
    if is_record_type(inner) and isinstance(value, bytes):
        return inner.from_bytes(value)
    return value


def _require(spec: MethodSpec, kwargs: Mapping[str, object]) -> None:
    for name, annotation in spec.param_types.items():
        if kwargs.get(name) is None and not unwrap_optional(annotation)[1]:
            raise TypeError(f"{spec.name}() parameter '{name}' is not optional but got None")


def _check_result(spec: MethodSpec, value: object) -> None:
    if value is None and spec.returns_value and not unwrap_optional(spec.result_type)[1]:
        raise TypeError(f"{spec.name}() returned None but is not annotated as optional")


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


def _drain(reader: ipc.RecordBatchStreamReader) -> None:
    # Reading to the end marker leaves the byte stream at the next IPC stream.
    for _ in reader:
        pass


def write_request(stream: IOBase, spec: MethodSpec, kwargs: Mapping[str, object]) -> None:
    """Write one call to *stream* as a complete IPC stream."""
    schema = spec.params_schema
    batch = pa.record_batch([pa.array([_encode_value(kwargs.get(f.name))], type=f.type) for f in schema], schema=schema)
    metadata = pa.KeyValueMetadata({METHOD_KEY: spec.name.encode(), VERSION_KEY: PROTOCOL_VERSION})
    wire_logger.debug("request %s(%s)", spec.name, ", ".join(sorted(kwargs)))
    with ipc.new_stream(stream, schema) as writer:
        writer.write_batch(batch, custom_metadata=metadata)


def read_request(stream: IOBase) -> tuple[str, dict[str, Any]]:
    """Read one call from *stream* and return the method name and raw arguments.

    Raises:
        ProtocolError: If the request names no method.
        VersionError: If the protocol version is missing or unsupported.

    """
    reader = ipc.open_stream(stream)
    batch, metadata = reader.read_next_batch_with_custom_metadata()
    _drain(reader)
    metadata = metadata if metadata is not None else pa.KeyValueMetadata()
    method = metadata.get(METHOD_KEY)
    if method is None:
        raise ProtocolError("request carries no incc.method")
    version = metadata.get(VERSION_KEY)
    if version != PROTOCOL_VERSION:
        raise VersionError(f"request version {version!r} is not {PROTOCOL_VERSION!r}")
    raw = {f.name: batch.column(i)[0].as_py() for i, f in enumerate(batch.schema)} if batch.num_rows else {}
    return method.decode(), raw


def _write_message(writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, message: Message) -> None:
    writer.write_batch(zero_row_batch(schema), custom_metadata=message.to_metadata())


def check_message_batch(
    batch: pa.RecordBatch,
    metadata: pa.KeyValueMetadata | None,
    on_log: Callable[[Message], None] | None = None,
) -> bool:
    """Handle a response batch that carries a ``Message``.

    Returns ``False`` for a result batch.  Log messages go to *on_log* (or
    are dropped) and return ``True``.

    Raises:
        RpcError: For an ``EXCEPTION`` message.

    """
    if batch.num_rows:
        return False
    message = Message.from_metadata(metadata)
    if message is None:
        return False
    if message.level is Level.EXCEPTION:
        extra = message.extra
        raise RpcError(
            str(extra.get("exception_type", "Exception")),
            str(extra.get("exception_message", message.message)),
            str(extra.get("traceback", "")),
        )
    if on_log is not None:
        on_log(message)
    return True


def read_response(
    stream: IOBase,
    spec: MethodSpec,
    on_log: Callable[[Message], None] | None = None,
) -> object:
    """Read the answer to one call, passing messages to *on_log*.

    Raises:
        RpcError: If the server reported an error.

    """
    reader = ipc.open_stream(stream)
    try:
        while True:
            try:
                batch, metadata = reader.read_next_batch_with_custom_metadata()
            except StopIteration:
                raise RpcError("ProtocolError", f"response to {spec.name}() has no result", "") from None
            if not check_message_batch(batch, metadata, on_log):
                break
    finally:
        with contextlib.suppress(pa.ArrowInvalid):
            _drain(reader)
    if not spec.returns_value:
        return None
    value = batch.column("result")[0].as_py()
    _check_result(spec, value)
    return None if value is None else _decode_value(value, spec.result_type)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


@runtime_checkable
class RpcTransport(Protocol):
    """A pair of binary streams plus a way to close them."""

    @property
    def reader(self) -> IOBase: ...

    @property
    def writer(self) -> IOBase: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class PipeTransport:
    """Transport over two file objects, typically the ends of ``os.pipe()`` pairs."""

    reader: IOBase
    writer: IOBase

    def close(self) -> None:
        """Close both streams."""
        self.reader.close()
        self.writer.close()


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Return ``(client, server)`` transports connected by two pipes."""

    def pipe() -> tuple[IOBase, IOBase]:
        r, w = os.pipe()
        return cast(IOBase, os.fdopen(r, "rb")), cast(IOBase, os.fdopen(w, "wb", buffering=0))

    up_r, up_w = pipe()
    down_r, down_w = pipe()
    return PipeTransport(down_r, up_w), PipeTransport(up_r, down_w)


class _SendAllWriter(io.RawIOBase):
    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def writable(self) -> bool:
        return True

    def write(self, data: Any) -> int:
        view = memoryview(data)
        self._sock.sendall(view)
        return view.nbytes


class UnixTransport:
    """Transport over a connected stream socket.

    Reads are buffered, since Arrow asks for exact byte counts.  Writes go
    straight to ``sendall``, so nothing sits in a buffer between calls.
    """

    __slots__ = ("_closed", "_reader", "_sock", "_writer")

    def __init__(self, sock: socket.socket) -> None:
        """Wrap a connected socket, switching it to blocking mode."""
        sock.settimeout(None)
        self._sock = sock
        self._reader = cast(IOBase, sock.makefile("rb"))
        self._writer = cast(IOBase, _SendAllWriter(sock))
        self._closed = False

    @property
    def reader(self) -> IOBase:
        return self._reader

    @property
    def writer(self) -> IOBase:
        return self._writer

    def close(self) -> None:
        """Shut the socket down and close it; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        self._reader.close()
        self._writer.close()
        self._sock.close()


def make_unix_pair() -> tuple[UnixTransport, UnixTransport]:
    """Return ``(client, server)`` transports over a ``socketpair()``."""
    a, b = socket.socketpair()
    return UnixTransport(a), UnixTransport(b)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class RpcServer:
    """Answers calls on a transport by dispatching to an implementation.

    Raises:
        TypeError: At construction, if the implementation lacks a protocol
            method or parameter.

    """

    __slots__ = ("_impl", "_specs", "_with_emit_log")

    def __init__(self, protocol: type, implementation: object) -> None:
        """Describe *protocol* and check *implementation* against it."""
        self._impl = implementation
        self._specs = protocol_methods(protocol)
        _check_implementation(protocol, implementation, self._specs)
        self._with_emit_log = frozenset(
            name for name in self._specs if "emit_log" in inspect.signature(getattr(implementation, name)).parameters
        )

    @property
    def methods(self) -> Mapping[str, MethodSpec]:
        """Descriptions of the served methods."""
        return self._specs

    def serve(self, transport: RpcTransport) -> None:
        """Answer calls until the peer closes the transport."""
        while True:
            try:
                self.handle(transport)
            except _CONNECTION_CLOSED as exc:
                wire_logger.debug("connection ended: %s", type(exc).__name__)
                return

    def handle(self, transport: RpcTransport) -> None:
        """Answer one call.

        Malformed requests are answered with an error and do not raise.

        Raises:
            pa.ArrowInvalid: If the incoming bytes are not an IPC stream,
                including end of input.

        """
        try:
            name, raw = read_request(transport.reader)
        except (ProtocolError, VersionError) as exc:
            self._reply_error(transport, _NO_FIELDS, exc)
            return

        spec = self._specs.get(name)
        if spec is None:
            self._reply_error(transport, _NO_FIELDS, AttributeError(f"Unknown method: {name}"))
            return
        try:
            _require(spec, raw)
        except TypeError as exc:
            self._reply_error(transport, spec.result_schema, exc)
            return
        kwargs = {p: None if raw.get(p) is None else _decode_value(raw[p], t) for p, t in spec.param_types.items()}
        self._invoke(transport, spec, kwargs)

    def _reply_error(self, transport: RpcTransport, schema: pa.Schema, exc: Exception) -> None:
        wire_logger.debug("rejecting request: %s", exc)
        with ipc.new_stream(transport.writer, schema) as writer:
            _write_message(writer, schema, Message.from_exception(exc))

    def _invoke(self, transport: RpcTransport, spec: MethodSpec, kwargs: dict[str, Any]) -> None:
        schema = spec.result_schema
        wire_logger.debug("dispatch %s", spec.name)
        with ipc.new_stream(transport.writer, schema) as writer:
            if spec.name in self._with_emit_log:
                kwargs["emit_log"] = functools.partial(_write_message, writer, schema)
            try:
                value = getattr(self._impl, spec.name)(**kwargs)
                _check_result(spec, value)
            except Exception as exc:
                _logger.debug("%s() raised", spec.name, exc_info=True)
                _write_message(writer, schema, Message.from_exception(exc))
                return
            if spec.returns_value:
                column = pa.array([_encode_value(value)], type=schema.field(0).type)
                writer.write_batch(pa.record_batch([column], schema=schema))
            else:
                writer.write_batch(zero_row_batch(schema))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class _Stub:
    """Callable attributes for each protocol method, bound to one transport."""

    def __init__(self, protocol: type, transport: RpcTransport, on_log: Callable[[Message], None] | None) -> None:
        self._protocol = protocol
        self._transport = transport
        self._on_log = on_log
        self._specs = protocol_methods(protocol)

    def __getattr__(self, name: str) -> Any:
        spec = self._specs.get(name)
        if spec is None:
            raise AttributeError(f"{self._protocol.__name__} has no RPC method '{name}'")
        call = functools.partial(self._call, spec)
        self.__dict__[name] = call
        return call

    def _call(self, spec: MethodSpec, **kwargs: object) -> object:
        _require(spec, kwargs)
        write_request(self._transport.writer, spec, kwargs)
        return read_response(self._transport.reader, spec, self._on_log)


class RpcConnection:
    """Typed access to a service over a transport, closing it on exit.

    Usage::

        with RpcConnection(CompilerService, transport) as svc:
            pid = svc.ping()

    """

    __slots__ = ("_on_log", "_protocol", "_transport")

    def __init__(
        self,
        protocol: type,
        transport: RpcTransport,
        on_log: Callable[[Message], None] | None = None,
    ) -> None:
        """Initialize with the protocol, the transport and an optional message callback."""
        self._protocol = protocol
        self._transport = transport
        self._on_log = on_log

    def __enter__(self) -> Any:
        return _Stub(self._protocol, self._transport, self._on_log)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._transport.close()


@contextlib.contextmanager
def serve_pipe(
    protocol: type,
    implementation: object,
    *,
    on_log: Callable[[Message], None] | None = None,
) -> Iterator[Any]:
    """Serve *implementation* from a thread over pipes and yield a client stub."""
    client, server_side = make_pipe_pair()
    thread = threading.Thread(target=RpcServer(protocol, implementation).serve, args=(server_side,), daemon=True)
    thread.start()
    try:
        with RpcConnection(protocol, client, on_log=on_log) as stub:
            yield stub
    finally:
        thread.join(timeout=5)
        server_side.close()


# ---------------------------------------------------------------------------
# Unix domain sockets
# ---------------------------------------------------------------------------


def connect_unix(path: str) -> UnixTransport:
    """Connect to the socket at *path*.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ConnectionRefusedError: If nothing listens on *path*.

    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except OSError:
        sock.close()
        raise
    wire_logger.debug("connected to %s", path)
    return UnixTransport(sock)


@contextlib.contextmanager
def unix_connect(
    protocol: type,
    path: str,
    *,
    on_log: Callable[[Message], None] | None = None,
) -> Iterator[Any]:
    """Connect to *path* and yield a client stub; see ``connect_unix`` for errors."""
    with RpcConnection(protocol, connect_unix(path), on_log=on_log) as stub:
        yield stub


def serve_unix(
    server: RpcServer,
    listener: socket.socket,
    *,
    stop: threading.Event,
    accept_timeout: float = 0.2,
) -> None:
    """Serve connections on *listener*, one at a time, until *stop* is set.

    *stop* is checked between connections and every *accept_timeout*
    seconds while idle.  The caller keeps ownership of *listener*.
    """
    listener.settimeout(accept_timeout)
    while not stop.is_set():
        try:
            conn, _ = listener.accept()
        except TimeoutError:
            continue
        wire_logger.debug("accepted connection")
        transport = UnixTransport(conn)
        try:
            server.serve(transport)
        except OSError:
            _logger.debug("connection failed", exc_info=True)
        finally:
            transport.close()
