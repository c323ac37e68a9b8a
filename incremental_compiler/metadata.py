"""Custom metadata keys carried on request and response batches.

Requests carry the method name and the protocol version.  Zero-row batches in
a response carry a log message or, at the ``EXCEPTION`` level, the error that
ended the call.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "LOG_EXTRA_KEY",
    "LOG_LEVEL_KEY",
    "LOG_MESSAGE_KEY",
    "METHOD_KEY",
    "PROTOCOL_VERSION",
    "VERSION_KEY",
    "metadata_to_dict",
]

METHOD_KEY = b"incc.method"
VERSION_KEY = b"incc.request_version"
PROTOCOL_VERSION = b"1"

LOG_LEVEL_KEY = b"incc.log_level"
LOG_MESSAGE_KEY = b"incc.log_message"
LOG_EXTRA_KEY = b"incc.log_extra"


def metadata_to_dict(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Return *metadata* as text, replacing undecodable bytes."""
    if metadata is None:
        return {}
    return {k.decode("utf-8", "replace"): v.decode("utf-8", "replace") for k, v in metadata.items()}
