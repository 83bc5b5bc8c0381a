# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Record framing and the log header.

Log layout:
    record 0:  MAGIC || initial state
    record 1+: one entry each (see rpcreplay.entry)

Every record is a 4-byte big-endian unsigned length followed by that many
bytes.
"""

import struct
from typing import BinaryIO, Optional

from .exceptions import HeaderError, TruncatedRecordError

MAGIC = b"RPCReplay"

_LENGTH = struct.Struct(">I")


def _read_exactly(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def write_record(stream: BinaryIO, data: bytes) -> None:
    """Append one length-prefixed record to the stream."""
    stream.write(_LENGTH.pack(len(data)))
    stream.write(data)


def read_record(stream: BinaryIO) -> Optional[bytes]:
    """
    Read the next record.

    Returns:
        The record bytes, or None when the stream ends cleanly before a
        length prefix.

    Raises:
        TruncatedRecordError: the length prefix or the payload is short
    """
    prefix = _read_exactly(stream, _LENGTH.size)
    if not prefix:
        return None
    if len(prefix) < _LENGTH.size:
        raise TruncatedRecordError(
            "truncated record length prefix",
            expected=_LENGTH.size,
            actual=len(prefix),
        )

    (size,) = _LENGTH.unpack(prefix)
    data = _read_exactly(stream, size)
    if len(data) != size:
        raise TruncatedRecordError(
            f"truncated record: want {size} bytes, got {len(data)}",
            expected=size,
            actual=len(data),
        )
    return data


def write_header(stream: BinaryIO, initial: bytes) -> None:
    """Write the header record: the magic token followed by the initial state."""
    write_record(stream, MAGIC + bytes(initial))


def read_header(stream: BinaryIO) -> bytes:
    """
    Read and verify the header record.

    Returns:
        The initial state stored after the magic token

    Raises:
        HeaderError: empty stream, truncated record or wrong magic token
    """
    try:
        record = read_record(stream)
    except TruncatedRecordError as e:
        raise HeaderError("log header is truncated", cause=e) from e

    if record is None:
        raise HeaderError("empty log: missing header")
    if len(record) < len(MAGIC):
        raise HeaderError(
            f"log header too short: {len(record)} bytes",
            details={"record": record.hex()},
        )
    if record[: len(MAGIC)] != MAGIC:
        raise HeaderError(
            "bad magic token in log header",
            details={"got": record[: len(MAGIC)].hex()},
        )
    return record[len(MAGIC):]
