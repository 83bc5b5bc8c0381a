# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Human-readable listing of a replay log."""

from pathlib import Path
from typing import BinaryIO, TextIO, Union

from .entry import Entry, Message, read_entry
from .framing import read_header

_MAX_PAYLOAD_CHARS = 200


def _show_bytes(data: bytes) -> str:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = None
    if text is not None and text.isprintable():
        shown = repr(text)
    else:
        shown = data.hex()
    if len(shown) > _MAX_PAYLOAD_CHARS:
        shown = shown[:_MAX_PAYLOAD_CHARS] + "..."
    return shown


def format_entry(index: int, entry: Entry) -> str:
    payload = entry.payload
    if isinstance(payload, Message):
        body = f"message {payload.type_name or '<none>'} {_show_bytes(payload.data)}"
    else:
        body = f"status {payload.code.name} {payload.details!r}"
    method = f" {entry.method}" if entry.method else ""
    return f"#{index}: {entry.kind.value}{method} ref={entry.ref_index} {body}"


def fprint(out: TextIO, source: Union[str, Path, BinaryIO]) -> int:
    """
    Write the initial state and every entry of a log to out.

    Returns:
        Number of entries printed

    Raises:
        LogFormatError: the log is malformed; entries before the bad record
            have already been printed
    """
    if isinstance(source, (str, Path)):
        with open(source, "rb") as f:
            return fprint(out, f)

    initial = read_header(source)
    out.write(f"initial state: {_show_bytes(initial)}\n")
    count = 0
    while True:
        entry = read_entry(source)
        if entry is None:
            break
        count += 1
        out.write(format_entry(count, entry) + "\n")
    return count
