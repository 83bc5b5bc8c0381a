# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for log entries and the entry codec"""

import io
import json

import grpc
import pytest

from rpcreplay.entry import (
    EMPTY_MESSAGE,
    Entry,
    EntryKind,
    Message,
    OK_STATUS,
    Status,
    read_entry,
    write_entry,
)
from rpcreplay.exceptions import EntryDecodeError, TruncatedRecordError
from rpcreplay.framing import read_record, write_record


@pytest.mark.parametrize(
    "entry",
    [
        Entry(
            kind=EntryKind.REQUEST,
            method="method",
            payload=Message("pkg.Entry", b"\x0a\x03abc"),
            ref_index=7,
        ),
        Entry(
            kind=EntryKind.RESPONSE,
            method="method",
            payload=Status(grpc.StatusCode.NOT_FOUND, "not found"),
            ref_index=8,
        ),
        Entry(
            kind=EntryKind.RECEIVE,
            method="method",
            payload=OK_STATUS,
            ref_index=3,
        ),
        Entry(
            kind=EntryKind.SEND,
            method="",
            payload=EMPTY_MESSAGE,
            ref_index=1,
        ),
    ],
)
def test_entry_io(buf, entry):
    write_entry(buf, entry)
    buf.seek(0)

    assert read_entry(buf) == entry
    assert read_entry(buf) is None


def test_read_entry_exhausted():
    assert read_entry(io.BytesIO()) is None


class TestPayloadEquivalence:
    """Equality of entries compares kind, method, ref_index and payload"""

    def test_messages_compare_by_content(self):
        assert Message("t", b"abc") == Message("t", b"abc")
        assert Message("t", b"abc") != Message("t", b"abd")

    def test_statuses_compare_by_code_and_details(self):
        assert Status(grpc.StatusCode.NOT_FOUND, "x") == Status(grpc.StatusCode.NOT_FOUND, "x")
        assert Status(grpc.StatusCode.NOT_FOUND, "x") != Status(grpc.StatusCode.INTERNAL, "x")
        assert Status(grpc.StatusCode.NOT_FOUND, "x") != Status(grpc.StatusCode.NOT_FOUND, "y")

    def test_message_never_equals_status(self):
        assert Message("", b"") != OK_STATUS

    def test_entries_differ_by_ref_index(self):
        a = Entry(EntryKind.RESPONSE, "", OK_STATUS, 1)
        b = Entry(EntryKind.RESPONSE, "", OK_STATUS, 2)
        assert a != b

    def test_ok_status(self):
        assert OK_STATUS.ok
        assert not Status(grpc.StatusCode.CANCELLED).ok


def test_entry_record_is_json(buf):
    write_entry(buf, Entry(EntryKind.REQUEST, "/svc/M", Message("t", b"\xff\x00"), 0))
    buf.seek(0)

    doc = json.loads(read_record(buf))
    assert doc["kind"] == "REQUEST"
    assert doc["method"] == "/svc/M"
    assert doc["message"] == {"type": "t", "data": "/wA="}
    assert "status" not in doc


def test_status_record_uses_code_name(buf):
    write_entry(buf, Entry(EntryKind.RESPONSE, "", Status(grpc.StatusCode.NOT_FOUND, '"x"'), 1))
    buf.seek(0)

    doc = json.loads(read_record(buf))
    assert doc["status"] == {"code": "NOT_FOUND", "details": '"x"'}


@pytest.mark.parametrize(
    "record",
    [
        b"not json",
        b"\xff\xfe",
        b'{"kind": "REQUEST", "method": "m"}',
        b'{"kind": "REQUEST", "method": "m", "message": {"type": "t", "data": ""},'
        b' "status": {"code": "OK"}}',
        b'{"kind": "CREATE_STREAM", "status": {"code": "OK"}}',
        b'{"kind": "RESPONSE", "ref_index": -1, "status": {"code": "OK"}}',
        b'{"kind": "RESPONSE", "ref_index": 1, "status": {"code": "NOPE"}}',
        b'{"kind": "REQUEST", "method": "m", "message": {"type": "t", "data": "!!"}}',
    ],
)
def test_read_entry_rejects_invalid_records(buf, record):
    write_record(buf, record)
    buf.seek(0)

    with pytest.raises(EntryDecodeError):
        read_entry(buf)


def test_read_entry_truncated(buf):
    write_entry(buf, Entry(EntryKind.REQUEST, "m", Message("t", b"abc"), 0))
    data = buf.getvalue()[:-3]

    with pytest.raises(TruncatedRecordError):
        read_entry(io.BytesIO(data))
