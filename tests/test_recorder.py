# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Recorder tests driven by fake continuations instead of a server"""

import io
from collections import namedtuple

import grpc
import pytest

from intstore import GetRequest, Item
from rpcreplay.config import RPCReplayConfig
from rpcreplay.entry import EMPTY_MESSAGE, EntryKind, OK_STATUS, Status, read_entry
from rpcreplay.framing import read_header
from rpcreplay.recorder import Recorder, call_method, status_from_error

Details = namedtuple(
    "Details",
    ["method", "timeout", "metadata", "credentials", "wait_for_ready", "compression"],
)


def details(method):
    return Details(method, None, None, None, None, None)


class FakeOutcome:
    """A finished unary call"""

    def __init__(self, response=None, error=None):
        self._response = response
        self._error = error

    def done(self):
        return True

    def cancelled(self):
        return False

    def result(self, timeout=None):
        if self._error is not None:
            raise self._error
        return self._response

    def exception(self, timeout=None):
        return self._error

    def add_done_callback(self, fn):
        fn(self)


class FakeStream:
    """A server stream yielding fixed responses, then an optional error"""

    def __init__(self, responses, error=None):
        self._responses = iter(responses)
        self._error = error

    def __next__(self):
        try:
            return next(self._responses)
        except StopIteration:
            if self._error is not None:
                raise self._error
            raise

    def cancel(self):
        self._responses = iter(())
        return True


class FakeRpcError(grpc.RpcError, grpc.Call):
    def __init__(self, code, details):
        self._code = code
        self._details = details

    def initial_metadata(self):
        return ()

    def trailing_metadata(self):
        return ()

    def code(self):
        return self._code

    def details(self):
        return self._details

    def is_active(self):
        return False

    def time_remaining(self):
        return None

    def cancel(self):
        return False

    def add_callback(self, callback):
        return False


def entries_of(buf):
    buf.seek(0)
    read_header(buf)
    result = []
    while True:
        entry = read_entry(buf)
        if entry is None:
            return result
        result.append(entry)


@pytest.fixture
def recorder(buf, codec, config):
    return Recorder(buf, b"init", codec=codec, config=config)


def test_header_written_on_construction(buf, codec, config):
    Recorder(buf, b"init", codec=codec, config=config)

    buf.seek(0)
    assert read_header(buf) == b"init"
    assert read_entry(buf) is None


def test_unary_success(recorder, buf):
    interceptor = recorder.interceptors()[0]
    outcome = interceptor.intercept_unary_unary(
        lambda d, r: FakeOutcome(response=Item(name="a", value=1)),
        details("/intstore.IntStore/Get"),
        GetRequest(name="a"),
    )

    assert outcome.result() == Item(name="a", value=1)
    request, response = entries_of(buf)
    assert request.kind == EntryKind.REQUEST
    assert request.method == "/intstore.IntStore/Get"
    assert response.kind == EntryKind.RESPONSE
    assert response.ref_index == 1
    assert recorder.codec.decode(response.payload) == Item(name="a", value=1)


def test_response_recorded_once(recorder, buf):
    interceptor = recorder.interceptors()[0]
    outcome = interceptor.intercept_unary_unary(
        lambda d, r: FakeOutcome(response=Item(name="a")),
        details("/intstore.IntStore/Get"),
        GetRequest(name="a"),
    )

    outcome.result()
    outcome.exception()
    outcome.result()

    assert [e.kind for e in entries_of(buf)] == [EntryKind.REQUEST, EntryKind.RESPONSE]


def test_rpc_error_recorded_as_status(recorder, buf):
    error = FakeRpcError(grpc.StatusCode.NOT_FOUND, "missing")
    interceptor = recorder.interceptors()[0]
    outcome = interceptor.intercept_unary_unary(
        lambda d, r: FakeOutcome(error=error),
        details("/intstore.IntStore/Get"),
        GetRequest(name="a"),
    )

    assert outcome.exception() is error
    _, response = entries_of(buf)
    assert response.payload == Status(grpc.StatusCode.NOT_FOUND, "missing")


def test_non_grpc_error_recorded_as_unknown(recorder, buf):
    interceptor = recorder.interceptors()[0]
    interceptor.intercept_unary_unary(
        lambda d, r: FakeOutcome(error=ValueError("boom")),
        details("/intstore.IntStore/Get"),
        GetRequest(name="a"),
    )

    _, response = entries_of(buf)
    assert response.payload == Status(grpc.StatusCode.UNKNOWN, "boom")


def test_bytes_method_name(recorder, buf):
    interceptor = recorder.interceptors()[0]
    interceptor.intercept_unary_unary(
        lambda d, r: FakeOutcome(response=Item(name="a")),
        details(b"/intstore.IntStore/Get"),
        GetRequest(name="a"),
    )

    assert entries_of(buf)[0].method == "/intstore.IntStore/Get"


def test_server_stream_records_receives_and_error(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream(
            [Item(name="a"), Item(name="b")],
            error=FakeRpcError(grpc.StatusCode.UNAVAILABLE, "reset"),
        ),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )

    assert next(stream) == Item(name="a")
    assert next(stream) == Item(name="b")
    with pytest.raises(grpc.RpcError):
        next(stream)

    entries = entries_of(buf)
    assert [e.kind for e in entries] == [
        EntryKind.REQUEST,
        EntryKind.RECEIVE,
        EntryKind.RECEIVE,
        EntryKind.RESPONSE,
    ]
    assert all(e.ref_index == 1 for e in entries[1:])
    assert entries[-1].payload == Status(grpc.StatusCode.UNAVAILABLE, "reset")


def test_server_stream_end_recorded_as_ok(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream([Item(name="a")]),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )

    assert list(stream) == [Item(name="a")]
    with pytest.raises(StopIteration):
        next(stream)

    entries = entries_of(buf)
    assert entries[-1].payload == OK_STATUS
    assert [e.kind for e in entries].count(EntryKind.RESPONSE) == 1


def test_server_stream_iterator_failure_recorded_as_unknown(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream([Item(name="a")], error=RuntimeError("decoder exploded")),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )

    assert next(stream) == Item(name="a")
    with pytest.raises(RuntimeError):
        next(stream)

    entries = entries_of(buf)
    assert entries[-1].kind == EntryKind.RESPONSE
    assert entries[-1].payload == Status(grpc.StatusCode.UNKNOWN, "decoder exploded")


def test_server_stream_cancel_recorded(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream([Item(name="a"), Item(name="b")]),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )

    assert next(stream) == Item(name="a")
    assert stream.cancel() is True
    with pytest.raises(StopIteration):
        next(stream)

    entries = entries_of(buf)
    assert [e.kind for e in entries] == [
        EntryKind.REQUEST,
        EntryKind.RECEIVE,
        EntryKind.RESPONSE,
    ]
    assert entries[-1].payload.code == grpc.StatusCode.CANCELLED


def test_close_terminates_abandoned_stream(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream([Item(name="a"), Item(name="b")]),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )
    assert next(stream) == Item(name="a")

    recorder.close()

    entries = entries_of(buf)
    assert [e.kind for e in entries] == [
        EntryKind.REQUEST,
        EntryKind.RECEIVE,
        EntryKind.RESPONSE,
    ]
    assert entries[-1].ref_index == 1
    assert entries[-1].payload.code == grpc.StatusCode.CANCELLED


def test_close_leaves_finished_streams_alone(recorder, buf):
    interceptor = recorder.interceptors()[0]
    stream = interceptor.intercept_unary_stream(
        lambda d, r: FakeStream([Item(name="a")]),
        details("/intstore.IntStore/ListItems"),
        GetRequest(name="a"),
    )
    list(stream)

    recorder.close()

    responses = [e for e in entries_of(buf) if e.kind == EntryKind.RESPONSE]
    assert [e.payload for e in responses] == [OK_STATUS]


def test_client_stream_opens_with_empty_message(recorder, buf):
    sent = []

    def continuation(d, request_iterator):
        sent.extend(request_iterator)
        return FakeOutcome(response=Item(name="done"))

    interceptor = recorder.interceptors()[0]
    interceptor.intercept_stream_unary(
        continuation,
        details("/intstore.IntStore/SetStream"),
        iter([Item(name="a"), Item(name="b")]),
    )

    entries = entries_of(buf)
    assert sent == [Item(name="a"), Item(name="b")]
    assert entries[0].payload == EMPTY_MESSAGE
    assert [e.kind for e in entries] == [
        EntryKind.REQUEST,
        EntryKind.SEND,
        EntryKind.SEND,
        EntryKind.RESPONSE,
    ]


def test_before_hook_failure_records_nothing(buf, codec, config):
    def reject(method, request):
        raise PermissionError("blocked")

    recorder = Recorder(buf, codec=codec, before=reject, config=config)
    interceptor = recorder.interceptors()[0]

    with pytest.raises(PermissionError):
        interceptor.intercept_unary_unary(
            lambda d, r: FakeOutcome(response=Item(name="a")),
            details("/intstore.IntStore/Get"),
            GetRequest(name="a"),
        )
    assert entries_of(buf) == []


def test_flush_disabled(codec):
    class CountingBuffer(io.BytesIO):
        flushes = 0

        def flush(self):
            self.flushes += 1
            super().flush()

    out = CountingBuffer()
    config = RPCReplayConfig(recorder={"flush_each_entry": False})
    recorder = Recorder(out, codec=codec, config=config)
    after_header = out.flushes

    recorder._open_call("/intstore.IntStore/Get", GetRequest(name="a"))

    assert out.flushes == after_header
    recorder.close()
    assert out.flushes == after_header + 1
    assert not out.closed


def test_close_is_idempotent(recorder):
    recorder.close()
    recorder.close()

    assert recorder.closed


def test_call_method_and_status_helpers():
    assert call_method(details("/a/B")) == "/a/B"
    assert call_method(details(b"/a/B")) == "/a/B"
    assert status_from_error(RuntimeError("x")) == Status(grpc.StatusCode.UNKNOWN, "x")
    assert status_from_error(FakeRpcError(grpc.StatusCode.INTERNAL, None)) == Status(
        grpc.StatusCode.INTERNAL, ""
    )
