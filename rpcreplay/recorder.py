# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Recorder - capture live gRPC traffic into a replay log.

Usage:
    with Recorder.from_file("session.replay", initial=snapshot, codec=codec) as rec:
        channel = rec.intercept(grpc.insecure_channel(address))
        stub = IntStoreStub(channel)
        stub.Set(Item(name="a", value=1))

Each call becomes a REQUEST entry, followed by SEND/RECEIVE entries for
streamed messages and one RESPONSE entry with the result or the status.
Entries of concurrent calls interleave in the log; they are tied together
by ref_index, never by adjacency.
"""

import logging
import threading
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Union

import grpc

from .codec import MessageCodec, PydanticCodec
from .config import RPCReplayConfig, get_config
from .entry import EMPTY_MESSAGE, Entry, EntryKind, OK_STATUS, Payload, Status, write_entry
from .exceptions import RecorderClosedError
from .framing import write_header

logger = logging.getLogger("rpcreplay.recorder")

BeforeFunc = Callable[[str, Any], None]


def call_method(client_call_details: grpc.ClientCallDetails) -> str:
    """Fully qualified method name of an intercepted call."""
    method = client_call_details.method
    if isinstance(method, bytes):
        return method.decode("utf-8")
    return method


def status_from_error(error: BaseException) -> Status:
    """Classify an exception raised by a call."""
    if isinstance(error, grpc.Call):
        return Status(code=error.code(), details=error.details() or "")
    return Status(code=grpc.StatusCode.UNKNOWN, details=str(error))


class Recorder:
    """
    Writes a replay log of every call made through its interceptors.

    The header is written on construction; an I/O failure there propagates
    and no recorder is returned. close() must run after every recorded call
    has finished.
    """

    def __init__(
        self,
        stream: BinaryIO,
        initial: bytes = b"",
        codec: Optional[MessageCodec] = None,
        before: Optional[BeforeFunc] = None,
        config: Optional[RPCReplayConfig] = None,
    ):
        """
        Args:
            stream: Writable binary stream that receives the log
            initial: Opaque initial state stored in the header
            codec: Message codec, PydanticCodec by default
            before: Called as before(method, request) for every outgoing
                request before it is recorded; raising fails the call
            config: Overrides the global configuration
        """
        self._stream = stream
        self._owns_stream = False
        self._codec = codec or PydanticCodec()
        self._before = before
        self._config = config or get_config()
        self._lock = threading.Lock()
        self._count = 0
        self._closed = False
        self._open_streams: Dict[int, "_RecordingResponseStream"] = {}
        self._interceptor = _RecordingInterceptor(self)

        write_header(self._stream, initial)
        self._stream.flush()
        logger.info(f"Recording started ({len(initial)} bytes of initial state)")

    @classmethod
    def from_file(
        cls, path: Union[str, Path], initial: bytes = b"", **kwargs
    ) -> "Recorder":
        """Create (or truncate) a log file owned by the recorder."""
        f = open(path, "wb")
        try:
            recorder = cls(f, initial, **kwargs)
        except BaseException:
            f.close()
            raise
        recorder._owns_stream = True
        logger.debug(f"Recording to {path}")
        return recorder

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def entry_count(self) -> int:
        return self._count

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def codec(self) -> MessageCodec:
        return self._codec

    def interceptors(self) -> List[grpc.UnaryUnaryClientInterceptor]:
        """Client interceptors that record every call shape."""
        return [self._interceptor]

    def intercept(self, channel: grpc.Channel) -> grpc.Channel:
        """Wrap a live channel so that all calls through it are recorded."""
        return grpc.intercept_channel(channel, *self.interceptors())

    def close(self) -> None:
        """
        Flush the log; close it when the recorder opened it. Idempotent.

        Response streams the client never read to the end get a CANCELLED
        RESPONSE first, so every recorded call has a termination.
        """
        with self._lock:
            if self._closed:
                return
            abandoned = list(self._open_streams.values())
        for stream in abandoned:
            stream._finish(Status(grpc.StatusCode.CANCELLED, "stream abandoned before close"))
            logger.debug(f"#{stream.index} closed as abandoned")

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stream.flush()
            if self._owns_stream:
                self._stream.close()
        logger.info(f"Recording closed with {self._count} entries")

    # =========================================================================
    # Entry writing
    # =========================================================================

    def _write(self, kind: EntryKind, method: str, payload: Payload, ref_index: int) -> int:
        entry = Entry(kind=kind, method=method, payload=payload, ref_index=ref_index)
        with self._lock:
            if self._closed:
                raise RecorderClosedError(
                    "cannot record after close",
                    details={"kind": kind.value, "method": method},
                )
            write_entry(self._stream, entry)
            if self._config.recorder.flush_each_entry:
                self._stream.flush()
            self._count += 1
            index = self._count
        logger.debug(f"#{index} {kind.value} {method} ref={ref_index}")
        return index

    def _open_call(self, method: str, request: Any = None) -> int:
        if request is None:
            return self._write(EntryKind.REQUEST, method, EMPTY_MESSAGE, 0)
        if self._before is not None:
            self._before(method, request)
        return self._write(EntryKind.REQUEST, method, self._codec.encode(request), 0)

    def _record_sends(self, method: str, index: int, request_iterator: Iterator[Any]):
        for request in request_iterator:
            if self._before is not None:
                self._before(method, request)
            self._write(EntryKind.SEND, "", self._codec.encode(request), index)
            yield request

    def _record_receive(self, index: int, response: Any) -> None:
        self._write(EntryKind.RECEIVE, "", self._codec.encode(response), index)

    def _track_stream(self, stream: "_RecordingResponseStream") -> None:
        with self._lock:
            self._open_streams[stream.index] = stream

    def _record_status(self, index: int, status: Status) -> None:
        with self._lock:
            self._open_streams.pop(index, None)
        self._write(EntryKind.RESPONSE, "", status, index)

    def _record_outcome(self, index: int, future: grpc.Future) -> None:
        if future.cancelled():
            payload: Payload = Status(grpc.StatusCode.CANCELLED, "call cancelled")
        else:
            error = future.exception()
            if error is None:
                payload = self._codec.encode(future.result())
            else:
                payload = status_from_error(error)
        self._write(EntryKind.RESPONSE, "", payload, index)


class _RecordingInterceptor(
    grpc.UnaryUnaryClientInterceptor,
    grpc.UnaryStreamClientInterceptor,
    grpc.StreamUnaryClientInterceptor,
    grpc.StreamStreamClientInterceptor,
):
    def __init__(self, recorder: Recorder):
        self._recorder = recorder

    def intercept_unary_unary(self, continuation, client_call_details, request):
        index = self._recorder._open_call(call_method(client_call_details), request)
        outcome = continuation(client_call_details, request)
        return _RecordingOutcome(self._recorder, index, outcome)

    def intercept_unary_stream(self, continuation, client_call_details, request):
        index = self._recorder._open_call(call_method(client_call_details), request)
        call = continuation(client_call_details, request)
        return _RecordingResponseStream(self._recorder, index, call)

    def intercept_stream_unary(self, continuation, client_call_details, request_iterator):
        method = call_method(client_call_details)
        index = self._recorder._open_call(method)
        requests = self._recorder._record_sends(method, index, request_iterator)
        outcome = continuation(client_call_details, requests)
        return _RecordingOutcome(self._recorder, index, outcome)

    def intercept_stream_stream(self, continuation, client_call_details, request_iterator):
        method = call_method(client_call_details)
        index = self._recorder._open_call(method)
        requests = self._recorder._record_sends(method, index, request_iterator)
        call = continuation(client_call_details, requests)
        return _RecordingResponseStream(self._recorder, index, call)


class _ForwardingCall(grpc.Call, grpc.Future):
    """Delegates the grpc.Call and grpc.Future interfaces to a live call."""

    def __init__(self, recorder: Recorder, index: int, call):
        self._recorder = recorder
        self._index = index
        self._call = call

    def initial_metadata(self):
        return self._call.initial_metadata()

    def trailing_metadata(self):
        return self._call.trailing_metadata()

    def code(self):
        return self._call.code()

    def details(self):
        return self._call.details()

    def is_active(self):
        return self._call.is_active()

    def time_remaining(self):
        return self._call.time_remaining()

    def cancel(self):
        return self._call.cancel()

    def add_callback(self, callback):
        return self._call.add_callback(callback)

    def cancelled(self):
        return self._call.cancelled()

    def running(self):
        return self._call.running()

    def done(self):
        return self._call.done()

    def result(self, timeout=None):
        return self._call.result(timeout)

    def exception(self, timeout=None):
        return self._call.exception(timeout)

    def traceback(self, timeout=None):
        return self._call.traceback(timeout)

    def add_done_callback(self, fn):
        return self._call.add_done_callback(lambda _: fn(self))


class _RecordingOutcome(_ForwardingCall):
    """
    A single-response call whose RESPONSE entry is written exactly once.

    The transport may run done-callbacks after result() has already
    returned, so result() and exception() record as well.
    """

    def __init__(self, recorder: Recorder, index: int, call):
        super().__init__(recorder, index, call)
        self._lock = threading.Lock()
        self._recorded = False
        # Completed outcomes run the callback immediately.
        call.add_done_callback(lambda _: self._record())

    def _record(self) -> None:
        with self._lock:
            if self._recorded:
                return
            self._recorded = True
            self._recorder._record_outcome(self._index, self._call)

    def result(self, timeout=None):
        try:
            return self._call.result(timeout)
        finally:
            if self._call.done():
                self._record()

    def exception(self, timeout=None):
        error = self._call.exception(timeout)
        if self._call.done():
            self._record()
        return error


class _RecordingResponseStream(_ForwardingCall):
    """Forwards a streaming call, recording each response and the final status."""

    def __init__(self, recorder: Recorder, index: int, call):
        super().__init__(recorder, index, call)
        self._lock = threading.Lock()
        self._finished = False
        recorder._track_stream(self)

    @property
    def index(self) -> int:
        return self._index

    def __iter__(self):
        return self

    def __next__(self):
        try:
            response = next(self._call)
        except StopIteration:
            self._finish(OK_STATUS)
            raise
        except Exception as e:
            self._finish(status_from_error(e))
            raise
        self._recorder._record_receive(self._index, response)
        return response

    def cancel(self):
        cancelled = self._call.cancel()
        self._finish(Status(grpc.StatusCode.CANCELLED, "call cancelled"))
        return cancelled

    def _finish(self, status: Status) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
        self._recorder._record_status(self._index, status)
