# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Replayer - answer gRPC calls from a recorded log.

Usage:
    rep = Replayer.from_file("session.replay", codec=codec)
    restore(rep.initial)
    stub = IntStoreStub(rep.connection())
    stub.Get(GetRequest(name="a"))   # served from the log, no network I/O

Matching:
    A live call is matched against recorded REQUEST entries by method name
    and serialized request. Identical recorded calls are served first
    recorded, first served; each recorded call is served once. Streams
    opened without a request message (client and bidi streaming) match on
    method name alone.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Deque, Dict, Iterator, List, Optional, Tuple, Union

import grpc

from .codec import MessageCodec, PydanticCodec
from .config import RPCReplayConfig, get_config
from .entry import EMPTY_MESSAGE, Entry, EntryKind, Message, Payload, Status, read_entry
from .exceptions import (
    IncompleteCallError,
    LogFormatError,
    ReplayError,
    SendMismatchError,
    UnmatchedCallError,
)
from .framing import read_header
from .recorder import BeforeFunc, call_method, status_from_error

logger = logging.getLogger("rpcreplay.replayer")


# =============================================================================
# Call index
# =============================================================================


@dataclass
class RecordedCall:
    """One call rebuilt from its REQUEST and the entries referencing it."""
    index: int
    method: str
    request: Payload
    sends: List[Entry] = field(default_factory=list)
    receives: List[Entry] = field(default_factory=list)
    response: Optional[Entry] = None


class CallIndex:
    """
    Recorded calls keyed by (method, request payload).

    Built once and never reshaped afterwards; take() is the only mutation
    and pops from a per-key FIFO under a lock.
    """

    def __init__(self, entries: Tuple[Entry, ...]):
        self._calls: Dict[int, RecordedCall] = {}
        self._pending: Dict[Tuple[str, Payload], Deque[int]] = {}
        self._lock = threading.Lock()

        for position, entry in enumerate(entries, start=1):
            if entry.kind == EntryKind.REQUEST:
                self._add_request(position, entry)
            else:
                self._add_continuation(position, entry)

    def _add_request(self, position: int, entry: Entry) -> None:
        if entry.ref_index != 0:
            raise LogFormatError(
                f"entry #{position}: REQUEST with ref_index {entry.ref_index}",
                offset=position,
            )
        if not entry.method:
            raise LogFormatError(f"entry #{position}: REQUEST without method", offset=position)
        self._calls[position] = RecordedCall(position, entry.method, entry.payload)
        self._pending.setdefault((entry.method, entry.payload), deque()).append(position)

    def _add_continuation(self, position: int, entry: Entry) -> None:
        call = self._calls.get(entry.ref_index)
        if call is None or entry.ref_index >= position:
            raise LogFormatError(
                f"entry #{position}: {entry.kind.value} refers to #{entry.ref_index}, "
                "which is not an earlier REQUEST",
                offset=position,
            )
        if entry.kind == EntryKind.SEND:
            call.sends.append(entry)
        elif entry.kind == EntryKind.RECEIVE:
            call.receives.append(entry)
        elif call.response is not None:
            raise LogFormatError(
                f"entry #{position}: second RESPONSE for call #{entry.ref_index}",
                offset=position,
            )
        else:
            call.response = entry

    def __len__(self) -> int:
        return len(self._calls)

    @property
    def calls(self) -> List[RecordedCall]:
        return [self._calls[i] for i in sorted(self._calls)]

    def remaining(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._pending.values())

    def take(self, method: str, request: Payload) -> RecordedCall:
        """Consume the earliest unserved call with this method and request."""
        with self._lock:
            queue = self._pending.get((method, request))
            if not queue:
                raise UnmatchedCallError(
                    f"no matching call recorded for {method}",
                    method=method,
                )
            position = queue.popleft()
        return self._calls[position]


# =============================================================================
# Replayed call objects
# =============================================================================


class ReplayedRpcError(grpc.RpcError, grpc.Call, grpc.Future):
    """A recorded error status, raised the way a live call would raise it."""

    def __init__(self, status: Status):
        super().__init__(f"{status.code.name}: {status.details}")
        self._status = status

    def initial_metadata(self):
        return ()

    def trailing_metadata(self):
        return ()

    def code(self):
        return self._status.code

    def details(self):
        return self._status.details

    def is_active(self):
        return False

    def time_remaining(self):
        return None

    def cancel(self):
        return False

    def add_callback(self, callback):
        return False

    def cancelled(self):
        return False

    def running(self):
        return False

    def done(self):
        return True

    def result(self, timeout=None):
        raise self

    def exception(self, timeout=None):
        return self

    def traceback(self, timeout=None):
        return None

    def add_done_callback(self, fn):
        fn(self)


class _ReplayedOutcome(grpc.Call, grpc.Future):
    """A completed unary call carrying a recorded response."""

    def __init__(self, response: Any):
        self._response = response

    def initial_metadata(self):
        return ()

    def trailing_metadata(self):
        return ()

    def code(self):
        return grpc.StatusCode.OK

    def details(self):
        return ""

    def is_active(self):
        return False

    def time_remaining(self):
        return None

    def cancel(self):
        return False

    def add_callback(self, callback):
        return False

    def cancelled(self):
        return False

    def running(self):
        return False

    def done(self):
        return True

    def result(self, timeout=None):
        return self._response

    def exception(self, timeout=None):
        return None

    def traceback(self, timeout=None):
        return None

    def add_done_callback(self, fn):
        fn(self)


class _ReplayedResponseStream(grpc.Call, grpc.Future):
    """
    Yields the recorded RECEIVE messages, then ends with the recorded status.

    A bidi stream does not end before the request consumer has matched
    every recorded SEND (or given up after send_timeout), so a send
    mismatch is raised from the stream instead of being lost.
    """

    def __init__(
        self,
        codec: MessageCodec,
        call: RecordedCall,
        awaits_sends: bool = False,
        send_timeout: Optional[float] = None,
    ):
        self._codec = codec
        self._call = call
        self._receives: Deque[Entry] = deque(call.receives)
        self._status: Optional[Status] = _final_status(call)
        self._error: Optional[BaseException] = None
        self._send_timeout = send_timeout
        self._sends_checked = threading.Event()
        self._done = threading.Event()
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: List[Any] = []
        if not awaits_sends:
            self._sends_checked.set()

    def __iter__(self):
        return self

    def __next__(self):
        while self._error is None:
            try:
                entry = self._receives.popleft()
            except IndexError:
                break
            if isinstance(entry.payload, Message):
                return self._codec.decode(entry.payload)
            self._receives.clear()
            self._status = entry.payload

        self._wait_for_sends()
        if self._error is None and self._status is None:
            self._error = IncompleteCallError(
                f"recorded call #{self._call.index} to {self._call.method} "
                f"ends after {len(self._call.receives)} responses without a status",
                method=self._call.method,
            )
        self._finish()
        if self._error is not None:
            raise self._error
        if self._status.ok:
            raise StopIteration
        raise ReplayedRpcError(self._status)

    def _wait_for_sends(self) -> None:
        if not self._sends_checked.wait(self._send_timeout):
            logger.warning(
                f"{self._call.method}: recorded requests not sent within "
                f"{self._send_timeout}s, ending stream #{self._call.index}"
            )

    def _fail_send(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None and not self._done.is_set():
                self._error = error

    def _finish(self) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def _final(self) -> Optional[Status]:
        if self._error is not None:
            return status_from_error(self._error)
        return self._status

    # grpc.Call

    def initial_metadata(self):
        return ()

    def trailing_metadata(self):
        return ()

    def code(self):
        status = self._final()
        return status.code if status is not None else None

    def details(self):
        status = self._final()
        return status.details if status is not None else None

    def is_active(self):
        return not self._done.is_set()

    def time_remaining(self):
        return None

    def cancel(self):
        with self._lock:
            if self._done.is_set():
                return False
            self._receives.clear()
            self._status = Status(grpc.StatusCode.CANCELLED, "Locally cancelled by application!")
            self._cancelled = True
        self._sends_checked.set()
        self._finish()
        logger.debug(f"{self._call.method}: replayed stream #{self._call.index} cancelled")
        return True

    def add_callback(self, callback):
        with self._lock:
            if self._done.is_set():
                return False
            self._callbacks.append(callback)
            return True

    # grpc.Future

    def cancelled(self):
        return self._cancelled

    def running(self):
        return not self._done.is_set()

    def done(self):
        return self._done.is_set()

    def result(self, timeout=None):
        error = self.exception(timeout)
        if error is not None:
            raise error
        return None

    def exception(self, timeout=None):
        self._done.wait(timeout)
        if self._error is not None:
            return self._error
        if self._status is not None and not self._status.ok:
            return ReplayedRpcError(self._status)
        return None

    def traceback(self, timeout=None):
        return None

    def add_done_callback(self, fn):
        if not self.add_callback(lambda: fn(self)):
            fn(self)


def _final_status(call: RecordedCall) -> Optional[Status]:
    if call.response is None:
        return None
    payload = call.response.payload
    if isinstance(payload, Status):
        return payload
    # A message on a stream's RESPONSE is treated as clean completion.
    return Status(grpc.StatusCode.OK)


# =============================================================================
# Replayer
# =============================================================================


class Replayer:
    """
    Serves calls from a fully parsed replay log.

    The whole log is read during construction: header, format and
    reference errors surface there. A log holding only a header is valid
    and simply matches no calls.
    """

    def __init__(
        self,
        stream: BinaryIO,
        codec: Optional[MessageCodec] = None,
        before: Optional[BeforeFunc] = None,
        config: Optional[RPCReplayConfig] = None,
    ):
        """
        Args:
            stream: Readable binary stream positioned at the log header
            codec: Message codec able to decode every recorded response
            before: Called as before(method, request) on every live
                request before matching; may edit the request in place
            config: Overrides the global configuration
        """
        self._codec = codec or PydanticCodec()
        self._before = before
        self._config = config or get_config()
        self._channel: Optional[grpc.Channel] = None
        self._interceptor = _ReplayingInterceptor(self)

        self._initial = read_header(stream)
        entries = []
        while True:
            entry = read_entry(stream)
            if entry is None:
                break
            entries.append(entry)
        self._entries: Tuple[Entry, ...] = tuple(entries)
        self._index = CallIndex(self._entries)

        logger.info(
            f"Loaded replay log: {len(self._entries)} entries, {len(self._index)} calls"
        )

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "Replayer":
        with open(path, "rb") as f:
            return cls(f, **kwargs)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def initial(self) -> bytes:
        """Initial state captured by the recorder."""
        return self._initial

    @property
    def entries(self) -> Tuple[Entry, ...]:
        return self._entries

    @property
    def calls(self) -> List[RecordedCall]:
        return self._index.calls

    @property
    def codec(self) -> MessageCodec:
        return self._codec

    def remaining(self) -> int:
        """Number of recorded calls not served yet."""
        return self._index.remaining()

    def interceptors(self) -> List[grpc.UnaryUnaryClientInterceptor]:
        """Client interceptors that answer every call shape from the log."""
        return [self._interceptor]

    def intercept(self, channel: grpc.Channel) -> grpc.Channel:
        """Wrap a channel so its calls are answered from the log instead."""
        return grpc.intercept_channel(channel, *self.interceptors())

    def connection(self) -> grpc.Channel:
        """An intercepted channel over a placeholder that is never dialled."""
        if self._channel is None:
            self._channel = grpc.insecure_channel(self._config.replayer.placeholder_target)
        return self.intercept(self._channel)

    def close(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    # =========================================================================
    # Serving calls
    # =========================================================================

    def _match(self, method: str, request: Any = None, streaming: bool = False) -> RecordedCall:
        """
        Take the recorded call for a live one.

        A response stream may lack a RESPONSE when the client stopped
        reading it; it fails only if read past its recorded messages.
        """
        if request is None:
            payload: Payload = EMPTY_MESSAGE
        else:
            if self._before is not None:
                self._before(method, request)
            payload = self._codec.encode(request)

        call = self._index.take(method, payload)
        if call.response is None and not streaming:
            raise IncompleteCallError(
                f"recorded call #{call.index} to {method} has no response",
                method=method,
            )
        logger.debug(f"{method} matched recorded call #{call.index}")
        return call

    def _outcome(self, call: RecordedCall):
        payload = call.response.payload
        if isinstance(payload, Message):
            return _ReplayedOutcome(self._codec.decode(payload))
        if payload.ok:
            return _ReplayedOutcome(None)
        return ReplayedRpcError(payload)

    def _check_sends(
        self,
        method: str,
        call: RecordedCall,
        request_iterator: Iterator[Any],
        on_recorded: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Drain request_iterator, comparing each request with the recorded SENDs.

        on_recorded runs once as many requests as were recorded have passed.
        """
        if on_recorded is not None and not call.sends:
            on_recorded()
        for sent, request in enumerate(request_iterator, start=1):
            if self._before is not None:
                self._before(method, request)
            if self._config.replayer.verify_sends:
                self._verify_send(method, call, sent, request)
            if on_recorded is not None and sent == len(call.sends):
                on_recorded()

    def _verify_send(self, method: str, call: RecordedCall, sent: int, request: Any) -> None:
        if sent > len(call.sends):
            raise SendMismatchError(
                f"{method}: request {sent} was not recorded "
                f"(call #{call.index} recorded {len(call.sends)} sends)",
                method=method,
            )
        if self._codec.encode(request) != call.sends[sent - 1].payload:
            raise SendMismatchError(
                f"{method}: request {sent} differs from the recorded one",
                method=method,
            )

    def _consume_sends(
        self,
        method: str,
        call: RecordedCall,
        request_iterator: Iterator[Any],
        stream: _ReplayedResponseStream,
    ) -> None:
        try:
            self._check_sends(method, call, request_iterator, stream._sends_checked.set)
        except ReplayError as e:
            logger.error(str(e))
            stream._fail_send(e)
        except Exception as e:
            logger.error(f"{method}: request iterator raised {e!r}")
            stream._fail_send(e)
        finally:
            stream._sends_checked.set()


class _ReplayingInterceptor(
    grpc.UnaryUnaryClientInterceptor,
    grpc.UnaryStreamClientInterceptor,
    grpc.StreamUnaryClientInterceptor,
    grpc.StreamStreamClientInterceptor,
):
    """Never calls the continuation: every answer comes from the log."""

    def __init__(self, replayer: Replayer):
        self._replayer = replayer

    def intercept_unary_unary(self, continuation, client_call_details, request):
        call = self._replayer._match(call_method(client_call_details), request)
        return self._replayer._outcome(call)

    def intercept_unary_stream(self, continuation, client_call_details, request):
        call = self._replayer._match(call_method(client_call_details), request, streaming=True)
        return _ReplayedResponseStream(self._replayer.codec, call)

    def intercept_stream_unary(self, continuation, client_call_details, request_iterator):
        method = call_method(client_call_details)
        call = self._replayer._match(method)
        self._replayer._check_sends(method, call, request_iterator)
        return self._replayer._outcome(call)

    def intercept_stream_stream(self, continuation, client_call_details, request_iterator):
        method = call_method(client_call_details)
        call = self._replayer._match(method, streaming=True)
        stream = _ReplayedResponseStream(
            self._replayer.codec,
            call,
            awaits_sends=True,
            send_timeout=self._replayer._config.replayer.send_timeout,
        )
        threading.Thread(
            target=self._replayer._consume_sends,
            args=(method, call, request_iterator, stream),
            name=f"rpcreplay-sends-{call.index}",
            daemon=True,
        ).start()
        return stream
