# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
rpcreplay - record and replay gRPC traffic.

A Recorder intercepts calls on a live channel and writes them to a log; a
Replayer reads the log and answers the same calls without a server.
"""

from .codec import MessageCodec, ProtobufCodec, PydanticCodec
from .config import RPCReplayConfig, get_config, load_config
from .dump import format_entry, fprint
from .entry import (
    EMPTY_MESSAGE,
    Entry,
    EntryKind,
    Message,
    Status,
    read_entry,
    write_entry,
)
from .exceptions import (
    CodecError,
    ConfigError,
    EntryDecodeError,
    HeaderError,
    IncompleteCallError,
    LogFormatError,
    RecorderClosedError,
    ReplayError,
    RPCReplayError,
    SendMismatchError,
    TruncatedRecordError,
    UnknownMessageTypeError,
    UnmatchedCallError,
)
from .framing import MAGIC, read_header, read_record, write_header, write_record
from .recorder import Recorder
from .replayer import RecordedCall, ReplayedRpcError, Replayer

__version__ = "1.0.0"

__all__ = [
    # Recording / replaying
    "Recorder",
    "Replayer",
    "RecordedCall",
    "ReplayedRpcError",
    # Codecs
    "MessageCodec",
    "PydanticCodec",
    "ProtobufCodec",
    # Log format
    "MAGIC",
    "write_record",
    "read_record",
    "write_header",
    "read_header",
    "Entry",
    "EntryKind",
    "Message",
    "Status",
    "EMPTY_MESSAGE",
    "write_entry",
    "read_entry",
    "format_entry",
    "fprint",
    # Configuration
    "RPCReplayConfig",
    "get_config",
    "load_config",
    # Errors
    "RPCReplayError",
    "ConfigError",
    "LogFormatError",
    "TruncatedRecordError",
    "HeaderError",
    "EntryDecodeError",
    "CodecError",
    "UnknownMessageTypeError",
    "RecorderClosedError",
    "ReplayError",
    "UnmatchedCallError",
    "IncompleteCallError",
    "SendMismatchError",
]
