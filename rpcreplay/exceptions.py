# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
rpcreplay Exception Hierarchy

Exception Hierarchy:
    RPCReplayError (base)
    ├── ConfigError
    ├── LogFormatError
    │   ├── TruncatedRecordError
    │   ├── HeaderError
    │   └── EntryDecodeError
    ├── CodecError
    │   └── UnknownMessageTypeError
    ├── RecorderClosedError
    └── ReplayError
        ├── UnmatchedCallError
        ├── IncompleteCallError
        └── SendMismatchError

Errors returned by the recorded server are not part of this hierarchy:
they are replayed as grpc.RpcError (see rpcreplay.replayer.ReplayedRpcError).
"""

from typing import Any, Dict, Optional

# ============================================================================
# Base Exceptions
# ============================================================================


class RPCReplayError(Exception):
    """Base exception for all rpcreplay errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigError(RPCReplayError):
    """Configuration-related errors"""


# ============================================================================
# Log Format Errors
# ============================================================================


class LogFormatError(RPCReplayError):
    """The log stream is malformed"""

    def __init__(self, message: str, offset: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.offset = offset

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["offset"] = self.offset
        return result


class TruncatedRecordError(LogFormatError):
    """A record's length prefix or payload ends early"""

    def __init__(self, message: str, expected: int = 0, actual: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({"expected": self.expected, "actual": self.actual})
        return result


class HeaderError(LogFormatError):
    """Missing, truncated or mismatched log header"""


class EntryDecodeError(LogFormatError):
    """A record could not be decoded into an entry"""


# ============================================================================
# Codec Errors
# ============================================================================


class CodecError(RPCReplayError):
    """Message serialization errors"""


class UnknownMessageTypeError(CodecError):
    """No message class is registered under the recorded type name"""

    def __init__(self, message: str, type_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.type_name = type_name

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["type_name"] = self.type_name
        return result


# ============================================================================
# Recording Errors
# ============================================================================


class RecorderClosedError(RPCReplayError):
    """An entry was written after the recorder was closed"""


# ============================================================================
# Replay Errors
# ============================================================================


class ReplayError(RPCReplayError):
    """A live call could not be answered from the log"""

    def __init__(self, message: str, method: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.method = method

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["method"] = self.method
        return result


class UnmatchedCallError(ReplayError):
    """No unconsumed recorded call matches the method and request"""


class IncompleteCallError(ReplayError):
    """The matched call has no recorded RESPONSE entry"""


class SendMismatchError(ReplayError):
    """A streamed request differs from the one that was recorded"""
