# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Log entries and their record codec.

An entry is one event in the call timeline:

    REQUEST   opens a call (unary request or stream start), ref_index 0
    RESPONSE  ends a call: the unary result, or the final stream status
    SEND      a message the client sent on an open stream
    RECEIVE   a message the client received on an open stream

Every non-REQUEST entry points back at its call's REQUEST through
ref_index, the 1-based position of that REQUEST in the log.

The payload is either a serialized Message or a Status. A Status with code
OK is how a cleanly finished stream is recorded.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Optional, Union

import grpc
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import EntryDecodeError
from .framing import read_record, write_record


class EntryKind(str, Enum):
    """Phase of a call an entry records."""
    REQUEST = "REQUEST"
    RESPONSE = "RESPONSE"
    RECEIVE = "RECEIVE"
    SEND = "SEND"


@dataclass(frozen=True)
class Message:
    """A serialized application message."""
    type_name: str
    data: bytes


@dataclass(frozen=True)
class Status:
    """A call outcome classified by gRPC status code."""
    code: grpc.StatusCode
    details: str = ""

    @property
    def ok(self) -> bool:
        return self.code == grpc.StatusCode.OK


Payload = Union[Message, Status]

# Request payload of calls opened without a single request message
# (client streaming and bidi streaming).
EMPTY_MESSAGE = Message(type_name="", data=b"")

OK_STATUS = Status(grpc.StatusCode.OK)


@dataclass(frozen=True)
class Entry:
    kind: EntryKind
    method: str
    payload: Payload
    ref_index: int = 0


# =============================================================================
# Wire models
# =============================================================================


class MessageRecord(BaseModel):
    type: str = ""
    data: str = Field(default="", description="base64 encoded message bytes")


class StatusRecord(BaseModel):
    code: str
    details: str = ""

    @field_validator("code")
    @classmethod
    def validate_code(cls, v):
        if v not in grpc.StatusCode.__members__:
            raise ValueError(f"unknown status code: {v}")
        return v


class EntryRecord(BaseModel):
    """JSON document stored in one entry record."""
    kind: EntryKind
    method: str = ""
    ref_index: int = Field(default=0, ge=0)
    message: Optional[MessageRecord] = None
    status: Optional[StatusRecord] = None

    @model_validator(mode="after")
    def check_payload(self):
        if (self.message is None) == (self.status is None):
            raise ValueError("entry must carry exactly one of message or status")
        return self

    @classmethod
    def from_entry(cls, entry: Entry) -> "EntryRecord":
        payload = entry.payload
        if isinstance(payload, Message):
            return cls(
                kind=entry.kind,
                method=entry.method,
                ref_index=entry.ref_index,
                message=MessageRecord(
                    type=payload.type_name,
                    data=base64.b64encode(payload.data).decode("ascii"),
                ),
            )
        if isinstance(payload, Status):
            return cls(
                kind=entry.kind,
                method=entry.method,
                ref_index=entry.ref_index,
                status=StatusRecord(code=payload.code.name, details=payload.details),
            )
        raise TypeError(f"unsupported entry payload: {type(payload).__name__}")

    def to_entry(self) -> Entry:
        if self.message is not None:
            payload: Payload = Message(
                type_name=self.message.type,
                data=base64.b64decode(self.message.data, validate=True),
            )
        else:
            payload = Status(
                code=grpc.StatusCode[self.status.code],
                details=self.status.details,
            )
        return Entry(
            kind=self.kind,
            method=self.method,
            payload=payload,
            ref_index=self.ref_index,
        )


# =============================================================================
# Codec
# =============================================================================


def write_entry(stream: BinaryIO, entry: Entry) -> None:
    """Serialize an entry into one record."""
    record = EntryRecord.from_entry(entry)
    write_record(stream, record.model_dump_json(exclude_none=True).encode("utf-8"))


def read_entry(stream: BinaryIO) -> Optional[Entry]:
    """
    Read the next entry.

    Returns:
        The entry, or None when the stream is cleanly exhausted

    Raises:
        TruncatedRecordError: the record is cut short
        EntryDecodeError: the record is not a valid entry
    """
    data = read_record(stream)
    if data is None:
        return None
    try:
        return EntryRecord.model_validate_json(data).to_entry()
    except ValidationError as e:
        raise EntryDecodeError(
            "invalid entry record",
            details={"errors": e.error_count()},
            cause=e,
        ) from e
    except binascii.Error as e:
        raise EntryDecodeError("invalid base64 message data", cause=e) from e
