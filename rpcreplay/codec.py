# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Message codecs.

Interceptors see deserialized message objects, so the recorder needs a way
to turn a request or response into bytes, and the replayer needs a way back.
A codec maps a message to Message(type_name, data) and resolves the type name
through a registry of known classes, much like protobuf's Any.

Usage:
    codec = PydanticCodec().register(Item, GetRequest, SetResponse)
    recorder = Recorder(stream, codec=codec)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Type

from .entry import EMPTY_MESSAGE, Message
from .exceptions import CodecError, UnknownMessageTypeError

logger = logging.getLogger("rpcreplay.codec")


class MessageCodec(ABC):
    """Base class for message codecs backed by a type registry."""

    def __init__(self):
        self._types: Dict[str, Type[Any]] = {}

    @abstractmethod
    def type_name_of(self, cls: Type[Any]) -> str:
        """Stable name recorded for messages of this class."""

    @abstractmethod
    def serialize(self, message: Any) -> bytes:
        """Canonical byte encoding of a message."""

    @abstractmethod
    def deserialize(self, cls: Type[Any], data: bytes) -> Any:
        """Rebuild a message of the given class."""

    def register(self, *classes: Type[Any]) -> "MessageCodec":
        for cls in classes:
            self._types[self.type_name_of(cls)] = cls
        return self

    def is_registered(self, type_name: str) -> bool:
        return type_name in self._types

    def encode(self, message: Any) -> Message:
        cls = type(message)
        type_name = self.type_name_of(cls)
        if type_name not in self._types:
            # Recording teaches the codec every type it sees.
            self._types[type_name] = cls
            logger.debug(f"Registered message type {type_name}")
        try:
            data = self.serialize(message)
        except Exception as e:
            raise CodecError(f"cannot serialize {type_name}", cause=e) from e
        return Message(type_name=type_name, data=data)

    def decode(self, message: Message) -> Any:
        if message == EMPTY_MESSAGE:
            return None
        cls = self._types.get(message.type_name)
        if cls is None:
            raise UnknownMessageTypeError(
                f"message type not registered: {message.type_name}",
                type_name=message.type_name,
            )
        try:
            return self.deserialize(cls, message.data)
        except Exception as e:
            raise CodecError(f"cannot deserialize {message.type_name}", cause=e) from e


class PydanticCodec(MessageCodec):
    """Codec for pydantic models, encoded as their JSON dump."""

    def type_name_of(self, cls):
        return f"{cls.__module__}.{cls.__qualname__}"

    def serialize(self, message):
        return message.model_dump_json().encode("utf-8")

    def deserialize(self, cls, data):
        return cls.model_validate_json(data)


class ProtobufCodec(MessageCodec):
    """Codec for protobuf messages, named by their full descriptor name."""

    def type_name_of(self, cls):
        return cls.DESCRIPTOR.full_name

    def serialize(self, message):
        return message.SerializeToString(deterministic=True)

    def deserialize(self, cls, data):
        return cls.FromString(data)
