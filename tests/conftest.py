# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared fixtures for rpcreplay tests"""

import io

import pytest

from intstore import MESSAGE_TYPES, IntStoreServer
from rpcreplay.codec import PydanticCodec
from rpcreplay.config import RPCReplayConfig


@pytest.fixture
def config():
    """Default configuration, independent of the environment"""
    return RPCReplayConfig()


@pytest.fixture
def codec():
    return PydanticCodec().register(*MESSAGE_TYPES)


@pytest.fixture
def server():
    srv = IntStoreServer()
    yield srv
    srv.stop()


@pytest.fixture
def buf():
    return io.BytesIO()
