from __future__ import annotations

import socket
from typing import AsyncIterator

import pytest
import pytest_asyncio

from rpct.rpc import Address, RpcProtocol, RpcServer, RpcVerb
from rpct.wire import WireType

LOCALHOST = "127.0.0.1"


def echo_protocol() -> RpcProtocol:
    protocol = RpcProtocol()
    protocol.register_handler(RpcVerb.HELLO, lambda: None)
    protocol.register_handler(RpcVerb.ECHO, lambda value: value, args=(WireType.UINT64,), returns=WireType.UINT64)
    return protocol


@pytest_asyncio.fixture
async def echo_server() -> AsyncIterator[RpcServer]:
    server = RpcServer(echo_protocol(), Address(LOCALHOST, 0))
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOCALHOST, 0))
        return sock.getsockname()[1]
