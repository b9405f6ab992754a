from __future__ import annotations

from rpct.rpc.protocol import Handler, RemoteCall, RpcProtocol, RpcVerb
from rpct.rpc.transport import (
    Address,
    ConnectionClosedError,
    RemoteCallError,
    RpcClient,
    RpcError,
    RpcServer,
)

__all__ = [
    "Address",
    "ConnectionClosedError",
    "Handler",
    "RemoteCall",
    "RemoteCallError",
    "RpcClient",
    "RpcError",
    "RpcProtocol",
    "RpcServer",
    "RpcVerb",
]
