from __future__ import annotations

import inspect
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from rpct.wire import WireType, decode_values, encode, encode_values

if TYPE_CHECKING:
    from rpct.rpc.transport import RpcClient


class RpcVerb(IntEnum):
    HELLO = 0
    BYE = 1
    ECHO = 2


@dataclass(frozen=True, slots=True)
class Handler:
    verb: RpcVerb
    func: Callable[..., Any]
    args: tuple[WireType, ...]
    returns: WireType | None

    def decode_args(self, payload: bytes) -> tuple[Any, ...]:
        return decode_values(self.args, payload)

    async def invoke(self, args: Sequence[Any]) -> bytes:
        result = self.func(*args)
        if inspect.isawaitable(result):
            result = await result
        if self.returns is None:
            return b""
        return encode(self.returns, result)


RemoteCall = Callable[..., Awaitable[Any]]


class RpcProtocol:
    """Verb table shared by the server and client sides of a shard.

    Handlers and client stubs both carry their argument and return wire types,
    so a payload is encoded and decoded the same way on either end.
    """

    def __init__(self) -> None:
        self._handlers: dict[RpcVerb, Handler] = {}

    def register_handler(
        self,
        verb: RpcVerb,
        func: Callable[..., Any],
        args: Sequence[WireType] = (),
        returns: WireType | None = None,
    ) -> None:
        self._handlers[verb] = Handler(verb=verb, func=func, args=tuple(args), returns=returns)

    def handler_for(self, verb_id: int) -> Handler | None:
        try:
            verb = RpcVerb(verb_id)
        except ValueError:
            return None
        return self._handlers.get(verb)

    def make_client(
        self,
        verb: RpcVerb,
        args: Sequence[WireType] = (),
        returns: WireType | None = None,
    ) -> RemoteCall:
        arg_types = tuple(args)
        return_types = () if returns is None else (returns,)

        async def call(client: RpcClient, *values: Any) -> Any:
            payload = encode_values(arg_types, values)
            reply = await client.call(verb, payload)
            decoded = decode_values(return_types, reply)
            return decoded[0] if decoded else None

        return call
