from __future__ import annotations

import asyncio
import itertools
import logging
import socket
import struct
from dataclasses import dataclass, replace

from rpct.rpc.protocol import Handler, RpcProtocol
from rpct.wire import FramingError, WireType, decode, encode

logger = logging.getLogger(__name__)

# verb, message id, payload length
REQUEST_HEADER = struct.Struct("=iqI")
# message id (negated on failure), payload length
RESPONSE_HEADER = struct.Struct("=qI")


class RpcError(Exception):
    pass


class RemoteCallError(RpcError):
    pass


class ConnectionClosedError(RpcError):
    pass


@dataclass(frozen=True, slots=True)
class Address:
    host: str
    port: int

    @classmethod
    def parse(cls, value: str, default_port: int) -> Address:
        if value.startswith("["):
            host, _, rest = value[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else ""
        elif value.count(":") == 1:
            host, _, port = value.partition(":")
        else:
            host, port = value, ""
        if not port:
            return cls(host, default_port)
        if not port.isdigit():
            msg = f"Invalid port in address {value!r}"
            raise ValueError(msg)
        return cls(host, int(port))

    def offset(self, delta: int) -> Address:
        return replace(self, port=self.port + delta)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def _set_nodelay(writer: asyncio.StreamWriter, enabled: bool) -> None:
    sock = writer.get_extra_info("socket")
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(enabled))


def _error_frame(msg_id: int, message: str) -> bytes:
    payload = encode(WireType.STRING, message)
    return RESPONSE_HEADER.pack(-msg_id, len(payload)) + payload


class RpcServer:
    def __init__(self, protocol: RpcProtocol, address: Address, *, nodelay: bool = True) -> None:
        self._protocol = protocol
        self._address = address
        self._nodelay = nodelay
        self._server: asyncio.Server | None = None
        self._connections: dict[asyncio.Task[None], asyncio.StreamWriter] = {}

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self._address.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self._address.host,
            self._address.port,
        )
        logger.info("Listening on %s:%d", self._address.host, self.port)

    async def close(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        # Closing the transport feeds EOF to each handler, which then exits on its own.
        for writer in list(self._connections.values()):
            writer.close()
        await asyncio.gather(*self._connections, return_exceptions=True)
        await server.wait_closed()
        logger.info("Server on %s stopped", self._address)

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections[task] = writer
        _set_nodelay(writer, self._nodelay)
        peer = writer.get_extra_info("peername")
        logger.debug("Accepted connection from %s", peer)
        write_lock = asyncio.Lock()
        inflight: set[asyncio.Task[None]] = set()
        try:
            while True:
                header = await reader.readexactly(REQUEST_HEADER.size)
                verb_id, msg_id, size = REQUEST_HEADER.unpack(header)
                payload = await reader.readexactly(size)
                handler = self._protocol.handler_for(verb_id)
                if handler is None:
                    async with write_lock:
                        writer.write(_error_frame(msg_id, f"unknown verb {verb_id}"))
                        await writer.drain()
                    continue
                args = handler.decode_args(payload)
                request = asyncio.create_task(self._serve(handler, msg_id, args, writer, write_lock))
                inflight.add(request)
                request.add_done_callback(inflight.discard)
        except asyncio.IncompleteReadError:
            logger.debug("Connection from %s closed", peer)
        except FramingError as exc:
            logger.warning("Dropping connection from %s: %s", peer, exc)
        except ConnectionError as exc:
            logger.warning("Connection from %s lost: %s", peer, exc)
        finally:
            for request in inflight:
                request.cancel()
            writer.close()
            if task is not None:
                self._connections.pop(task, None)

    async def _serve(
        self,
        handler: Handler,
        msg_id: int,
        args: tuple[object, ...],
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        try:
            reply = await handler.invoke(args)
        except Exception as exc:
            logger.warning("Handler for %s failed: %s", handler.verb.name, exc)
            frame = _error_frame(msg_id, f"{type(exc).__name__}: {exc}")
        else:
            frame = RESPONSE_HEADER.pack(msg_id, len(reply)) + reply
        try:
            async with write_lock:
                writer.write(frame)
                await writer.drain()
        except ConnectionError as exc:
            logger.debug("Cannot reply to message %d: %s", msg_id, exc)


class RpcClient:
    """Multiplexing client: many calls may be outstanding on one connection.

    Writes are serialized by a lock and replies are matched to callers by
    message id, so concurrent tasks can share a single client.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, address: Address) -> None:
        self.address = address
        self._reader = reader
        self._writer = writer
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[bytes]] = {}
        self._write_lock = asyncio.Lock()
        self._failure: str | None = None
        self._reader_task = asyncio.create_task(self._read_replies(), name=f"rpc-client-{address}")

    @classmethod
    async def connect(cls, address: Address, *, nodelay: bool = True) -> RpcClient:
        reader, writer = await asyncio.open_connection(address.host, address.port)
        _set_nodelay(writer, nodelay)
        logger.info("Connected to %s", address)
        return cls(reader, writer, address)

    @property
    def closed(self) -> bool:
        return self._failure is not None

    async def call(self, verb: int, payload: bytes = b"") -> bytes:
        if self._failure is not None:
            raise ConnectionClosedError(self._failure)
        msg_id = next(self._ids)
        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            async with self._write_lock:
                self._writer.write(REQUEST_HEADER.pack(int(verb), msg_id, len(payload)) + payload)
                await self._writer.drain()
            return await future
        except ConnectionError as exc:
            msg = f"Connection to {self.address} lost: {exc}"
            raise ConnectionClosedError(msg) from exc
        finally:
            self._pending.pop(msg_id, None)

    async def close(self) -> None:
        if self._reader_task.done() and self._writer.is_closing():
            return
        self._reader_task.cancel()
        await asyncio.gather(self._reader_task, return_exceptions=True)
        self._fail_pending("client closed")
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except ConnectionError as exc:
            logger.debug("Error while closing connection to %s: %s", self.address, exc)
        logger.info("Disconnected from %s", self.address)

    async def _read_replies(self) -> None:
        try:
            while True:
                header = await self._reader.readexactly(RESPONSE_HEADER.size)
                msg_id, size = RESPONSE_HEADER.unpack(header)
                payload = await self._reader.readexactly(size)
                self._deliver(msg_id, payload)
        except asyncio.IncompleteReadError:
            self._fail_pending("connection closed by peer")
        except FramingError as exc:
            logger.warning("Malformed reply from %s: %s", self.address, exc)
            self._fail_pending(f"framing error: {exc}")
            self._writer.close()
        except ConnectionError as exc:
            self._fail_pending(f"connection lost: {exc}")

    def _deliver(self, msg_id: int, payload: bytes) -> None:
        future = self._pending.get(abs(msg_id))
        if msg_id < 0:
            message = decode(WireType.STRING, payload).decode("utf-8", errors="replace")
            if future is not None and not future.done():
                future.set_exception(RemoteCallError(message))
            return
        if future is None or future.done():
            logger.debug("Dropping reply for unknown message %d", msg_id)
            return
        future.set_result(payload)

    def _fail_pending(self, reason: str) -> None:
        if self._failure is None:
            self._failure = reason
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(reason))
