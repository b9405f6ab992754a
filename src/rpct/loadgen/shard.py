from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Mapping, MutableMapping

from rpct.config import Config
from rpct.loadgen.jobs import Job, make_job
from rpct.loadgen.scheduling import SchedulingGroup
from rpct.rpc import Address, RpcClient, RpcError, RpcProtocol, RpcServer, RpcVerb
from rpct.wire import FramingError, WireType

logger = logging.getLogger(__name__)


class ShardState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    RUNNING = "running"
    STOPPED = "stopped"


def _echo(value: int) -> int:
    return value


class ShardContext:
    """One execution unit of the harness.

    A shard listens when given ``listen``, connects out when given ``connect``
    and may do both. Only a connecting shard owns jobs; a shard that just
    listens runs until its peer says BYE.
    """

    def __init__(
        self,
        config: Config,
        *,
        listen: Address | None = None,
        connect: Address | None = None,
        shard_id: int = 0,
        shard_count: int = 1,
        groups: Mapping[str, SchedulingGroup] | None = None,
    ) -> None:
        self.config = config
        self.shard_id = shard_id
        self.shard_count = shard_count
        self.state = ShardState.IDLE
        self._listen = listen
        self._connect = connect
        self._groups = dict(groups or {})
        self._protocol = RpcProtocol()
        self._server: RpcServer | None = None
        self._client: RpcClient | None = None
        self._jobs: list[Job] = []
        self._bye = asyncio.Event()
        self._hello_call = self._protocol.make_client(RpcVerb.HELLO)
        self._bye_call = self._protocol.make_client(RpcVerb.BYE)

    @property
    def jobs(self) -> tuple[Job, ...]:
        return tuple(self._jobs)

    @property
    def server(self) -> RpcServer | None:
        return self._server

    @property
    def client(self) -> RpcClient | None:
        return self._client

    async def start(self) -> None:
        self._expect(ShardState.IDLE, "start")
        self._protocol.register_handler(RpcVerb.HELLO, self._on_hello)
        self._protocol.register_handler(RpcVerb.BYE, self._on_bye)
        self._protocol.register_handler(RpcVerb.ECHO, _echo, args=(WireType.UINT64,), returns=WireType.UINT64)
        try:
            if self._listen is not None:
                self._server = RpcServer(self._protocol, self._listen, nodelay=self.config.server.nodelay)
                await self._server.start()
            if self._connect is not None:
                self._client = await RpcClient.connect(self._connect, nodelay=self.config.client.nodelay)
                await self._hello_call(self._client)
                self._jobs = [
                    make_job(job, self._protocol, self._client, self._groups.get(job.name))
                    for job in self.config.jobs
                ]
        except Exception:
            await self._release()
            raise
        self.state = ShardState.STARTED
        logger.info("Shard %d/%d started with %d jobs", self.shard_id, self.shard_count, len(self._jobs))

    async def run(self) -> None:
        self._expect(ShardState.STARTED, "run")
        self.state = ShardState.RUNNING
        if self._client is not None:
            await asyncio.gather(*(job.run() for job in self._jobs))
        elif self._server is not None:
            await self._bye.wait()

    async def stop(self) -> None:
        if self.state is ShardState.STOPPED:
            msg = f"Shard {self.shard_id} is already stopped"
            raise RuntimeError(msg)
        try:
            if self._client is not None:
                try:
                    await self._bye_call(self._client)
                except (RpcError, FramingError) as exc:
                    logger.warning("Shard %d: BYE to %s failed: %s", self.shard_id, self._client.address, exc)
        finally:
            await self._release()
            self.state = ShardState.STOPPED

    def emit_result(self, sink: MutableMapping[str, Any]) -> None:
        for job in self._jobs:
            result: dict[str, Any] = {}
            job.emit_result(result)
            sink[job.name] = result

    async def _release(self) -> None:
        client, self._client = self._client, None
        server, self._server = self._server, None
        if client is not None:
            await client.close()
        if server is not None:
            await server.close()

    def _on_hello(self) -> None:
        logger.info("Shard %d: got HELLO message from client", self.shard_id)

    def _on_bye(self) -> None:
        logger.info("Shard %d: got BYE message from client, exiting", self.shard_id)
        self._bye.set()

    def _expect(self, state: ShardState, action: str) -> None:
        if self.state is not state:
            msg = f"Cannot {action} shard {self.shard_id} in state {self.state.value}"
            raise RuntimeError(msg)
