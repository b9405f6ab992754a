from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, MutableMapping

from rpct.config import ConfigError, JobConfig
from rpct.loadgen.scheduling import SchedulingGroup
from rpct.metrics import PROBABILITIES, LatencyAccumulator
from rpct.rpc import RpcClient, RpcError, RpcProtocol, RpcVerb
from rpct.wire import FramingError, WireType

logger = logging.getLogger(__name__)

CallStrategy = Callable[[int], Awaitable[None]]


class Job(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def run(self) -> None:
        ...

    @abstractmethod
    def emit_result(self, sink: MutableMapping[str, Any]) -> None:
        ...


class EchoCall:
    def __init__(self, protocol: RpcProtocol, client: RpcClient) -> None:
        self._echo = protocol.make_client(RpcVerb.ECHO, args=(WireType.UINT64,), returns=WireType.UINT64)
        self._client = client

    async def __call__(self, loop_index: int) -> None:
        await self._echo(self._client, loop_index)


CALL_STRATEGIES: dict[str, Callable[[RpcProtocol, RpcClient], CallStrategy]] = {
    "echo": EchoCall,
}


class RpcJob(Job):
    """Keeps ``parallelism`` calls outstanding until the deadline passes.

    The deadline is fixed when the job is built and only checked between
    calls, so a call in flight at the deadline still completes and is
    measured. A failed call ends its own loop; the others keep going.
    """

    def __init__(
        self,
        config: JobConfig,
        protocol: RpcProtocol,
        client: RpcClient,
        group: SchedulingGroup | None = None,
    ) -> None:
        strategy = CALL_STRATEGIES.get(config.verb)
        if strategy is None:
            msg = f"unknown verb {config.verb!r} in job {config.name!r}"
            raise ConfigError(msg)
        self.config = config
        self.group = group or SchedulingGroup(config.name, config.shares)
        self.total_messages = 0
        self.failed_loops = 0
        self.latencies = LatencyAccumulator(PROBABILITIES)
        self._call = strategy(protocol, client)
        self._stop_at = time.perf_counter() + config.duration
        self._started = False
        self._finished = False

    @property
    def name(self) -> str:
        return self.config.name

    async def run(self) -> None:
        if self._started:
            msg = f"Job {self.name!r} has already run"
            raise RuntimeError(msg)
        self._started = True
        logger.info(
            "Job %s: %d call loops, verb=%s, shares=%d",
            self.name,
            self.config.parallelism,
            self.config.verb,
            self.group.shares,
        )
        await self.group.run(self._run_loops)
        self._finished = True
        logger.info(
            "Job %s finished: %d messages, %d failed loops",
            self.name,
            self.total_messages,
            self.failed_loops,
        )

    async def _run_loops(self) -> None:
        async with asyncio.TaskGroup() as tg:
            for i in range(self.config.parallelism):
                tg.create_task(self._call_loop(i), name=f"{self.name}-{i}")

    async def _call_loop(self, index: int) -> None:
        try:
            while time.perf_counter() <= self._stop_at:
                self.total_messages += 1
                start = time.perf_counter()
                await self._call(index)
                self.latencies.add(int((time.perf_counter() - start) * 1_000_000))
        except (RpcError, FramingError) as exc:
            self.failed_loops += 1
            logger.warning("Job %s: call loop %d stopped: %s", self.name, index, exc)

    def emit_result(self, sink: MutableMapping[str, Any]) -> None:
        if not self._finished:
            msg = f"Job {self.name!r} has not finished running"
            raise RuntimeError(msg)
        latencies: dict[str, int] = {"average": int(self.latencies.mean)}
        for probability, value in self.latencies.quantiles().items():
            latencies[f"p{probability}"] = int(value)
        latencies["max"] = int(self.latencies.max)
        sink["messages"] = self.total_messages
        sink["latencies"] = latencies


JOB_TYPES: dict[str, type[RpcJob]] = {
    "rpc": RpcJob,
}


def make_job(
    config: JobConfig,
    protocol: RpcProtocol,
    client: RpcClient,
    group: SchedulingGroup | None = None,
) -> Job:
    job_type = JOB_TYPES.get(config.type)
    if job_type is None:
        msg = f"unknown job type {config.type!r} in job {config.name!r}"
        raise ConfigError(msg)
    return job_type(config, protocol, client, group)
