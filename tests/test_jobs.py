from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Callable

import pytest
import pytest_asyncio

from rpct.config import ConfigError, JobConfig
from rpct.loadgen.jobs import CALL_STRATEGIES, RpcJob, make_job
from rpct.loadgen.scheduling import SchedulingGroup, current_scheduling_group
from rpct.rpc import Address, RpcClient, RpcProtocol, RpcServer, RpcVerb
from rpct.wire import WireType

LOCALHOST = "127.0.0.1"


def echo_job(name: str = "e1", parallelism: int = 4, duration: float = 0.3, shares: int = 100) -> JobConfig:
    return JobConfig(name=name, type="rpc", verb="echo", parallelism=parallelism, shares=shares, duration=duration)


@pytest_asyncio.fixture
async def echo_client(echo_server: RpcServer) -> AsyncIterator[RpcClient]:
    client = await RpcClient.connect(Address(LOCALHOST, echo_server.port))
    yield client
    await client.close()


async def serve(handler: Callable[..., object]) -> tuple[RpcServer, RpcClient]:
    protocol = RpcProtocol()
    protocol.register_handler(RpcVerb.ECHO, handler, args=(WireType.UINT64,), returns=WireType.UINT64)
    server = RpcServer(protocol, Address(LOCALHOST, 0))
    await server.start()
    client = await RpcClient.connect(Address(LOCALHOST, server.port))
    return server, client


def test_unknown_job_type_is_a_config_error() -> None:
    config = JobConfig(name="d", type="disk")
    with pytest.raises(ConfigError, match="unknown job type"):
        make_job(config, RpcProtocol(), None)  # type: ignore[arg-type]


def test_unknown_verb_is_a_config_error() -> None:
    config = JobConfig(name="x", type="rpc", verb="ping", parallelism=1)
    with pytest.raises(ConfigError, match="unknown verb"):
        make_job(config, RpcProtocol(), None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_echo_job_measures_calls(echo_client: RpcClient) -> None:
    job = make_job(echo_job(duration=0.3), RpcProtocol(), echo_client)
    assert job.name == "e1"
    started = time.perf_counter()
    await job.run()
    assert time.perf_counter() - started >= 0.3

    result: dict[str, object] = {}
    job.emit_result(result)
    assert result["messages"] > 0
    latencies = result["latencies"]
    assert list(latencies) == ["average", "p0.5", "p0.95", "p0.99", "p0.999", "max"]
    assert all(isinstance(value, int) for value in latencies.values())
    assert latencies["max"] >= latencies["average"] >= 0
    assert latencies["p0.5"] <= latencies["p0.95"] <= latencies["p0.99"] <= latencies["p0.999"] <= latencies["max"]


@pytest.mark.asyncio
async def test_every_loop_has_a_call_in_flight() -> None:
    active = 0
    peak = 0

    async def slow_echo(value: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return value

    server, client = await serve(slow_echo)
    try:
        job = make_job(echo_job(parallelism=6, duration=0.2), RpcProtocol(), client)
        await job.run()
    finally:
        await client.close()
        await server.close()
    assert peak == 6
    assert job.total_messages >= 6


@pytest.mark.asyncio
async def test_in_flight_call_finishes_after_deadline() -> None:
    async def slow_echo(value: int) -> int:
        await asyncio.sleep(0.3)
        return value

    server, client = await serve(slow_echo)
    try:
        job = make_job(echo_job(parallelism=1, duration=0.1), RpcProtocol(), client)
        await job.run()
    finally:
        await client.close()
        await server.close()
    assert job.total_messages == 1
    assert job.latencies.count == 1
    assert job.latencies.max >= 300_000


@pytest.mark.asyncio
async def test_failed_call_ends_only_its_loop() -> None:
    def picky_echo(value: int) -> int:
        if value == 0:
            raise RuntimeError("loop zero is unlucky")
        return value

    server, client = await serve(picky_echo)
    try:
        job = make_job(echo_job(parallelism=3, duration=0.2), RpcProtocol(), client)
        await job.run()
    finally:
        await client.close()
        await server.close()
    assert isinstance(job, RpcJob)
    assert job.failed_loops == 1
    assert job.latencies.count == job.total_messages - 1
    assert job.latencies.count > 2


@pytest.mark.asyncio
async def test_job_runs_only_once(echo_client: RpcClient) -> None:
    job = make_job(echo_job(parallelism=1, duration=0.0), RpcProtocol(), echo_client)
    with pytest.raises(RuntimeError):
        job.emit_result({})
    await job.run()
    with pytest.raises(RuntimeError):
        await job.run()


@pytest.mark.asyncio
async def test_zero_duration_job_reports_zeros(echo_client: RpcClient) -> None:
    config = echo_job(parallelism=2, duration=-1.0)
    job = make_job(config, RpcProtocol(), echo_client)
    await job.run()
    result: dict[str, object] = {}
    job.emit_result(result)
    assert result == {
        "messages": 0,
        "latencies": {"average": 0, "p0.5": 0, "p0.95": 0, "p0.99": 0, "p0.999": 0, "max": 0},
    }


@pytest.mark.asyncio
async def test_call_loops_run_in_the_job_group(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: set[SchedulingGroup] = set()

    class GroupRecordingCall:
        def __init__(self, protocol: RpcProtocol, client: RpcClient) -> None:
            pass

        async def __call__(self, loop_index: int) -> None:
            seen.add(current_scheduling_group())
            await asyncio.sleep(0.01)

    monkeypatch.setitem(CALL_STRATEGIES, "record", GroupRecordingCall)
    group = SchedulingGroup("recording-group", 250)
    config = JobConfig(name="p", type="rpc", verb="record", parallelism=2, duration=0.05)
    job = make_job(config, RpcProtocol(), None, group)  # type: ignore[arg-type]
    await job.run()
    assert seen == {group}
    assert current_scheduling_group().name == "main"


@pytest.mark.asyncio
async def test_jobs_finish_independently(echo_client: RpcClient) -> None:
    short = make_job(echo_job(name="short", parallelism=2, duration=0.2, shares=100), RpcProtocol(), echo_client)
    long = make_job(echo_job(name="long", parallelism=2, duration=0.8, shares=400), RpcProtocol(), echo_client)
    long_task = asyncio.create_task(long.run())
    await asyncio.wait_for(short.run(), timeout=5)
    assert not long_task.done()
    await asyncio.wait_for(long_task, timeout=5)
    assert short.total_messages > 0
    assert long.total_messages > 0


@pytest.mark.asyncio
async def test_unexpected_error_cancels_sibling_loops(monkeypatch: pytest.MonkeyPatch) -> None:
    cancelled: list[int] = []

    class BrokenCall:
        def __init__(self, protocol: RpcProtocol, client: RpcClient) -> None:
            pass

        async def __call__(self, loop_index: int) -> None:
            if loop_index == 0:
                await asyncio.sleep(0.01)
                raise RuntimeError("call strategy bug")
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(loop_index)
                raise

    monkeypatch.setitem(CALL_STRATEGIES, "broken", BrokenCall)
    config = JobConfig(name="b", type="rpc", verb="broken", parallelism=3, duration=5.0)
    job = make_job(config, RpcProtocol(), None)  # type: ignore[arg-type]
    with pytest.raises(ExceptionGroup) as excinfo:
        await asyncio.wait_for(job.run(), timeout=5)
    assert [str(exc) for exc in excinfo.value.exceptions] == ["call strategy bug"]
    assert sorted(cancelled) == [1, 2]
