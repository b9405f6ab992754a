from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ProcessPoolExecutor
from typing import Any

from rpct.config import Config
from rpct.loadgen.scheduling import create_scheduling_groups
from rpct.loadgen.shard import ShardContext
from rpct.metrics import merge_shard_results
from rpct.rpc import Address

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_PORT = 9123


def run_harness(
    config: Config,
    *,
    shards: int | None = None,
    listen_host: str | None = None,
    connect_host: str | None = None,
    port: int = DEFAULT_PORT,
    duration: float = 30.0,
) -> list[dict[str, Any]]:
    """Run one shard per worker process and merge their results.

    Shard ``k`` listens on and connects to ``port + k``, so each listening
    shard is paired with exactly one connecting shard and sees one BYE.
    """
    shard_count = shards or os.cpu_count() or 1
    config = config.with_duration(duration)
    listen = Address.parse(listen_host, port) if listen_host else None
    connect = Address.parse(connect_host, port) if connect_host else None
    logger.info(
        "Running %d shards (listen=%s, connect=%s, duration=%ss)",
        shard_count,
        listen,
        connect,
        duration,
    )
    with ProcessPoolExecutor(
        max_workers=shard_count,
        initializer=_init_worker,
        initargs=(logging.getLogger().getEffectiveLevel(),),
    ) as pool:
        futures = [
            pool.submit(
                run_shard,
                config,
                shard_id,
                shard_count,
                listen.offset(shard_id) if listen else None,
                connect.offset(shard_id) if connect else None,
            )
            for shard_id in range(shard_count)
        ]
        results = [future.result() for future in futures]
    return merge_shard_results(results)


def run_shard(
    config: Config,
    shard_id: int,
    shard_count: int,
    listen: Address | None,
    connect: Address | None,
) -> dict[str, Any]:
    return asyncio.run(run_shard_async(config, shard_id, shard_count, listen, connect))


async def run_shard_async(
    config: Config,
    shard_id: int,
    shard_count: int,
    listen: Address | None,
    connect: Address | None,
) -> dict[str, Any]:
    context = ShardContext(
        config,
        listen=listen,
        connect=connect,
        shard_id=shard_id,
        shard_count=shard_count,
        groups=create_scheduling_groups(config.jobs),
    )
    await context.start()
    result: dict[str, Any] = {"shard": shard_id}
    try:
        await context.run()
        context.emit_result(result)
    finally:
        await context.stop()
    return result


def _init_worker(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
