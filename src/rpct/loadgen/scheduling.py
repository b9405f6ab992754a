from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

from rpct.config import JobConfig

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class SchedulingGroup:
    """Named CPU weight that a unit of work asks to run under.

    asyncio has no weighted fair-share scheduler, so the group only tags the
    work: tasks spawned inside ``run`` inherit it through the context.
    """

    name: str
    shares: int = 100

    async def run(self, work: Callable[[], Awaitable[T]]) -> T:
        token = _current_group.set(self)
        try:
            return await work()
        finally:
            _current_group.reset(token)


DEFAULT_GROUP = SchedulingGroup("main", 1000)

_current_group: ContextVar[SchedulingGroup] = ContextVar("rpct_scheduling_group", default=DEFAULT_GROUP)


def current_scheduling_group() -> SchedulingGroup:
    return _current_group.get()


def create_scheduling_groups(jobs: Iterable[JobConfig]) -> dict[str, SchedulingGroup]:
    return {job.name: SchedulingGroup(job.name, job.shares) for job in jobs}
