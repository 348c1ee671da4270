import asyncio
import heapq
import itertools

import pytest


class SimClock:
    """Simulated monotonic clock with a matching ``sleep`` coroutine.

    Sleepers park on futures; :meth:`run` lets the event loop settle, then
    jumps time to the earliest wake-up and releases every sleeper due by then.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._sleepers = []
        self._seq = itertools.count()

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + max(delay, 0.0), next(self._seq), fut))
        await fut

    async def _settle(self) -> None:
        for _ in range(50):
            await asyncio.sleep(0)

    async def run(self, tasks) -> None:
        while True:
            await self._settle()
            if all(t.done() for t in tasks):
                for t in tasks:
                    t.result()
                return
            while self._sleepers and self._sleepers[0][2].done():
                heapq.heappop(self._sleepers)
            if not self._sleepers:
                raise RuntimeError("simulated clock stalled: tasks blocked with no sleepers")
            wake = self._sleepers[0][0]
            self.now = wake
            while self._sleepers and self._sleepers[0][0] <= wake:
                _, _, fut = heapq.heappop(self._sleepers)
                if not fut.done():
                    fut.set_result(None)


@pytest.fixture
def sim_clock():
    return SimClock()


def window_respected(times, limit, interval):
    """True when no half-open window of ``interval`` holds more than ``limit`` times."""
    times = sorted(times)
    return all(
        times[i + limit] - times[i] >= interval - 1e-9
        for i in range(len(times) - limit)
    )


@pytest.fixture
def window_check():
    return window_respected
