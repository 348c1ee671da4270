import asyncio
import random

import pytest

from conveyor.config import EngineConfig
from conveyor.errors import ConfigError
from conveyor.ratelimit import (
    RateLimiter,
    ReservingRateLimiter,
    SlidingWindowRateLimiter,
    WindowRateLimiter,
    build_rate_limiter,
)
from conveyor.telemetry.metrics import Metrics

VARIANTS = [SlidingWindowRateLimiter, ReservingRateLimiter]


@pytest.mark.parametrize("cls", VARIANTS)
@pytest.mark.parametrize("limit, interval", [(0, 1.0), (-1, 1.0), (5, 0), (5, -2.0)])
def test_invalid_parameters(cls, limit, interval):
    with pytest.raises(ConfigError):
        cls(limit, interval)


def test_default_alias_is_sliding_window():
    assert RateLimiter is SlidingWindowRateLimiter


@pytest.mark.asyncio
@pytest.mark.parametrize("cls", VARIANTS)
async def test_admits_up_to_limit_without_waiting(cls, sim_clock):
    limiter = cls(3, 10.0, clock=sim_clock, sleep=sim_clock.sleep)
    for _ in range(3):
        await limiter.acquire()
    assert sim_clock.now == 0.0
    assert limiter.stats.admitted == 3
    assert limiter.stats.throttled == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("cls", VARIANTS)
async def test_twenty_submissions_ten_per_minute(cls, sim_clock, window_check):
    limiter = cls(10, 60.0, clock=sim_clock, sleep=sim_clock.sleep)
    admitted = []

    async def submit():
        await limiter.acquire()
        admitted.append(sim_clock.now)

    tasks = [asyncio.create_task(submit()) for _ in range(20)]
    await sim_clock.run(tasks)

    assert sorted(admitted) == [0.0] * 10 + [60.0] * 10
    assert window_check(admitted, 10, 60.0)


@pytest.mark.asyncio
@pytest.mark.parametrize("cls", VARIANTS)
@pytest.mark.parametrize("seed", range(8))
async def test_window_never_exceeds_limit(cls, seed, sim_clock, window_check):
    rng = random.Random(seed)
    limit = rng.randint(1, 5)
    interval = rng.choice([0.5, 1.0, 3.0])
    limiter = cls(limit, interval, clock=sim_clock, sleep=sim_clock.sleep)
    admitted = []

    async def caller(offset):
        await sim_clock.sleep(offset)
        for _ in range(rng.randint(1, 4)):
            await limiter.acquire()
            admitted.append(sim_clock.now)
            await sim_clock.sleep(rng.choice([0.0, 0.1, 0.7]))

    offsets = [rng.uniform(0, 5) for _ in range(rng.randint(5, 15))]
    tasks = [asyncio.create_task(caller(o)) for o in offsets]
    await sim_clock.run(tasks)

    assert admitted
    assert window_check(admitted, limit, interval)


@pytest.mark.asyncio
async def test_reserving_limiter_admits_in_arrival_order(sim_clock):
    limiter = ReservingRateLimiter(1, 1.0, clock=sim_clock, sleep=sim_clock.sleep)
    order = []

    async def caller(i):
        await limiter.acquire()
        order.append((i, sim_clock.now))

    tasks = []
    for i in range(5):
        tasks.append(asyncio.create_task(caller(i)))
        await asyncio.sleep(0)
    await sim_clock.run(tasks)

    assert [i for i, _ in order] == [0, 1, 2, 3, 4]
    assert [t for _, t in order] == [0.0, 1.0, 2.0, 3.0, 4.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("cls", VARIANTS)
async def test_cancelled_waiter_releases_lock(cls):
    limiter = cls(1, 0.2)
    await limiter.acquire()

    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0.01)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert not limiter._lock.locked()
    await asyncio.wait_for(limiter.acquire(), 1.0)


@pytest.mark.asyncio
async def test_async_context_manager_and_metrics():
    metrics = Metrics()
    limiter = SlidingWindowRateLimiter(1, 0.05, metrics=metrics, name="api")
    async with limiter:
        pass
    async with limiter:
        pass
    assert limiter.stats.admitted == 2
    assert limiter.stats.throttled >= 1
    assert metrics.rate_limit_waits >= 1
    assert "api_wait" in metrics.stage_durations


def test_build_rate_limiter_selects_variant():
    sliding = build_rate_limiter(EngineConfig(rate_limit=5, rate_window=2.0))
    reserving = build_rate_limiter(EngineConfig(rate_strategy="reserving"))
    assert isinstance(sliding, SlidingWindowRateLimiter)
    assert (sliding.limit, sliding.interval) == (5, 2.0)
    assert isinstance(reserving, ReservingRateLimiter)


def test_window_base_class_is_abstract():
    with pytest.raises(TypeError):
        WindowRateLimiter(1, 1.0)
