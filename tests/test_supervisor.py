import asyncio

import httpx
import pytest

from conveyor.config import EngineConfig
from conveyor.errors import ConfigError, InvariantError
from conveyor.models import Batch, FailurePolicy, ShutdownMode, StageState
from conveyor.supervisor import PipelineSupervisor, Stage


def _source(items, gap=0.0):
    async def produce(out):
        for item in items:
            if gap:
                await asyncio.sleep(gap)
            await out.put(item)

    return produce


def _collector():
    received = []

    async def sink(item):
        received.append(item)

    return received, sink


@pytest.mark.asyncio
async def test_source_batcher_workers_sink_loses_nothing():
    received, sink = _collector()

    async def total(batch):
        assert isinstance(batch, Batch)
        await asyncio.sleep(0.001)
        return sum(batch.items)

    sup = PipelineSupervisor(EngineConfig(capacity=4, worker_count=3))
    sup.add_source("numbers", _source(range(100)))
    sup.add_batcher("chunks", batch_size=7, timeout=0.05)
    sup.add_workers("summer", total)
    sup.add_sink("results", sink)

    metrics = await asyncio.wait_for(sup.run(), 5)

    assert sum(received) == sum(range(100))
    assert metrics.batch_items_total == 100
    assert metrics.items_failed == 0
    assert all(s.state is StageState.STOPPED for s in sup.stages)
    for s in sup.stages:
        if s.input is not None:
            assert s.input.in_flight == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", list(ShutdownMode))
async def test_every_shutdown_mode_completes(mode):
    received, sink = _collector()

    async def square(x):
        return x * x

    sup = PipelineSupervisor(EngineConfig(capacity=2, worker_count=4, shutdown_mode=mode))
    sup.add_source("src", _source(range(30)))
    sup.add_workers("square", square)
    sup.add_sink("sink", sink)

    await asyncio.wait_for(sup.run(), 5)

    assert sorted(received) == [x * x for x in range(30)]
    assert sup.stage("square").mode is mode
    assert [s.state for s in sup.stages] == [StageState.STOPPED] * 3


@pytest.mark.asyncio
async def test_sink_receives_items_in_order():
    received, sink = _collector()
    sup = PipelineSupervisor(EngineConfig(capacity=3))
    sup.add_source("src", _source(range(25), gap=0.001))
    sup.add_sink("sink", sink, mode=ShutdownMode.DRAIN_CANCEL)
    await asyncio.wait_for(sup.run(), 5)
    assert received == list(range(25))


@pytest.mark.asyncio
async def test_fatal_error_aborts_pipeline():
    async def broken(x):
        if x == 5:
            raise InvariantError("impossible state")
        return x

    received, sink = _collector()
    sup = PipelineSupervisor(EngineConfig(capacity=2, worker_count=2))
    sup.add_source("src", _source(range(1000)))
    sup.add_workers("broken", broken)
    sup.add_sink("sink", sink)

    with pytest.raises(InvariantError):
        await asyncio.wait_for(sup.run(), 5)
    assert all(s.task is None or s.task.done() for s in sup.stages)


@pytest.mark.asyncio
async def test_handler_failures_follow_policy():
    async def picky(x):
        if x % 4 == 0:
            raise ValueError("not today")
        return x

    received, sink = _collector()
    sup = PipelineSupervisor(EngineConfig(failure_policy=FailurePolicy.DROP))
    sup.add_source("src", _source(range(20)))
    sup.add_workers("picky", picky, 2)
    sup.add_sink("sink", sink)
    metrics = await asyncio.wait_for(sup.run(), 5)

    assert sorted(received) == [x for x in range(20) if x % 4]
    assert metrics.items_dropped == 5
    assert metrics.errors_by_type["ValueError"] == 5


@pytest.mark.asyncio
async def test_transient_errors_are_retried_when_configured():
    calls = {}

    async def fetch(x):
        calls[x] = calls.get(x, 0) + 1
        if calls[x] == 1:
            raise httpx.ConnectError("refused")
        return x

    received, sink = _collector()
    sup = PipelineSupervisor(EngineConfig(retry_max=2, retry_backoff=0.01))
    sup.add_source("src", _source(range(5)))
    sup.add_workers("fetch", fetch, 2)
    sup.add_sink("sink", sink)
    metrics = await asyncio.wait_for(sup.run(), 5)

    assert sorted(received) == list(range(5))
    assert all(n == 2 for n in calls.values())
    assert metrics.items_failed == 0


@pytest.mark.asyncio
async def test_pause_holds_results_until_resume():
    received, sink = _collector()

    async def ident(x):
        return x

    sup = PipelineSupervisor(EngineConfig(capacity=10))
    sup.add_source("src", _source(range(5)))
    sup.add_workers("ident", ident, 2)
    sup.add_sink("sink", sink)

    sup.pause("ident")
    runner = asyncio.create_task(sup.run())
    await asyncio.sleep(0.05)
    assert received == []
    assert not runner.done()

    sup.resume("ident")
    metrics = await asyncio.wait_for(runner, 5)
    assert sorted(received) == list(range(5))
    assert metrics.stage_percentile("ident_paused", 50) >= 0.04


async def _noop(item):
    return item


async def _nothing(out):
    return None


def test_first_stage_must_be_a_source():
    sup = PipelineSupervisor()
    with pytest.raises(ConfigError):
        sup.add_workers("w", _noop)


def test_source_must_come_first():
    sup = PipelineSupervisor()
    sup.add_source("a", _nothing)
    with pytest.raises(ConfigError):
        sup.add_source("b", _nothing)


def test_nothing_follows_a_sink():
    sup = PipelineSupervisor()
    sup.add_source("src", _nothing)
    sup.add_sink("sink", _noop)
    with pytest.raises(ConfigError):
        sup.add_workers("late", _noop)


def test_duplicate_stage_names_rejected():
    sup = PipelineSupervisor()
    sup.add_source("x", _nothing)
    with pytest.raises(ConfigError):
        sup.add_batcher("x")


def test_invalid_config_rejected_at_construction():
    with pytest.raises(ConfigError):
        PipelineSupervisor(EngineConfig(worker_count=0))


def test_unknown_stage_lookup():
    sup = PipelineSupervisor()
    with pytest.raises(KeyError):
        sup.stage("missing")


@pytest.mark.asyncio
async def test_empty_pipeline_and_second_run_rejected():
    with pytest.raises(ConfigError):
        await PipelineSupervisor().run()

    sup = PipelineSupervisor()
    sup.add_source("src", _nothing)
    sup.add_sink("sink", _noop)
    await asyncio.wait_for(sup.run(), 2)
    with pytest.raises(InvariantError):
        await sup.run()
    with pytest.raises(InvariantError):
        sup.add_workers("late", _noop)


@pytest.mark.asyncio
async def test_requeue_with_sentinel_shutdown_loses_nothing():
    tries = {}

    async def flaky(x):
        tries[x] = tries.get(x, 0) + 1
        if tries[x] == 1:
            await asyncio.sleep(0.05)
            raise RuntimeError("transient")
        return x

    received, sink = _collector()
    sup = PipelineSupervisor(EngineConfig(
        failure_policy=FailurePolicy.REQUEUE,
        shutdown_mode=ShutdownMode.SENTINEL,
        max_attempts=3,
        worker_count=2,
    ))
    sup.add_source("src", _source(["x"]))
    sup.add_workers("flaky", flaky)
    sup.add_sink("sink", sink)

    metrics = await asyncio.wait_for(sup.run(), 5)

    assert received == ["x"]
    assert tries == {"x": 2}
    assert metrics.items_requeued == 1
    assert sup.stage("flaky").input.in_flight == 0


def test_explicit_zero_is_not_replaced_by_defaults():
    sup = PipelineSupervisor()
    sup.add_source("src", _nothing)
    with pytest.raises(ConfigError):
        sup.add_batcher("b", batch_size=0)
    with pytest.raises(ConfigError):
        sup.add_batcher("b", timeout=0)
    with pytest.raises(ConfigError):
        sup.add_workers("w", _noop, 0)


def test_stage_base_class_is_abstract():
    with pytest.raises(TypeError):
        Stage("bare")
