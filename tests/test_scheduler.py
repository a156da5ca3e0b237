import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from starkagent.agent.scheduler import BackgroundActionScheduler
from starkagent.services.redis import InMemoryKeyValueStore


async def wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def run_turn() -> AsyncMock:
    return AsyncMock(side_effect=lambda session_id, text: f"did: {text}")


@pytest.fixture
def deliver() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def scheduler(run_turn, deliver, store):
    sched = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    yield sched
    await sched.shutdown()


@pytest.mark.asyncio
async def test_start_fires_and_delivers(scheduler, run_turn, deliver) -> None:
    assert await scheduler.start("s1", "get news", 0.01) == "Started."
    await wait_for(lambda: deliver.await_count >= 2)
    run_turn.assert_any_await("s1", "get news")
    deliver.assert_any_await("s1", "did: get news")


@pytest.mark.asyncio
async def test_start_twice_keeps_one_timer(scheduler, run_turn) -> None:
    await scheduler.start("s1", "first", 10)
    first_task = scheduler.active("s1").task
    await scheduler.start("s1", "second", 0.01)

    assert scheduler.active_sessions() == ["s1"]
    assert scheduler.active("s1").description == "second"
    await asyncio.gather(first_task, return_exceptions=True)
    assert first_task.cancelled()

    await wait_for(lambda: run_turn.await_count >= 1)
    assert all(c.args[1] == "second" for c in run_turn.await_args_list)


@pytest.mark.asyncio
async def test_stop_without_timer_is_noop(scheduler) -> None:
    assert await scheduler.stop("nobody") == "Stopped."
    assert await scheduler.stop("nobody") == "Stopped."
    assert len(scheduler) == 0


@pytest.mark.asyncio
async def test_stop_prevents_future_firings(scheduler, run_turn) -> None:
    await scheduler.start("s1", "tick", 0.01)
    await wait_for(lambda: run_turn.await_count >= 1)
    await scheduler.stop("s1")
    count = run_turn.await_count
    await asyncio.sleep(0.05)
    assert run_turn.await_count == count
    assert scheduler.active("s1") is None


@pytest.mark.asyncio
async def test_sessions_are_independent(scheduler) -> None:
    await scheduler.start("a", "x", 10)
    await scheduler.start("b", "y", 10)
    await scheduler.stop("a")
    assert scheduler.active_sessions() == ["b"]


@pytest.mark.asyncio
async def test_failing_firing_keeps_timer_alive(run_turn, deliver, store) -> None:
    run_turn.side_effect = [RuntimeError("model down"), "ok"]
    sched = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    try:
        await sched.start("s1", "tick", 0.01)
        await wait_for(lambda: deliver.await_count >= 1)
        deliver.assert_awaited_with("s1", "ok")
    finally:
        await sched.shutdown()


@pytest.mark.asyncio
async def test_stop_from_inside_own_turn(store, deliver) -> None:
    holder = {}

    async def run_turn(session_id: str, text: str) -> str:
        # the model asked to stop the loop during a background turn
        return await holder["sched"].stop(session_id)

    sched = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    holder["sched"] = sched
    await sched.start("s1", "stop yourself", 0.01)
    await wait_for(lambda: deliver.await_count >= 1)
    deliver.assert_awaited_once_with("s1", "Stopped.")
    assert sched.active("s1") is None


@pytest.mark.asyncio
async def test_actions_are_persisted_and_restored(run_turn, deliver, store) -> None:
    sched = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    await sched.start("s1", "news", 30)
    await sched.start("s2", "balance", 60)
    await sched.stop("s2")
    saved = json.loads(await store.get("s1:backgroundAction"))
    assert saved == {"session_id": "s1", "description": "news", "interval_seconds": 30.0}
    assert await store.get("s2:backgroundAction") is None
    await sched.shutdown()
    assert len(sched) == 0

    restarted = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    try:
        assert await restarted.restore() == 1
        assert restarted.active("s1").description == "news"
    finally:
        await restarted.shutdown()


@pytest.mark.asyncio
async def test_restore_skips_corrupt_entries(run_turn, deliver, store) -> None:
    await store.set("s9:backgroundAction", "{broken")
    await store.set(
        "s1:backgroundAction",
        json.dumps({"session_id": "s1", "description": "x", "interval_seconds": 0}),
    )
    await store.set(
        "s2:backgroundAction",
        json.dumps({"session_id": "s2", "description": "ping", "interval_seconds": 5}),
    )
    sched = BackgroundActionScheduler(run_turn=run_turn, deliver=deliver, store=store)
    try:
        assert await sched.restore() == 1
        assert sched.active("s1") is None
        assert sched.active("s2").description == "ping"
    finally:
        await sched.shutdown()


@pytest.mark.asyncio
async def test_rejects_non_positive_interval(scheduler) -> None:
    with pytest.raises(ValueError):
        await scheduler.start("s1", "x", 0)
