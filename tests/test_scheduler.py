"""Tests for periodic tasks."""

import asyncio

from ecobin_ingest.scheduler import PeriodicTask


def test_ticks_until_stopped() -> None:
    ticks = []

    async def scenario():
        async def tick() -> None:
            ticks.append(1)

        task = PeriodicTask("tick", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()
        count = len(ticks)
        await asyncio.sleep(0.05)
        return task, count

    task, count = asyncio.run(scenario())
    assert count >= 2
    assert len(ticks) == count
    assert not task.running


def test_stop_is_prompt() -> None:
    """A long interval does not delay stop()."""

    async def scenario():
        async def tick() -> None:
            pass

        task = PeriodicTask("slow", 3600, tick)
        task.start()
        await asyncio.wait_for(task.stop(), timeout=1)

    asyncio.run(scenario())


def test_callback_errors_do_not_kill_the_loop() -> None:
    calls = []

    async def scenario():
        async def boom() -> None:
            calls.append(1)
            raise RuntimeError("flush failed")

        task = PeriodicTask("boom", 0.01, boom)
        task.start()
        await asyncio.sleep(0.1)
        running = task.running
        await task.stop()
        return running

    assert asyncio.run(scenario())
    assert len(calls) >= 2


def test_restart_only_on_change() -> None:
    async def scenario():
        async def tick() -> None:
            pass

        task = PeriodicTask("t", 3600, tick)
        task.start()
        first = task._task
        await task.restart(3600)
        unchanged = task._task is first
        await task.restart(60)
        replaced = task._task is not first
        interval = task.interval
        await task.stop()
        return unchanged, replaced, interval

    unchanged, replaced, interval = asyncio.run(scenario())
    assert unchanged
    assert replaced
    assert interval == 60


def test_restart_when_stopped_only_sets_interval() -> None:
    async def scenario():
        async def tick() -> None:
            pass

        task = PeriodicTask("t", 3600, tick)
        await task.restart(10)
        return task

    task = asyncio.run(scenario())
    assert task.interval == 10
    assert not task.running
