from __future__ import annotations

import asyncio

import pytest

from agent_shells.deferred import DeferredQueue

from conftest import FakeClock


@pytest.mark.asyncio
async def test_entries_run_in_due_order_once_time_passes():
    clock = FakeClock()
    queue = DeferredQueue(clock)
    ran = []
    queue.schedule(1.0, lambda: ran.append("late"))
    queue.schedule(0.5, lambda: ran.append("early"))

    assert await queue.run_due() == 0
    clock.advance(0.6)
    assert await queue.run_due() == 1
    clock.advance(0.5)
    await queue.run_due()

    assert ran == ["early", "late"]
    assert queue.next_due() is None


@pytest.mark.asyncio
async def test_async_actions_are_awaited():
    clock = FakeClock()
    queue = DeferredQueue(clock)
    ran = []

    async def action():
        await asyncio.sleep(0)
        ran.append("done")

    queue.schedule(0, action)
    await queue.run_due()
    assert ran == ["done"]


@pytest.mark.asyncio
async def test_cancel_session_only_touches_that_session():
    clock = FakeClock()
    queue = DeferredQueue(clock)
    ran = []
    queue.schedule(0.1, lambda: ran.append("a-startup"), session_id="a", label="startup")
    queue.schedule(0.1, lambda: ran.append("a-ticket"), session_id="a", label="ticket")
    queue.schedule(0.1, lambda: ran.append("b-startup"), session_id="b", label="startup")

    assert queue.cancel_session("a", label="ticket") == 1
    assert [e.label for e in queue.pending(session_id="a")] == ["startup"]
    assert queue.cancel_session("a") == 1

    clock.advance(1)
    await queue.run_due()
    assert ran == ["b-startup"]


@pytest.mark.asyncio
async def test_periodic_entry_reschedules_until_cancelled():
    clock = FakeClock()
    queue = DeferredQueue(clock)
    ticks = []
    entry = queue.every(1.0, lambda: ticks.append(clock.now()))

    for _ in range(3):
        clock.advance(1.0)
        await queue.run_due()
    assert len(ticks) == 3

    queue.cancel(entry)
    clock.advance(5.0)
    await queue.run_due()
    assert len(ticks) == 3


@pytest.mark.asyncio
async def test_failing_action_is_logged_and_does_not_stop_the_queue(caplog):
    clock = FakeClock()
    queue = DeferredQueue(clock)
    ran = []

    def boom():
        raise RuntimeError("boom")

    queue.schedule(0, boom, session_id="s", label="startup")
    queue.schedule(0, lambda: ran.append("after"))
    await queue.run_due()

    assert ran == ["after"]
    assert "Deferred action startup failed" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop_drive_the_real_loop():
    queue = DeferredQueue()
    fired = asyncio.Event()
    queue.schedule(0, fired.set)

    queue.start(tick=0.01)
    await asyncio.wait_for(fired.wait(), timeout=2)
    await queue.stop()
    await queue.stop()


def test_periodic_entries_need_a_positive_period():
    queue = DeferredQueue(FakeClock())

    with pytest.raises(ValueError):
        queue.every(0, lambda: None, label="decay")
    with pytest.raises(ValueError):
        queue.every(-1, lambda: None)
    assert queue.pending() == []
