#!/usr/bin/env python3
from __future__ import annotations

from pathlib import Path
import asyncio
import sys

if __name__ == "__main__":
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))

from btc_price_feed.prices.scheduler import Scheduler, SchedulerState


def _run(cycle, stop_after: float, interval: float = 0.05, stop_first: bool = False):
    async def go():
        stop = asyncio.Event()
        if stop_first:
            stop.set()
        else:
            asyncio.get_running_loop().call_later(stop_after, stop.set)
        scheduler = Scheduler(cycle, stop, interval)
        started = await scheduler.run()
        return scheduler, started

    return asyncio.run(go())


def test_first_cycle_immediately_then_on_interval() -> None:
    calls = []

    async def cycle():
        calls.append(asyncio.get_running_loop().time())

    scheduler, started = _run(cycle, stop_after=0.18, interval=0.05)
    assert scheduler.state is SchedulerState.STOPPED
    assert started == len(calls)
    assert 3 <= started <= 5, started


def test_no_cycles_when_already_stopped() -> None:
    calls = []

    async def cycle():
        calls.append(1)

    scheduler, started = _run(cycle, stop_after=0, stop_first=True)
    assert started == 0 and calls == []


def test_no_cycles_after_stop() -> None:
    async def go():
        stop = asyncio.Event()
        calls = []

        async def cycle():
            calls.append(1)

        asyncio.get_running_loop().call_later(0.08, stop.set)
        scheduler = Scheduler(cycle, stop, 0.03)
        await scheduler.run()
        seen = len(calls)
        await asyncio.sleep(0.1)
        return seen, len(calls), scheduler.state

    seen, later, state = asyncio.run(go())
    assert seen == later
    assert state is SchedulerState.STOPPED


def test_cycles_overlap_and_are_drained() -> None:
    active = {"now": 0, "max": 0, "finished": 0}

    async def cycle():
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.12)
        active["now"] -= 1
        active["finished"] += 1

    scheduler, started = _run(cycle, stop_after=0.13, interval=0.04)
    assert active["max"] >= 2
    assert active["finished"] == started
    assert scheduler.in_flight == 0


def test_crashing_cycle_does_not_stop_scheduler() -> None:
    calls = []

    async def cycle():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    scheduler, started = _run(cycle, stop_after=0.12, interval=0.03)
    assert started >= 3


def test_interval_must_be_positive() -> None:
    async def go():
        Scheduler(lambda: asyncio.sleep(0), asyncio.Event(), 0)

    try:
        asyncio.run(go())
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def main() -> None:
    test_first_cycle_immediately_then_on_interval()
    test_no_cycles_when_already_stopped()
    test_no_cycles_after_stop()
    test_cycles_overlap_and_are_drained()
    test_crashing_cycle_does_not_stop_scheduler()
    test_interval_must_be_positive()
    print("scheduler tests OK")


if __name__ == "__main__":
    main()
