from __future__ import annotations

import asyncio
import sys
from enum import Enum
from typing import Awaitable, Callable, Set


DEFAULT_INTERVAL_SECONDS = 300.0


class SchedulerState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class Scheduler:
    """Runs `cycle` once at start and then on a fixed interval until `stop` is set.

    Cycles are not serialized: a tick launches a new cycle even while an earlier
    one is still in flight. `stop` is the same event handed to every fetch, so
    setting it both ends the dispatch loop and shortens in-flight requests.
    STOPPED is terminal.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[object]],
        stop: asyncio.Event,
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.cycle = cycle
        self.stop = stop
        self.interval = interval
        self.state = SchedulerState.STOPPED
        self.cycles_started = 0
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _launch(self) -> None:
        self.cycles_started += 1
        task = asyncio.ensure_future(self.cycle())
        self._in_flight.add(task)
        task.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"[ERROR] cycle crashed: {type(exc).__name__}: {exc}", file=sys.stderr)

    async def run(self) -> int:
        """Dispatch cycles until stopped; returns the number of cycles started."""
        if self.stop.is_set():
            return 0
        loop = asyncio.get_running_loop()
        self.state = SchedulerState.RUNNING
        self._launch()
        deadline = loop.time() + self.interval
        while self.state is SchedulerState.RUNNING:
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=max(0.0, deadline - loop.time()))
            except asyncio.TimeoutError:
                self._launch()
                # Ticks missed while the loop was busy are dropped, not replayed
                deadline += self.interval
                while deadline <= loop.time():
                    deadline += self.interval
            else:
                self.state = SchedulerState.STOPPED
        await self.drain()
        return self.cycles_started

    async def drain(self) -> None:
        """Wait for already-started cycles to finish or abandon themselves."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
