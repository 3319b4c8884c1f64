"""Deferred actions and time.

Every delayed write and every timer in the server (startup command, ticket
prompt, output decay, permission detection, snapshots, tmux reattach) is an
entry in one ``DeferredQueue``. Entries are cancellable individually or per
session, and the queue is driven by a ``Clock`` so tests can step time by
hand instead of sleeping.
"""
from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger("agent_shells.deferred")


class Clock:
    def now(self) -> float:
        return time.time()


@dataclass(eq=False)
class DeferredEntry:
    due: float
    seq: int
    action: Callable[[], Any]
    session_id: Optional[str] = None
    label: Optional[str] = None
    period: Optional[float] = None
    cancelled: bool = False

    def __lt__(self, other: "DeferredEntry") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class DeferredQueue:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._heap: List[DeferredEntry] = []
        self._seq = itertools.count()
        self._running: Optional[asyncio.Task] = None

    def schedule(
        self,
        delay: float,
        action: Callable[[], Any],
        *,
        session_id: Optional[str] = None,
        label: Optional[str] = None,
        period: Optional[float] = None,
    ) -> DeferredEntry:
        entry = DeferredEntry(
            due=self.clock.now() + max(0.0, float(delay)),
            seq=next(self._seq),
            action=action,
            session_id=session_id,
            label=label,
            period=period,
        )
        heapq.heappush(self._heap, entry)
        return entry

    def every(
        self,
        period: float,
        action: Callable[[], Any],
        *,
        session_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> DeferredEntry:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period!r}")
        return self.schedule(period, action, session_id=session_id, label=label, period=period)

    def cancel(self, entry: Optional[DeferredEntry]) -> None:
        if entry is not None:
            entry.cancelled = True

    def cancel_session(self, session_id: str, label: Optional[str] = None) -> int:
        count = 0
        for entry in self._heap:
            if entry.cancelled or entry.session_id != session_id:
                continue
            if label is not None and entry.label != label:
                continue
            entry.cancelled = True
            count += 1
        return count

    def pending(self, session_id: Optional[str] = None, label: Optional[str] = None) -> List[DeferredEntry]:
        out = [
            e for e in self._heap
            if not e.cancelled
            and (session_id is None or e.session_id == session_id)
            and (label is None or e.label == label)
        ]
        return sorted(out)

    def next_due(self) -> Optional[float]:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].due if self._heap else None

    async def run_due(self) -> int:
        """Run every entry whose due time has passed. Returns the number run."""
        now = self.clock.now()
        ran = 0
        while self._heap and self._heap[0].due <= now:
            entry = heapq.heappop(self._heap)
            if entry.cancelled:
                continue
            if entry.period:
                entry.due = now + entry.period
                entry.seq = next(self._seq)
                heapq.heappush(self._heap, entry)
            ran += 1
            try:
                result = entry.action()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Deferred action %s failed (session=%s)", entry.label, entry.session_id)
        return ran

    async def run_forever(self, tick: float = 0.05) -> None:
        while True:
            await self.run_due()
            await asyncio.sleep(tick)

    def start(self, tick: float = 0.05) -> asyncio.Task:
        if self._running is None or self._running.done():
            self._running = asyncio.create_task(self.run_forever(tick))
        return self._running

    async def stop(self) -> None:
        task, self._running = self._running, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
