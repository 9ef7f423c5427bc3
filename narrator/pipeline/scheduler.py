from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable

from narrator.schemas.capture_v1 import CaptureRecord, SchedulerPhase, SchedulerState

log = logging.getLogger("capture_scheduler")

ProduceFn = Callable[[], "CaptureRecord | None | Awaitable[CaptureRecord | None]"]
ReadyFn = Callable[[], bool]
SleepFn = Callable[[float], Awaitable[None]]


class CaptureScheduler:
    """Timer that calls ``produce`` every ``interval_seconds`` until ``target_count`` captures exist.

    Phases: idle -> armed -> running -> completed | stopped.

    A tick is skipped without consuming a count when the readiness guard fails or
    ``produce`` returns None. Skipped ticks are never caught up. Exceptions from ``produce``
    are logged and absorbed so one bad capture cannot halt the sequence. ``produce`` may
    return the record directly or an awaitable of it.

    ``state.remaining_seconds`` counts down to the next tick.
    """

    def __init__(
        self,
        produce: ProduceFn,
        *,
        interval_seconds: float,
        target_count: int,
        enabled: bool = True,
        ready: ReadyFn | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if target_count < 1:
            raise ValueError("target_count must be >= 1")

        self._produce = produce
        self._ready = ready
        self._clock = clock
        self._sleep = sleep
        self.interval_seconds = float(interval_seconds)
        self.target_count = int(target_count)
        self.enabled = enabled

        self._phase: SchedulerPhase = "idle"
        self._current_count = 0
        self._task: asyncio.Task | None = None
        self._next_tick_at: float | None = None

        self.skipped_ticks = 0
        self.failed_ticks = 0

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def active(self) -> bool:
        return self._phase in ("armed", "running")

    @property
    def current_count(self) -> int:
        return self._current_count

    @property
    def state(self) -> SchedulerState:
        next_tick_in = 0.0
        if self.active and self._next_tick_at is not None:
            next_tick_in = max(0.0, self._next_tick_at - self._clock())
        return SchedulerState(
            enabled=self.enabled,
            interval_seconds=self.interval_seconds,
            target_count=self.target_count,
            current_count=self._current_count,
            active=self.active,
            remaining_seconds=round(next_tick_in, 3),
            progress_percent=round(self._current_count / self.target_count * 100, 2),
            phase=self._phase,
        )

    def start(self) -> bool:
        """Arm the timer. Returns False when the scheduler is disabled."""

        if not self.enabled:
            log.info("Scheduler disabled; start ignored")
            return False

        self._cancel_timer()
        self._current_count = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0
        self._phase = "armed"
        self._next_tick_at = self._clock() + self.interval_seconds
        self._task = asyncio.get_running_loop().create_task(self._run(), name="capture-scheduler")
        log.info("Scheduler armed: every %.2fs, target %s captures", self.interval_seconds, self.target_count)
        return True

    def stop(self) -> None:
        """Cancel the timer from any phase. No tick fires after this returns."""

        self._cancel_timer()
        self._next_tick_at = None
        if self._phase != "completed":
            self._phase = "stopped"
        log.info("Scheduler stopped at %s/%s", self._current_count, self.target_count)

    async def wait(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _cancel_timer(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        # Fixed-rate: ticks land on start + k * interval however long a capture takes.
        while self.active and self._next_tick_at is not None:
            delay = self._next_tick_at - self._clock()
            if delay > 0:
                await self._sleep(delay)
            if not self.active or self._next_tick_at is None:
                return
            self._next_tick_at += self.interval_seconds
            await self._tick()

            if self._next_tick_at is None:
                return
            now = self._clock()
            while self._next_tick_at <= now:
                self._next_tick_at += self.interval_seconds

    async def _tick(self) -> None:
        self._phase = "running"

        try:
            if self._ready is not None and not self._ready():
                self.skipped_ticks += 1
                log.debug("Tick skipped: source not ready")
                return
            record = self._produce()
            if inspect.isawaitable(record):
                # A capture that has started is finished even if the timer is stopped meanwhile.
                record = await asyncio.shield(record)
        except Exception:
            self.failed_ticks += 1
            log.exception("Capture callback failed; continuing schedule")
            return

        if record is None:
            self.skipped_ticks += 1
            log.debug("Tick skipped: capture callback returned nothing")
            return

        self._current_count += 1
        log.info("Captured %s/%s (record %s)", self._current_count, self.target_count, record.id)

        if self._current_count >= self.target_count:
            self._phase = "completed"
            self._next_tick_at = None
            log.info("Scheduler completed after %s captures", self._current_count)
