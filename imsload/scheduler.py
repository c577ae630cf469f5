"""Arrival-rate scheduler: constant or staged ramping iteration-start rate.

Iteration starts follow the integral of the target-rate curve. Each start is
handed to an idle worker; above preallocated_workers new workers are spawned
up to max_workers; beyond that the start is dropped and counted. Starts are
never queued, so a saturated target shows up as dropped iterations instead of
a silently lower rate.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable

from .logging_config import get_logger
from .models import LoadProfile, SchedulerStats

logger = get_logger("scheduler")

# Scheduling tick (seconds). Lower = smoother start distribution; 0.02 keeps CPU low.
RAMP_POLL_SEC = 0.02
# Rate above this multiple of the first stage's rate counts as a spike phase
SPIKE_RATE_FACTOR = 1.5
# Float slack when flooring the start integral
_EPS = 1e-9


def target_rate_at(profile: LoadProfile, elapsed_seconds: float) -> float:
    """Target iterations/second at elapsed time. 0 outside the profile."""
    if elapsed_seconds < 0:
        return 0.0
    t0 = 0.0
    prev = profile.start_rate
    for stage in profile.stages:
        t1 = t0 + stage.duration_seconds
        if elapsed_seconds < t1:
            frac = (elapsed_seconds - t0) / stage.duration_seconds
            return prev + (stage.target_rate - prev) * frac
        prev = stage.target_rate
        t0 = t1
    return 0.0


def expected_starts(profile: LoadProfile, elapsed_seconds: float) -> float:
    """Integral of the target rate from 0 to elapsed: iterations due so far."""
    if elapsed_seconds <= 0:
        return 0.0
    total = 0.0
    t0 = 0.0
    prev = profile.start_rate
    for stage in profile.stages:
        d = stage.duration_seconds
        span = min(elapsed_seconds - t0, d)
        if span <= 0:
            break
        end_rate = prev + (stage.target_rate - prev) * (span / d)
        total += (prev + end_rate) / 2.0 * span
        prev = stage.target_rate
        t0 += d
    return total


def in_spike_phase(profile: LoadProfile, elapsed_seconds: float) -> bool:
    baseline = profile.stages[0].target_rate if profile.stages else 0.0
    if baseline <= 0:
        return False
    return target_rate_at(profile, elapsed_seconds) > baseline * SPIKE_RATE_FACTOR


class ArrivalRateScheduler:
    """Starts iterations along a LoadProfile until its duration elapses or stop() is called.

    In-flight iterations always run to completion; run() returns once they have.
    """

    def __init__(
        self,
        profile: LoadProfile,
        iteration: Callable[[int], Awaitable[None]],
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        poll_interval: float = RAMP_POLL_SEC,
    ) -> None:
        self.profile = profile
        self._iteration = iteration
        self._clock = clock
        self._sleep = sleep
        self._poll = poll_interval
        self._stop_event = asyncio.Event()
        self._queue: asyncio.Queue[int | None] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._idle = 0
        self._drop_warned = False
        self.stats = SchedulerStats()
        self.start_time: float | None = None

    def elapsed(self) -> float:
        return self._clock() - self.start_time if self.start_time is not None else 0.0

    @property
    def busy_workers(self) -> int:
        return len(self._workers) - self._idle

    def stop(self) -> None:
        """Stop issuing new iterations (e.g. on SIGINT)."""
        self._stop_event.set()

    def _spawn_worker(self) -> None:
        self._workers.append(asyncio.create_task(self._worker()))
        self._idle += 1
        self.stats.allocated_workers = len(self._workers)

    def _dispatch(self, n: int) -> None:
        if self._idle == 0 and len(self._workers) < self.profile.max_workers:
            self._spawn_worker()
            logger.debug("Spawned worker %d (max %d)", len(self._workers), self.profile.max_workers)
        if self._idle == 0:
            self.stats.dropped_iterations += 1
            if not self._drop_warned:
                logger.warning(
                    "All %d workers busy: dropping iterations (counted as dropped_iterations)",
                    self.profile.max_workers,
                )
                self._drop_warned = True
            return
        self._idle -= 1
        self.stats.iterations_started += 1
        self.stats.peak_workers = max(self.stats.peak_workers, self.busy_workers)
        self._queue.put_nowait(n)

    async def _worker(self) -> None:
        while True:
            n = await self._queue.get()
            if n is None:
                return
            try:
                await self._iteration(n)
                self.stats.iterations_completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                self.stats.iterations_failed += 1
                logger.exception("Iteration %d raised", n)
            finally:
                self._idle += 1

    async def run(self) -> SchedulerStats:
        profile = self.profile
        duration = profile.total_duration_seconds
        self.start_time = self._clock()
        for _ in range(profile.preallocated_workers):
            self._spawn_worker()

        issued = 0
        try:
            while not self._stop_event.is_set():
                elapsed = self._clock() - self.start_time
                due = math.floor(expected_starts(profile, min(elapsed, duration)) + _EPS)
                while issued < due:
                    self._dispatch(issued)
                    issued += 1
                if elapsed >= duration:
                    break
                await self._sleep(self._poll)
        finally:
            # Sentinels queue behind pending starts: in-flight iterations finish first.
            for _ in self._workers:
                self._queue.put_nowait(None)
            await asyncio.gather(*self._workers, return_exceptions=True)
            self.stats.duration_seconds = self._clock() - self.start_time

        logger.info(
            "Scheduler finished: started=%d completed=%d dropped=%d peak_workers=%d",
            self.stats.iterations_started,
            self.stats.iterations_completed,
            self.stats.dropped_iterations,
            self.stats.peak_workers,
        )
        return self.stats
