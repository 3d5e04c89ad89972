"""
Deterministic interval scheduler for background maintenance jobs.

Jobs are plain callables (sync or async) registered with a fixed interval.
`run_due(now)` runs every job whose interval has elapsed; `start()` drives
that from an asyncio task, while tests call `run_due`/`step` directly with
their own clock.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Union[None, Awaitable[Any]]]


@dataclass
class ScheduledJob:
    name: str
    interval: float
    func: JobFunc
    last_run: float
    paused: bool = False
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_duration_ms: Optional[float] = None

    def is_due(self, now: float) -> bool:
        return not self.paused and now - self.last_run >= self.interval


class Scheduler:
    def __init__(self, time_fn: Optional[Callable[[], float]] = None):
        self._time_fn = time_fn or time.monotonic
        self._jobs: Dict[str, ScheduledJob] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def every(self, name: str, interval: float, func: JobFunc) -> ScheduledJob:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if name in self._jobs:
            raise ValueError(f"job {name} already registered")
        job = ScheduledJob(name=name, interval=float(interval), func=func, last_run=self._time_fn())
        self._jobs[name] = job
        logger.debug("scheduler.job_registered", extra={"operation": name})
        return job

    async def _run_job(self, job: ScheduledJob, now: float) -> None:
        job.last_run = now
        started = time.perf_counter()
        try:
            result = job.func()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.error_count += 1
            job.last_error = f"{type(exc).__name__}: {exc}"
            logger.error("scheduler.job_failed", exc_info=True, extra={"operation": job.name})
        finally:
            job.run_count += 1
            job.last_duration_ms = (time.perf_counter() - started) * 1000

    async def run_due(self, now: Optional[float] = None) -> List[str]:
        """Run every due job once; returns the names that ran."""
        current = self._time_fn() if now is None else now
        ran = []
        for job in list(self._jobs.values()):
            if job.is_due(current):
                await self._run_job(job, current)
                ran.append(job.name)
        return ran

    async def step(self, name: str) -> None:
        """Run one job immediately regardless of its interval or pause state."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        await self._run_job(job, self._time_fn())

    def pause(self, name: Optional[str] = None) -> None:
        for job in self._select(name):
            job.paused = True

    def resume(self, name: Optional[str] = None) -> None:
        for job in self._select(name):
            job.paused = False

    def _select(self, name: Optional[str]) -> List[ScheduledJob]:
        if name is None:
            return list(self._jobs.values())
        if name not in self._jobs:
            raise KeyError(name)
        return [self._jobs[name]]

    def inspect(self) -> Dict[str, Dict[str, Any]]:
        now = self._time_fn()
        return {
            job.name: {
                "interval_seconds": job.interval,
                "paused": job.paused,
                "run_count": job.run_count,
                "error_count": job.error_count,
                "last_error": job.last_error,
                "last_duration_ms": job.last_duration_ms,
                "next_run_in_seconds": max(0.0, job.interval - (now - job.last_run)),
            }
            for job in self._jobs.values()
        }

    def start(self, tick: float = 1.0) -> None:
        if self._running:
            return
        self._running = True

        async def _loop():
            while self._running:
                await self.run_due()
                await asyncio.sleep(tick)

        self._task = asyncio.create_task(_loop())
        logger.info("scheduler.started", extra={"operation": ",".join(self._jobs)})

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler.stopped")
