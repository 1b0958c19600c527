"""Scheduler loop: ticks each job at its interval.

A plain asyncio loop per job, like the health scheduler it grew out of.
Every tick goes through JobRunner, so a disabled job is skipped on its
next tick without the loop needing to know.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .jobs import JobRunner

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Runs every registered job on a fixed interval."""

    def __init__(
        self,
        runner: JobRunner,
        intervals: dict[str, float],
        run_on_start: bool = True,
    ) -> None:
        self.runner = runner
        self.intervals = dict(intervals)
        self.run_on_start = run_on_start
        self._tasks: list[asyncio.Task[None]] = []
        self._next_run: dict[str, str] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        for job_id, interval in self.intervals.items():
            task = asyncio.create_task(self._job_loop(job_id, interval), name=f"scheduler-{job_id}")
            self._tasks.append(task)

        logger.info(
            "Scheduler loop started: %s",
            ", ".join(f"{j} every {int(i)}s" for j, i in self.intervals.items()) or "no jobs",
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler loop stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobs": {
                job_id: {"interval_seconds": interval, "next_run": self._next_run.get(job_id)}
                for job_id, interval in self.intervals.items()
            },
        }

    async def _tick(self, job_id: str) -> None:
        try:
            report = await self.runner.run_once(job_id)
            if report.ran:
                logger.debug("[%s] Tick done in %.0fms", job_id, report.duration_ms)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Scheduled run failed", job_id)

    async def _job_loop(self, job_id: str, interval: float) -> None:
        if self.run_on_start:
            await self._tick(job_id)

        while self._running:
            try:
                self._next_run[job_id] = (
                    datetime.now(timezone.utc) + timedelta(seconds=interval)
                ).isoformat()
                await asyncio.sleep(interval)
                if not self._running:
                    break
                await self._tick(job_id)
            except asyncio.CancelledError:
                break
