"""Job runner: one guarded tick of a data-refresh job.

Tick flow (scheduled runs):
  1. skip if the job is disabled in the control plane
  2. skip if another tick holds the job's lease
  3. mark running → invoke the job → record success/error
     (a cancelled run is recorded as an error too)
Manual runs skip steps 1–2; the admin asked for it explicitly.

The fetch itself (CoinGecko / RSS) is external: jobs here are callables,
usually an HttpTrigger that pokes the worker that does the real work.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..control.errors import StoreUnavailable
from ..control.models import LOCK_COLLECTION, EventType, RunOutcome
from ..control.service import SchedulerControlStore

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[dict[str, Any]]]
SuccessHook = Callable[[dict[str, Any]], Any]


class TriggerError(Exception):
    """Raised when an external job trigger cannot be reached or rejects the call."""


class JobNotRegistered(LookupError):
    """Raised when a known job id has no runnable job attached."""


# ── HTTP trigger ─────────────────────────────────────────────────────────────


class HttpTrigger:
    """POSTs to the external worker that performs a job's fetch."""

    def __init__(
        self,
        job_id: str,
        url: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.job_id = job_id
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def __call__(self) -> dict[str, Any]:
        if not self.url:
            raise TriggerError(f"No trigger URL configured for {self.job_id}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json={"job": self.job_id})
        except httpx.HTTPError as e:
            raise TriggerError(f"Trigger for {self.job_id} unreachable: {e}") from e

        if resp.status_code >= 400:
            raise TriggerError(f"Trigger for {self.job_id} returned {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}


# ── Runner ───────────────────────────────────────────────────────────────────


@dataclass
class RunReport:
    """What one tick did."""

    job_id: str
    run_id: str
    manual: bool = False
    ran: bool = False
    skipped_reason: str | None = None
    outcome: RunOutcome | None = None
    result: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "run_id": self.run_id,
            "manual": self.manual,
            "ran": self.ran,
            "skipped_reason": self.skipped_reason,
            "outcome": self.outcome.value if self.outcome else None,
            "result": self.result,
            "duration_ms": self.duration_ms,
        }


class JobRunner:
    """Executes jobs under control-plane supervision."""

    def __init__(
        self,
        controls: SchedulerControlStore,
        jobs: dict[str, JobFn],
        leases: dict[str, float] | None = None,
        on_success: dict[str, SuccessHook] | None = None,
    ) -> None:
        self.controls = controls
        self.jobs = {controls.normalize(k): v for k, v in jobs.items()}
        self.leases = leases or {}
        self.on_success = on_success or {}

    @staticmethod
    async def _call(fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    def _record_cancelled(self, job_id: str, run_id: str) -> None:
        # Runs inline: the task is already cancelled and may not get another await.
        try:
            self.controls.log_event(job_id, EventType.ERROR, "Run cancelled", {"runId": run_id})
            self.controls.record_run_outcome(job_id, RunOutcome.ERROR, run_id, "cancelled")
        except StoreUnavailable:
            logger.exception("[%s] Could not record cancelled run %s", job_id, run_id)

    async def run_once(self, job_id: str, manual: bool = False) -> RunReport:
        """Run one tick. Failures are recorded as ``error`` and re-raised."""
        job_id = self.controls.normalize(job_id)
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotRegistered(f"No job registered for {job_id}")

        run_id = f"{'manual' if manual else 'run'}_{int(time.time() * 1000)}"
        report = RunReport(job_id=job_id, run_id=run_id, manual=manual)
        lock_name = f"{job_id}_lock"
        locked = False

        if manual:
            await self._call(self.controls.log_event, job_id, EventType.INFO,
                             "Manual refresh triggered by admin", {"runId": run_id})
        else:
            record = await self._call(self.controls.get_control, job_id)
            if not record.enabled:
                logger.info("[%s] Scheduler disabled in control plane. Skipping.", job_id)
                report.skipped_reason = "disabled"
                return report

            lease = self.leases.get(job_id, 300.0)
            locked = await self._call(self.controls.store.try_acquire, LOCK_COLLECTION, lock_name, lease)
            if not locked:
                logger.warning("[%s] Could not acquire lock. Overlapping run? Skipping.", job_id)
                report.skipped_reason = "locked"
                return report

        t0 = time.perf_counter()
        try:
            await self._call(self.controls.mark_running, job_id, run_id)
            await self._call(self.controls.log_event, job_id, EventType.INFO,
                             "Starting run", {"runId": run_id})
            result = await job()
        except asyncio.CancelledError:
            self._record_cancelled(job_id, run_id)
            raise
        except Exception as e:
            msg = str(e) or type(e).__name__
            report.duration_ms = round((time.perf_counter() - t0) * 1000, 1)
            await self._call(self.controls.log_event, job_id, EventType.ERROR,
                             f"Run failed: {msg}", {"runId": run_id, "error": msg})
            await self._call(self.controls.record_run_outcome, job_id, RunOutcome.ERROR, run_id, msg)
            raise
        finally:
            if locked:
                await self._call(self.controls.store.delete, LOCK_COLLECTION, lock_name)

        report.duration_ms = round((time.perf_counter() - t0) * 1000, 1)
        report.ran = True
        report.outcome = RunOutcome.SUCCESS
        report.result = result or {}

        await self._call(self.controls.log_event, job_id, EventType.SUCCESS,
                         "Run completed", {"runId": run_id, "duration_ms": report.duration_ms})
        await self._call(self.controls.record_run_outcome, job_id, RunOutcome.SUCCESS, run_id)

        hook = self.on_success.get(job_id)
        if hook:
            try:
                await self._call(hook, report.result)
            except Exception:
                logger.exception("[%s] Post-run hook failed", job_id)
        return report
