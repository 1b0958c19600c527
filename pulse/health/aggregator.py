"""Health aggregator: fan out every probe, fan in under one deadline.

Each sub-check runs as its own task. A failure or timeout only marks its own
slot in the snapshot; ``compute_health_snapshot`` always returns a complete
snapshot. No retries here: probes are point-in-time.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import httpx

from .. import __version__
from ..config import Settings
from ..control.service import SchedulerControlStore
from ..control.store import DocumentStore
from .models import HealthSnapshot, OverallStatus, ProbeResult
from .probes import (
    SnapshotCache,
    count_events,
    count_news,
    count_umf,
    probe_database,
    probe_zoho,
    secrets_status,
)

logger = logging.getLogger(__name__)

ProbeFn = Callable[[], Awaitable[Any]]

DATA_DOMAINS = ("umf", "news", "events")


class HealthAggregator:
    """Builds HealthSnapshots from independent, concurrently-run probes."""

    def __init__(
        self,
        controls: SchedulerControlStore,
        store: DocumentStore,
        settings: Settings,
        cache: SnapshotCache | None = None,
        timeout: float | None = None,
        zoho_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.controls = controls
        self.store = store
        self.settings = settings
        self.cache = cache or SnapshotCache()
        self.timeout = timeout if timeout is not None else settings.health_timeout_seconds
        self._zoho_transport = zoho_transport
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="health-probe")
        self.probes: dict[str, ProbeFn] = self._default_probes()

    # ── Probe registry ────────────────────────────────────────────────────

    def _blocking(self, fn: Callable[..., Any], *args: Any) -> ProbeFn:
        """Wrap a blocking call so it runs in the probe thread pool."""
        async def run() -> Any:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, functools.partial(fn, *args))
        return run

    def _recent_events(self, job_id: str) -> list[dict[str, Any]]:
        events = self.controls.recent_events(job_id, limit=self.settings.health_recent_events)
        return [e.to_dict() for e in events]

    def _default_probes(self) -> dict[str, ProbeFn]:
        probes: dict[str, ProbeFn] = {
            "db": self._blocking(probe_database, self.settings.resolved_app_db),
            "zoho": lambda: probe_zoho(self.settings, transport=self._zoho_transport),
            "data.umf": self._blocking(count_umf, self.store, self.cache),
            "data.news": self._blocking(count_news, self.store),
            "data.events": self._blocking(count_events, self.store),
        }
        for job_id in self.controls.job_ids:
            probes[f"scheduler.{job_id}"] = self._blocking(self.controls.get_control, job_id)
            probes[f"events.{job_id}"] = self._blocking(self._recent_events, job_id)
        return probes

    # ── Fan-out / fan-in ──────────────────────────────────────────────────

    async def _timed(self, name: str, fn: ProbeFn) -> ProbeResult:
        t0 = time.perf_counter()
        try:
            value = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency = (time.perf_counter() - t0) * 1000
            logger.warning("Health probe %s failed: %s: %s", name, type(e).__name__, e)
            return ProbeResult.failure(name, str(e) or type(e).__name__, latency_ms=latency)
        return ProbeResult.success(name, value, latency_ms=(time.perf_counter() - t0) * 1000)

    async def run_probes(self) -> dict[str, ProbeResult]:
        """Run every probe concurrently; unfinished ones are cancelled at the deadline."""
        tasks = {
            name: asyncio.create_task(self._timed(name, fn), name=f"probe-{name}")
            for name, fn in self.probes.items()
        }
        if not tasks:
            return {}

        _, pending = await asyncio.wait(tasks.values(), timeout=self.timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: dict[str, ProbeResult] = {}
        for name, task in tasks.items():
            if task in pending or task.cancelled():
                results[name] = ProbeResult.failure(
                    name, f"Timed out after {self.timeout}s",
                    latency_ms=self.timeout * 1000, timed_out=True,
                )
            else:
                results[name] = task.result()
        return results

    async def compute_health_snapshot(self) -> HealthSnapshot:
        """Aggregate every sub-check into one snapshot. Never raises."""
        try:
            results = await self.run_probes()
            return self.reduce(results)
        except Exception as e:
            logger.exception("Health aggregation failed")
            return self._all_failed(f"Aggregation error: {e}")

    # ── Reducer ───────────────────────────────────────────────────────────

    @staticmethod
    def _down_status(result: ProbeResult) -> str:
        return "timeout" if result.timed_out else "error"

    def reduce(self, results: dict[str, ProbeResult]) -> HealthSnapshot:
        missing = ProbeResult.failure("missing", "Probe not registered")

        db_r = results.get("db", missing)
        db = db_r.value if db_r.ok else {
            "status": self._down_status(db_r), "userCount": 0, "error": db_r.error,
        }

        zoho_r = results.get("zoho", missing)
        zoho = zoho_r.value if zoho_r.ok else {
            "status": self._down_status(zoho_r), "authenticated": False, "error": zoho_r.error,
        }

        data: dict[str, dict[str, Any]] = {}
        for domain in DATA_DOMAINS:
            r = results.get(f"data.{domain}", missing)
            data[domain] = r.value if r.ok else {"status": self._down_status(r), "error": r.error}

        schedulers: dict[str, dict[str, Any]] = {}
        events: dict[str, list[dict[str, Any]]] = {}
        for job_id in self.controls.job_ids:
            r = results.get(f"scheduler.{job_id}", missing)
            schedulers[job_id] = r.value.health_view() if r.ok else {
                "enabled": None, "status": "error", "error": r.error,
            }
            ev = results.get(f"events.{job_id}", missing)
            events[job_id] = ev.value if ev.ok else []

        critical_ok = db_r.ok and all(
            results.get(f"scheduler.{j}", missing).ok for j in self.controls.job_ids
        )

        return HealthSnapshot(
            status=OverallStatus.READY if critical_ok else OverallStatus.DEGRADED,
            version=__version__,
            env=self.settings.app_env,
            db=db,
            zoho=zoho,
            data=data,
            schedulers=schedulers,
            scheduler_events=events,
            secrets=secrets_status(self.settings),
            probes={name: r.latency_ms for name, r in results.items()},
        )

    def _all_failed(self, error: str) -> HealthSnapshot:
        return HealthSnapshot(
            status=OverallStatus.DEGRADED,
            version=__version__,
            env=self.settings.app_env,
            db={"status": "error", "userCount": 0, "error": error},
            zoho={"status": "error", "authenticated": False, "error": error},
            data={d: {"status": "error", "error": error} for d in DATA_DOMAINS},
            schedulers={
                j: {"enabled": None, "status": "error", "error": error}
                for j in self.controls.job_ids
            },
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
