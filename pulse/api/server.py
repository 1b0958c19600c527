"""FastAPI server for the scheduler control plane + admin health."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulse import __version__
from pulse.api.admin_routes import admin_router
from pulse.config import Settings, settings as default_settings
from pulse.control.service import SchedulerControlStore
from pulse.control.store import open_store
from pulse.health.aggregator import HealthAggregator
from pulse.health.probes import SnapshotCache, hydrate_umf_cache
from pulse.runner.jobs import HttpTrigger, JobRunner
from pulse.runner.loop import SchedulerLoop

logger = logging.getLogger(__name__)


def build_components(app: FastAPI, settings: Settings) -> None:
    """Wire store → control store → runner / aggregator onto ``app.state``."""
    store = open_store(settings.resolved_control_db)
    controls = SchedulerControlStore(store, settings.job_ids, settings.aliases)
    cache = SnapshotCache()

    def _refresh_umf_cache(_result: dict[str, Any]) -> None:
        hydrate_umf_cache(store, cache, settings.umf_cache_ttl_seconds)

    jobs = {
        job_id: HttpTrigger(job_id, settings.trigger_url_for(job_id), settings.trigger_timeout_seconds)
        for job_id in controls.job_ids
    }
    runner = JobRunner(
        controls,
        jobs,
        leases={j: float(settings.lease_for(j)) for j in controls.job_ids},
        on_success={"umf": _refresh_umf_cache} if "umf" in controls.job_ids else {},
    )

    app.state.store = store
    app.state.controls = controls
    app.state.cache = cache
    app.state.runner = runner
    app.state.aggregator = HealthAggregator(controls, store, settings, cache=cache)
    app.state.scheduler_loop = SchedulerLoop(
        runner, {j: float(settings.interval_for(j)) for j in controls.job_ids},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize shared resources on startup."""
    settings: Settings = app.state.settings
    if getattr(app.state, "controls", None) is None:
        build_components(app, settings)

    # Hydrate the UMF cache before serving, like the live listener did
    try:
        hydrate_umf_cache(app.state.store, app.state.cache, settings.umf_cache_ttl_seconds)
    except Exception:
        logger.exception("UMF cache hydration failed - continuing cold")

    loop: SchedulerLoop = app.state.scheduler_loop
    if settings.scheduler_autostart:
        try:
            await loop.start()
        except Exception:
            logger.exception("Scheduler loop failed to start")
    else:
        logger.info("Scheduler autostart disabled - control plane only")

    yield

    # Shutdown
    await loop.stop()
    app.state.aggregator.close()
    app.state.store.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    app = FastAPI(
        title="Market Pulse - Control Plane",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings or default_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(admin_router, prefix="/api")

    @app.get("/api/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
