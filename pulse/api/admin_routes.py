"""Admin API routes: health snapshot + scheduler control.

Endpoints (all admin-only):
  GET  /api/admin/health                      - aggregated HealthSnapshot
  GET  /api/admin/schedulers                  - every control record + loop status
  GET  /api/admin/schedulers/{job_id}         - one record + recent audit events
  POST /api/admin/schedulers/{job_id}/enable  - enable a job
  POST /api/admin/schedulers/{job_id}/disable - disable (and stop) a job
  POST /api/admin/scheduler/toggle            - {schedulerId, enabled}
  POST /api/admin/schedulers/{job_id}/run     - manual run, bypasses enabled flag + lease
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from pulse.api.auth import require_admin
from pulse.control.errors import InvalidControlField, StoreUnavailable, UnknownJobId
from pulse.control.service import SchedulerControlStore
from pulse.runner.jobs import JobNotRegistered

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

T = TypeVar("T")


# ── Request models ───────────────────────────────────────────────────────


class ToggleBody(BaseModel):
    schedulerId: str
    enabled: bool


# ── Helpers ──────────────────────────────────────────────────────────────


def _get_controls(request: Request) -> SchedulerControlStore:
    return request.app.state.controls  # type: ignore[no-any-return]


def _control_call(fn: Callable[..., T], *args: Any) -> T:
    """Map control-plane errors onto HTTP status codes."""
    try:
        return fn(*args)
    except (UnknownJobId, InvalidControlField) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailable as e:
        logger.error("Control store unavailable: %s", e)
        raise HTTPException(status_code=503, detail=f"Control store unavailable: {e}") from e


# ── Health ───────────────────────────────────────────────────────────────


@admin_router.get("/health")
async def admin_health(request: Request) -> dict[str, Any]:
    """Aggregated health snapshot; individual sections degrade, the response does not."""
    snapshot = await request.app.state.aggregator.compute_health_snapshot()
    return snapshot.to_dict()


# ── Scheduler control ────────────────────────────────────────────────────


@admin_router.get("/schedulers")
def list_schedulers(request: Request) -> dict[str, Any]:
    controls = _get_controls(request)
    records = _control_call(controls.list_controls)
    loop = getattr(request.app.state, "scheduler_loop", None)
    return {
        "schedulers": [r.to_dict() for r in records],
        "loop": loop.status() if loop else {"running": False, "jobs": {}},
    }


@admin_router.get("/schedulers/{job_id}")
def get_scheduler(job_id: str, request: Request, limit: int = 10) -> dict[str, Any]:
    controls = _get_controls(request)
    record = _control_call(controls.get_control, job_id)
    events = _control_call(controls.recent_events, job_id, limit)
    return {
        "scheduler": record.to_dict(),
        "recent_events": [e.to_dict() for e in events],
    }


def _set_enabled(request: Request, job_id: str, enabled: bool) -> dict[str, Any]:
    controls = _get_controls(request)
    record = _control_call(controls.set_enabled, job_id, enabled, "Admin Dashboard")
    logger.info("Scheduler %s %s by admin", record.id, "enabled" if enabled else "disabled")
    return {"scheduler": record.to_dict()}


@admin_router.post("/schedulers/{job_id}/enable")
def enable_scheduler(job_id: str, request: Request) -> dict[str, Any]:
    return _set_enabled(request, job_id, True)


@admin_router.post("/schedulers/{job_id}/disable")
def disable_scheduler(job_id: str, request: Request) -> dict[str, Any]:
    return _set_enabled(request, job_id, False)


@admin_router.post("/scheduler/toggle")
def toggle_scheduler(body: ToggleBody, request: Request) -> dict[str, Any]:
    result = _set_enabled(request, body.schedulerId, body.enabled)
    return {
        "success": True,
        "schedulerId": result["scheduler"]["id"],
        "enabled": body.enabled,
        "message": f"Scheduler {'started' if body.enabled else 'stopped'} successfully",
        **result,
    }


@admin_router.post("/schedulers/{job_id}/run")
async def run_scheduler(job_id: str, request: Request) -> dict[str, Any]:
    """Manual refresh - the client waits for the run to finish."""
    runner = request.app.state.runner
    try:
        report = await runner.run_once(job_id, manual=True)
    except (UnknownJobId, JobNotRegistered) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Control store unavailable: {e}") from e
    except Exception as e:
        logger.error("Manual run of %s failed: %s", job_id, e)
        raise HTTPException(status_code=502, detail=f"Run failed: {e}") from e
    return {"success": True, "run": report.to_dict()}
