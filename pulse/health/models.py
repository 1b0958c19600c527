"""Health snapshot models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..control.models import utcnow_iso


class OverallStatus(str, Enum):
    READY = "ready"
    DEGRADED = "degraded"


@dataclass
class ProbeResult:
    """Outcome of one sub-check: either a value or an error, never both."""

    name: str
    ok: bool
    value: Any = None
    error: str | None = None
    timed_out: bool = False
    latency_ms: float = 0.0

    @classmethod
    def success(cls, name: str, value: Any, latency_ms: float = 0.0) -> "ProbeResult":
        return cls(name=name, ok=True, value=value, latency_ms=round(latency_ms, 1))

    @classmethod
    def failure(
        cls, name: str, error: str, latency_ms: float = 0.0, timed_out: bool = False,
    ) -> "ProbeResult":
        return cls(
            name=name, ok=False, error=error,
            timed_out=timed_out, latency_ms=round(latency_ms, 1),
        )


@dataclass
class HealthSnapshot:
    """Point-in-time view of system + scheduler health served to the admin UI."""

    status: OverallStatus
    version: str
    env: str
    db: dict[str, Any]
    zoho: dict[str, Any]
    data: dict[str, dict[str, Any]]
    schedulers: dict[str, dict[str, Any]]
    scheduler_events: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    secrets: dict[str, bool] = field(default_factory=dict)
    probes: dict[str, float] = field(default_factory=dict)  # latency per probe, ms
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "env": self.env,
            "db": self.db,
            "zoho": self.zoho,
            "data": self.data,
            "schedulers": self.schedulers,
            "scheduler_events": self.scheduler_events,
            "secrets": self.secrets,
            "probes": self.probes,
        }
