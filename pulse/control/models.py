"""Scheduler control models: control records, run outcomes, audit events."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

CONTROL_COLLECTION = "scheduler_control"
AUDIT_COLLECTION = "scheduler_audit_log"
LOCK_COLLECTION = "locks"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO timestamp (naive values are taken as UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SchedulerStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    STOPPED = "stopped"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class EventType(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


# Fields a caller may merge into a control record.
CONTROL_FIELDS = frozenset({
    "enabled",
    "status",
    "last_run_timestamp",
    "last_success_timestamp",
    "last_run_id",
    "last_error",
})

# Run timestamps only ever move forward
TIMESTAMP_FIELDS = ("last_run_timestamp", "last_success_timestamp")


@dataclass
class ControlRecord:
    """Persisted enable/status/timestamp state for one job id."""

    id: str
    enabled: bool = False
    status: SchedulerStatus = SchedulerStatus.STOPPED
    last_run_timestamp: str | None = None
    last_success_timestamp: str | None = None
    last_run_id: str | None = None
    last_error: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def default(cls, job_id: str) -> "ControlRecord":
        return cls(id=job_id)

    @classmethod
    def from_doc(cls, job_id: str, doc: dict[str, Any]) -> "ControlRecord":
        enabled = bool(doc.get("enabled", False))
        raw_status = doc.get("status")
        try:
            status = SchedulerStatus(raw_status)
        except ValueError:
            logger.warning("Control record %s has unrecognised status %r", job_id, raw_status)
            status = SchedulerStatus.READY if enabled else SchedulerStatus.STOPPED
        return cls(
            id=job_id,
            enabled=enabled,
            status=status,
            last_run_timestamp=doc.get("last_run_timestamp"),
            last_success_timestamp=doc.get("last_success_timestamp"),
            last_run_id=doc.get("last_run_id"),
            last_error=doc.get("last_error"),
            updated_at=doc.get("updated_at"),
        )

    def health_view(self) -> dict[str, Any]:
        """Projection served under ``schedulers`` in the health snapshot."""
        view: dict[str, Any] = {"enabled": self.enabled, "status": self.status.value}
        if self.last_run_timestamp is not None:
            view["last_run_timestamp"] = self.last_run_timestamp
        if self.last_success_timestamp is not None:
            view["last_success_timestamp"] = self.last_success_timestamp
        return view


@dataclass
class SchedulerEvent:
    """One entry of the scheduler audit log."""

    scheduler: str
    type: EventType
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        return d

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "SchedulerEvent":
        try:
            etype = EventType(doc.get("type", "info"))
        except ValueError:
            etype = EventType.INFO
        return cls(
            scheduler=doc.get("scheduler", ""),
            type=etype,
            message=doc.get("message") or "No message",
            metadata=doc.get("metadata") or {},
            timestamp=doc.get("timestamp") or "",
        )
