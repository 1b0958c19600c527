"""Scheduler control store: enable/disable flags and run status per job id.

One record per job id lives in ``scheduler_control``. The periodic runner
writes status and timestamps; the admin surface flips ``enabled``. Both go
through merge writes, last write wins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidControlField, StoreUnavailable, UnknownJobId
from .models import (
    AUDIT_COLLECTION,
    CONTROL_COLLECTION,
    CONTROL_FIELDS,
    ControlRecord,
    EventType,
    RunOutcome,
    SchedulerEvent,
    SchedulerStatus,
    TIMESTAMP_FIELDS,
    parse_ts,
    utcnow_iso,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    EventType.INFO: logging.INFO,
    EventType.SUCCESS: logging.INFO,
    EventType.WARN: logging.WARNING,
    EventType.ERROR: logging.ERROR,
}


class SchedulerControlStore:
    """Durable control records keyed by a closed set of job ids."""

    def __init__(
        self,
        store: DocumentStore,
        job_ids: Iterable[str] = ("umf", "news"),
        aliases: dict[str, str] | None = None,
    ) -> None:
        self.store = store
        self.job_ids: tuple[str, ...] = tuple(job_ids)
        self.aliases = dict(aliases or {})
        bad = [a for a, target in self.aliases.items() if target not in self.job_ids]
        if bad:
            raise ValueError(f"Aliases point outside the job-id set: {', '.join(bad)}")

    # ── Ids ───────────────────────────────────────────────────────────────

    def normalize(self, job_id: str) -> str:
        """Resolve legacy aliases and reject ids outside the closed set."""
        resolved = self.aliases.get(job_id, job_id)
        if resolved not in self.job_ids:
            raise UnknownJobId(job_id, self.job_ids)
        return resolved

    # ── Core operations ───────────────────────────────────────────────────

    def upsert_control(self, job_id: str, fields: dict[str, Any]) -> ControlRecord:
        """Merge-write ``fields`` into the record, creating it if absent."""
        job_id = self.normalize(job_id)
        unknown = set(fields) - CONTROL_FIELDS
        if unknown:
            raise InvalidControlField(f"Unknown control fields: {', '.join(sorted(unknown))}")

        payload = dict(fields)
        if "status" in payload:
            try:
                payload["status"] = SchedulerStatus(payload["status"]).value
            except ValueError as e:
                raise InvalidControlField(f"Invalid status: {payload['status']!r}") from e
        if "enabled" in payload and not isinstance(payload["enabled"], bool):
            raise InvalidControlField("enabled must be a boolean")
        payload["updated_at"] = utcnow_iso()

        doc = self.store.upsert_merge_max(
            CONTROL_COLLECTION, job_id, payload, TIMESTAMP_FIELDS, key=parse_ts,
        )
        return _effective(ControlRecord.from_doc(job_id, doc))

    def get_control(self, job_id: str) -> ControlRecord:
        """Current record; a default (disabled, stopped) one if none exists."""
        job_id = self.normalize(job_id)
        doc = self.store.get(CONTROL_COLLECTION, job_id)
        if doc is None:
            return ControlRecord.default(job_id)
        return _effective(ControlRecord.from_doc(job_id, doc))

    def list_controls(self) -> list[ControlRecord]:
        return [self.get_control(j) for j in self.job_ids]

    def set_enabled(self, job_id: str, enabled: bool, actor: str = "admin") -> ControlRecord:
        """Flip the enabled flag. Disabling stops; enabling a stopped job readies it."""
        job_id = self.normalize(job_id)
        fields: dict[str, Any] = {"enabled": enabled}
        if not enabled:
            fields["status"] = SchedulerStatus.STOPPED.value
        else:
            current = self.get_control(job_id)
            if current.status == SchedulerStatus.STOPPED:
                fields["status"] = SchedulerStatus.READY.value

        record = self.upsert_control(job_id, fields)
        try:
            self.log_event(
                job_id,
                EventType.INFO,
                f"Automation {'ENABLED' if enabled else 'DISABLED'} via {actor}",
            )
        except StoreUnavailable as e:
            # Toggle already committed
            logger.warning("[%s] Audit event not written: %s", job_id, e)
        return record

    def mark_running(self, job_id: str, run_id: str) -> ControlRecord:
        return self.upsert_control(job_id, {
            "status": SchedulerStatus.RUNNING.value,
            "last_run_id": run_id,
        })

    def record_run_outcome(
        self,
        job_id: str,
        outcome: RunOutcome | str,
        run_id: str | None = None,
        error: str | None = None,
    ) -> ControlRecord:
        """Store a run's outcome and advance ``last_run_timestamp`` either way."""
        job_id = self.normalize(job_id)
        outcome = RunOutcome(outcome)
        now = datetime.now(timezone.utc).isoformat()
        fields: dict[str, Any] = {
            "status": outcome.value,
            "last_run_timestamp": now,
            "last_error": error if outcome == RunOutcome.ERROR else None,
        }
        if outcome == RunOutcome.SUCCESS:
            fields["last_success_timestamp"] = now
        if run_id:
            fields["last_run_id"] = run_id
        return self.upsert_control(job_id, fields)

    def initialize(self, force: bool = False) -> list[ControlRecord]:
        """Provision a record per job id. Existing ``enabled`` flags survive unless forced."""
        records = []
        for job_id in self.job_ids:
            existing = self.store.get(CONTROL_COLLECTION, job_id)
            if existing is None or force:
                logger.info("[%s] Initializing control record to ENABLED (force=%s)", job_id, force)
                fields: dict[str, Any] = {"enabled": True, "status": SchedulerStatus.READY.value}
            else:
                logger.info("[%s] Control record exists - keeping enabled=%s", job_id, existing.get("enabled"))
                fields = {}
            records.append(self.upsert_control(job_id, fields))
        return records

    # ── Audit log ─────────────────────────────────────────────────────────

    def log_event(
        self,
        job_id: str,
        event_type: EventType | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> SchedulerEvent:
        """Append an audit event and mirror it to the application log."""
        event = SchedulerEvent(
            scheduler=self.normalize(job_id),
            type=EventType(event_type),
            message=message,
            metadata=metadata or {},
        )
        self.store.add(AUDIT_COLLECTION, event.to_dict())
        logger.log(_LOG_LEVELS[event.type], "[%s] %s", event.scheduler, message)
        return event

    def recent_events(self, job_id: str, limit: int = 10) -> list[SchedulerEvent]:
        docs = self.store.query(
            AUDIT_COLLECTION,
            where={"scheduler": self.normalize(job_id)},
            order_by="timestamp",
            descending=True,
            limit=limit,
        )
        return [SchedulerEvent.from_doc(d) for d in docs]


def _effective(record: ControlRecord) -> ControlRecord:
    # Operator intent wins over whatever an in-flight run wrote last.
    if not record.enabled:
        record.status = SchedulerStatus.STOPPED
    return record

