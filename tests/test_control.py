"""Tests for the scheduler control store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pulse.control.errors import InvalidControlField, StoreUnavailable, UnknownJobId
from pulse.control.models import (
    AUDIT_COLLECTION,
    CONTROL_COLLECTION,
    ControlRecord,
    EventType,
    RunOutcome,
    SchedulerStatus,
    parse_ts,
)
from pulse.control.service import SchedulerControlStore
from pulse.control.store import MemoryDocumentStore


class InterleavingStore(MemoryDocumentStore):
    """Runs ``before_write`` once, just before the next merge write."""

    def __init__(self) -> None:
        super().__init__()
        self.before_write = None

    def upsert_merge_max(self, *args, **kwargs):
        hook, self.before_write = self.before_write, None
        if hook:
            hook()
        return super().upsert_merge_max(*args, **kwargs)


# ── Ids ──────────────────────────────────────────────────────────────────────


class TestJobIds:
    def test_unknown_id_rejected(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(UnknownJobId) as exc:
            controls.upsert_control("econ", {"enabled": True})
        assert "umf" in str(exc.value)

    def test_unknown_id_on_read(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(UnknownJobId):
            controls.get_control("nope")

    def test_alias_resolves(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("guru", {"enabled": True})
        assert controls.get_control("news").enabled is True
        assert controls.get_control("guru").id == "news"

    def test_alias_outside_set_rejected(self, store) -> None:
        with pytest.raises(ValueError):
            SchedulerControlStore(store, ("umf",), {"guru": "news"})


# ── upsert / get ─────────────────────────────────────────────────────────────


class TestUpsertControl:
    @pytest.mark.parametrize("job_id", ["umf", "news"])
    def test_enabled_roundtrip(self, controls: SchedulerControlStore, job_id: str) -> None:
        controls.upsert_control(job_id, {"enabled": True})
        assert controls.get_control(job_id).enabled is True

    def test_merge_keeps_unsupplied_fields(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("umf", {"enabled": True, "status": "ready"})
        controls.upsert_control("umf", {"status": "running"})
        record = controls.get_control("umf")
        assert record.enabled is True
        assert record.status == SchedulerStatus.RUNNING

    def test_always_refreshes_updated_at(self, controls: SchedulerControlStore, store) -> None:
        controls.upsert_control("umf", {"enabled": True})
        first = store.get(CONTROL_COLLECTION, "umf")["updated_at"]
        store.upsert_merge(CONTROL_COLLECTION, "umf", {"updated_at": "2000-01-01T00:00:00+00:00"})
        controls.upsert_control("umf", {})
        second = store.get(CONTROL_COLLECTION, "umf")["updated_at"]
        assert second != "2000-01-01T00:00:00+00:00"
        assert parse_ts(second) >= parse_ts(first)

    def test_rejects_unknown_field(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(InvalidControlField):
            controls.upsert_control("umf", {"colour": "blue"})

    def test_rejects_bad_status(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(InvalidControlField):
            controls.upsert_control("umf", {"status": "sleeping"})

    def test_rejects_non_bool_enabled(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(InvalidControlField):
            controls.upsert_control("umf", {"enabled": "yes"})

    def test_missing_record_defaults(self, controls: SchedulerControlStore) -> None:
        record = controls.get_control("umf")
        assert record == ControlRecord(id="umf", enabled=False, status=SchedulerStatus.STOPPED)

    def test_disabled_reads_as_stopped(self, controls: SchedulerControlStore) -> None:
        # An in-flight run finishing after the operator disabled the job
        controls.upsert_control("umf", {"enabled": False, "status": "success"})
        assert controls.get_control("umf").status == SchedulerStatus.STOPPED

    def test_store_failure_propagates(self, controls: SchedulerControlStore, store) -> None:
        store.broken.add((CONTROL_COLLECTION, "umf"))
        with pytest.raises(StoreUnavailable):
            controls.get_control("umf")


# ── set_enabled ──────────────────────────────────────────────────────────────


class TestSetEnabled:
    @pytest.mark.parametrize("prior", ["ready", "running", "success", "error", "stopped"])
    def test_disable_always_stops(self, controls: SchedulerControlStore, prior: str) -> None:
        controls.upsert_control("news", {"enabled": True, "status": prior})
        controls.set_enabled("news", False)
        record = controls.get_control("news")
        assert record.enabled is False
        assert record.status == SchedulerStatus.STOPPED

    def test_enable_from_stopped_is_ready(self, controls: SchedulerControlStore) -> None:
        controls.set_enabled("umf", False)
        record = controls.set_enabled("umf", True)
        assert record.enabled is True
        assert record.status == SchedulerStatus.READY

    def test_enable_keeps_last_outcome(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("umf", {"enabled": True, "status": "success"})
        assert controls.set_enabled("umf", True).status == SchedulerStatus.SUCCESS

    def test_writes_audit_event(self, controls: SchedulerControlStore) -> None:
        controls.set_enabled("umf", False, actor="Admin Dashboard")
        events = controls.recent_events("umf")
        assert len(events) == 1
        assert events[0].message == "Automation DISABLED via Admin Dashboard"
        assert events[0].type == EventType.INFO

    def test_audit_failure_keeps_toggle(self, controls: SchedulerControlStore, store) -> None:
        controls.initialize()
        store.broken_adds.add(AUDIT_COLLECTION)
        record = controls.set_enabled("umf", False)
        assert record.status == SchedulerStatus.STOPPED
        assert controls.get_control("umf").enabled is False


# ── record_run_outcome ───────────────────────────────────────────────────────


class TestRecordRunOutcome:
    @pytest.mark.parametrize("outcome", [RunOutcome.SUCCESS, RunOutcome.ERROR])
    def test_timestamp_never_decreases(self, controls: SchedulerControlStore, outcome: RunOutcome) -> None:
        controls.upsert_control("umf", {"enabled": True})
        seen = []
        for _ in range(3):
            record = controls.record_run_outcome("umf", outcome)
            seen.append(parse_ts(record.last_run_timestamp))
        assert seen == sorted(seen)
        assert all(ts is not None for ts in seen)

    def test_overlapping_outcomes_never_roll_back(self) -> None:
        store = InterleavingStore()
        controls = SchedulerControlStore(store, ("umf", "news"))
        controls.upsert_control("umf", {"enabled": True})

        later = {}
        # The first writer computes its timestamp, then a second run lands before it writes
        store.before_write = lambda: later.update(
            record=controls.record_run_outcome("umf", RunOutcome.ERROR, "manual_2", "API Down"),
        )
        controls.record_run_outcome("umf", RunOutcome.SUCCESS, "run_1")

        final = controls.get_control("umf")
        assert final.last_run_timestamp == later["record"].last_run_timestamp
        assert parse_ts(final.last_success_timestamp) <= parse_ts(final.last_run_timestamp)

    def test_upsert_cannot_move_timestamp_back(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("umf", {"last_run_timestamp": "2025-06-01T00:00:00+00:00"})
        record = controls.upsert_control("umf", {"last_run_timestamp": "2025-01-01T00:00:00Z"})
        assert record.last_run_timestamp == "2025-06-01T00:00:00+00:00"

    def test_future_timestamp_not_rolled_back(self, controls: SchedulerControlStore) -> None:
        future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        controls.upsert_control("umf", {"enabled": True, "last_run_timestamp": future})
        record = controls.record_run_outcome("umf", "error", error="boom")
        assert parse_ts(record.last_run_timestamp) >= parse_ts(future)

    def test_error_advances_attempt_not_success(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("umf", {"enabled": True})
        ok = controls.record_run_outcome("umf", RunOutcome.SUCCESS, run_id="run_1")
        failed = controls.record_run_outcome("umf", RunOutcome.ERROR, run_id="run_2", error="API Down")

        assert failed.status == SchedulerStatus.ERROR
        assert failed.last_error == "API Down"
        assert failed.last_run_id == "run_2"
        assert failed.last_success_timestamp == ok.last_success_timestamp
        assert parse_ts(failed.last_run_timestamp) >= parse_ts(ok.last_run_timestamp)

    def test_success_clears_error(self, controls: SchedulerControlStore) -> None:
        controls.upsert_control("umf", {"enabled": True})
        controls.record_run_outcome("umf", RunOutcome.ERROR, error="API Down")
        record = controls.record_run_outcome("umf", RunOutcome.SUCCESS)
        assert record.last_error is None
        assert record.status == SchedulerStatus.SUCCESS

    def test_invalid_outcome(self, controls: SchedulerControlStore) -> None:
        with pytest.raises(ValueError):
            controls.record_run_outcome("umf", "partial")


# ── Provisioning ─────────────────────────────────────────────────────────────


class TestInitialize:
    def test_creates_enabled_ready_records(self, controls: SchedulerControlStore) -> None:
        records = controls.initialize()
        assert [r.id for r in records] == ["umf", "news"]
        assert all(r.enabled and r.status == SchedulerStatus.READY for r in records)

    def test_keeps_operator_disable(self, controls: SchedulerControlStore) -> None:
        controls.initialize()
        controls.set_enabled("news", False)
        controls.initialize()
        assert controls.get_control("news").enabled is False
        assert controls.get_control("umf").enabled is True

    def test_force_reenables(self, controls: SchedulerControlStore) -> None:
        controls.initialize()
        controls.set_enabled("news", False)
        controls.initialize(force=True)
        record = controls.get_control("news")
        assert record.enabled is True
        assert record.status == SchedulerStatus.READY

    def test_keeps_run_history(self, controls: SchedulerControlStore) -> None:
        controls.initialize()
        done = controls.record_run_outcome("umf", RunOutcome.SUCCESS, run_id="run_9")
        controls.initialize(force=True)
        assert controls.get_control("umf").last_run_timestamp == done.last_run_timestamp


# ── Audit log ────────────────────────────────────────────────────────────────


class TestAuditLog:
    def test_recent_events_newest_first_and_scoped(self, controls: SchedulerControlStore, store) -> None:
        store.add(AUDIT_COLLECTION, {"scheduler": "umf", "type": "info", "message": "old",
                                     "timestamp": "2025-01-01T00:00:00+00:00"})
        store.add(AUDIT_COLLECTION, {"scheduler": "umf", "type": "success", "message": "new",
                                     "timestamp": "2025-01-02T00:00:00+00:00"})
        store.add(AUDIT_COLLECTION, {"scheduler": "news", "type": "error", "message": "other",
                                     "timestamp": "2025-01-03T00:00:00+00:00"})

        events = controls.recent_events("umf")
        assert [e.message for e in events] == ["new", "old"]

    def test_limit(self, controls: SchedulerControlStore) -> None:
        for i in range(15):
            controls.log_event("news", EventType.INFO, f"event {i}")
        assert len(controls.recent_events("guru", limit=10)) == 10

    def test_tolerates_sparse_documents(self, controls: SchedulerControlStore, store) -> None:
        store.add(AUDIT_COLLECTION, {"scheduler": "umf", "type": "weird"})
        event = controls.recent_events("umf")[0]
        assert event.message == "No message"
        assert event.type == EventType.INFO
