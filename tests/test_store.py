"""Tests for the document stores (SQLite + in-memory)."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from pulse.control.errors import StoreUnavailable
from pulse.control.store import (
    MEMORY_URL,
    MemoryDocumentStore,
    SqliteDocumentStore,
    open_store,
)


@pytest.fixture(params=["sqlite", "memory"])
def doc_store(request, tmp_path: Path):
    if request.param == "sqlite":
        return SqliteDocumentStore(tmp_path / "docs.db")
    return MemoryDocumentStore()


class TestDocumentStore:
    def test_get_missing_returns_none(self, doc_store) -> None:
        assert doc_store.get("scheduler_control", "umf") is None

    def test_upsert_creates_then_merges(self, doc_store) -> None:
        doc_store.upsert_merge("scheduler_control", "umf", {"enabled": True, "status": "ready"})
        merged = doc_store.upsert_merge("scheduler_control", "umf", {"status": "running"})
        assert merged == {"enabled": True, "status": "running"}
        assert doc_store.get("scheduler_control", "umf") == {"enabled": True, "status": "running"}

    def test_add_and_count(self, doc_store) -> None:
        ids = {doc_store.add("guruDigest", {"title": f"t{i}"}) for i in range(3)}
        assert len(ids) == 3
        assert doc_store.count("guruDigest") == 3
        assert doc_store.count("econEvents") == 0

    def test_query_filters_orders_and_limits(self, doc_store) -> None:
        doc_store.add("log", {"scheduler": "umf", "timestamp": "2025-01-01T00:00:00+00:00"})
        doc_store.add("log", {"scheduler": "news", "timestamp": "2025-01-03T00:00:00+00:00"})
        doc_store.add("log", {"scheduler": "umf", "timestamp": "2025-01-02T00:00:00+00:00"})

        rows = doc_store.query("log", where={"scheduler": "umf"}, order_by="timestamp", limit=5)
        assert [r["timestamp"][:10] for r in rows] == ["2025-01-02", "2025-01-01"]

        oldest = doc_store.query("log", order_by="timestamp", descending=False, limit=1)
        assert oldest[0]["timestamp"].startswith("2025-01-01")

    def test_query_without_order_uses_insertion(self, doc_store) -> None:
        doc_store.add("log", {"n": 1})
        doc_store.add("log", {"n": 2})
        assert [r["n"] for r in doc_store.query("log")] == [2, 1]

    def test_delete(self, doc_store) -> None:
        doc_store.upsert_merge("locks", "umf_lock", {"expires_at": 1})
        assert doc_store.delete("locks", "umf_lock") is True
        assert doc_store.delete("locks", "umf_lock") is False

    def test_lease_lock(self, doc_store) -> None:
        assert doc_store.try_acquire("locks", "umf_lock", 60) is True
        assert doc_store.try_acquire("locks", "umf_lock", 60) is False
        assert doc_store.try_acquire("locks", "news_lock", 60) is True

    def test_expired_lease_can_be_retaken(self, doc_store) -> None:
        assert doc_store.try_acquire("locks", "umf_lock", -1) is True
        assert doc_store.try_acquire("locks", "umf_lock", 60) is True

    def test_merge_max_keeps_larger_value(self, doc_store) -> None:
        doc_store.upsert_merge("c", "d", {"ts": "2025-01-02", "n": 1})
        merged = doc_store.upsert_merge_max("c", "d", {"ts": "2025-01-01", "n": 2}, ("ts",))
        assert merged == {"ts": "2025-01-02", "n": 2}
        merged = doc_store.upsert_merge_max("c", "d", {"ts": "2025-01-03"}, ("ts",))
        assert doc_store.get("c", "d") == merged == {"ts": "2025-01-03", "n": 2}

    def test_merge_max_uses_key(self, doc_store) -> None:
        doc_store.upsert_merge("c", "d", {"v": "10"})
        merged = doc_store.upsert_merge_max("c", "d", {"v": "9"}, ("v",), key=int)
        assert merged["v"] == "10"

    def test_returned_documents_are_copies(self, doc_store) -> None:
        doc_store.upsert_merge("c", "d", {"items": [1]})
        doc = doc_store.get("c", "d")
        doc["items"].append(2)
        assert doc_store.get("c", "d") == {"items": [1]}


class TestSqliteFailures:
    def test_io_error_becomes_store_unavailable(self, tmp_path: Path, monkeypatch) -> None:
        store = SqliteDocumentStore(tmp_path / "docs.db")

        def broken_connect():
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_connect", broken_connect)
        with pytest.raises(StoreUnavailable):
            store.get("scheduler_control", "umf")
        with pytest.raises(StoreUnavailable):
            store.upsert_merge("scheduler_control", "umf", {"enabled": True})

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        SqliteDocumentStore(tmp_path / "docs.db").upsert_merge("c", "d", {"x": 1})
        assert SqliteDocumentStore(tmp_path / "docs.db").get("c", "d") == {"x": 1}


class TestOpenStore:
    def test_memory_url(self) -> None:
        assert isinstance(open_store(MEMORY_URL), MemoryDocumentStore)

    def test_path(self, tmp_path: Path) -> None:
        store = open_store(tmp_path / "nested" / "control.db")
        assert isinstance(store, SqliteDocumentStore)
        assert (tmp_path / "nested" / "control.db").exists()
