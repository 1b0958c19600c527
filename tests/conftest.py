"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from pulse.config import Settings
from pulse.control.errors import StoreUnavailable
from pulse.control.service import SchedulerControlStore
from pulse.control.store import MemoryDocumentStore
from pulse.health.aggregator import HealthAggregator


class FlakyStore(MemoryDocumentStore):
    """Memory store that fails reads of chosen documents and appends to chosen collections."""

    def __init__(self) -> None:
        super().__init__()
        self.broken: set[tuple[str, str]] = set()
        self.broken_adds: set[str] = set()

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        if (collection, doc_id) in self.broken:
            raise StoreUnavailable(f"{collection}/{doc_id} unreachable")
        return super().get(collection, doc_id)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        if collection in self.broken_adds:
            raise StoreUnavailable(f"{collection} not writable")
        return super().add(collection, data)


@pytest.fixture
def app_db(tmp_path: Path) -> Path:
    """Relational app DB with three users."""
    path = tmp_path / "app.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)")
    conn.executemany("INSERT INTO users (email) VALUES (?)", [("a@x.io",), ("b@x.io",), ("c@x.io",)])
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def settings(tmp_path: Path, app_db: Path) -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        control_db_path=str(tmp_path / "control.db"),
        app_db_path=str(app_db),
        admin_token="",
        zoho_client_id="",
        health_timeout_seconds=2.0,
    )


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def controls(store: FlakyStore) -> SchedulerControlStore:
    return SchedulerControlStore(store, ("umf", "news"), {"guru": "news"})


@pytest.fixture
def aggregator(
    controls: SchedulerControlStore, store: FlakyStore, settings: Settings,
) -> Generator[HealthAggregator, None, None]:
    agg = HealthAggregator(controls, store, settings)
    yield agg
    agg.close()
