"""Document storage for the control plane: SQLite-backed with an in-memory twin.

Documents are JSON objects addressed by (collection, id), mirroring the
Firestore layout the admin app grew up on:

  scheduler_control/{job_id}     - control records
  scheduler_audit_log/{auto_id}  - audit events
  locks/{name}                   - run leases
  guruDigest, econEvents, umf_snapshot_live - data the health probes count
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from itertools import count as _counter
from pathlib import Path
from typing import Any, Protocol

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


class DocumentStore(Protocol):
    """Minimal store interface shared by the runner, admin API and health probes."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def upsert_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    def upsert_merge_max(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        monotonic_keys: Iterable[str],
        key: Callable[[Any], Any] | None = None,
    ) -> dict[str, Any]: ...

    def add(self, collection: str, data: dict[str, Any]) -> str: ...

    def delete(self, collection: str, doc_id: str) -> bool: ...

    def count(self, collection: str) -> int: ...

    def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def try_acquire(self, collection: str, doc_id: str, lease_seconds: float) -> bool: ...

    def close(self) -> None: ...


def _merge(
    current: dict[str, Any],
    fields: dict[str, Any],
    monotonic_keys: Iterable[str],
    key: Callable[[Any], Any] | None,
) -> dict[str, Any]:
    merged = {**current, **fields}
    for name in monotonic_keys:
        if name not in fields or current.get(name) is None:
            continue
        old = key(current[name]) if key else current[name]
        new = key(fields[name]) if key else fields[name]
        if old is not None and (new is None or old > new):
            merged[name] = current[name]
    return merged


# ── SQLite ───────────────────────────────────────────────────────────────────


class SqliteDocumentStore:
    """SQLite-backed document store. Every sqlite3 error surfaces as StoreUnavailable."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _tx(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open {self._db_path}: {e}") from e
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(f"Store error on {self._db_path}: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection  TEXT NOT NULL,
                    id          TEXT NOT NULL,
                    data        TEXT NOT NULL DEFAULT '{}',
                    created_at  REAL NOT NULL,
                    PRIMARY KEY (collection, id)
                );

                CREATE INDEX IF NOT EXISTS idx_documents_collection
                    ON documents (collection, created_at DESC);
            """)

    @staticmethod
    def _load(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        try:
            data = json.loads(row["data"])
        except (TypeError, ValueError):
            logger.warning("Corrupt document payload - treating as empty")
            data = {}
        return data if isinstance(data, dict) else {}

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        return self._load(row)

    def upsert_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge ``fields`` into the document, creating it if absent."""
        return self.upsert_merge_max(collection, doc_id, fields, ())

    def upsert_merge_max(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        monotonic_keys: Iterable[str],
        key: Callable[[Any], Any] | None = None,
    ) -> dict[str, Any]:
        """Merge write where ``monotonic_keys`` keep the larger of stored and new value.

        The compare runs inside the write transaction, so concurrent writers
        cannot move those fields backwards.
        """
        with self._tx(immediate=True) as conn:
            row = conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            current = _merge(self._load(row) or {}, fields, monotonic_keys, key)
            if row is None:
                conn.execute(
                    "INSERT INTO documents (collection, id, data, created_at) VALUES (?, ?, ?, ?)",
                    (collection, doc_id, json.dumps(current), time.time()),
                )
            else:
                conn.execute(
                    "UPDATE documents SET data = ? WHERE collection = ? AND id = ?",
                    (json.dumps(current), collection, doc_id),
                )
        return current

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO documents (collection, id, data, created_at) VALUES (?, ?, ?, ?)",
                (collection, doc_id, json.dumps(data), time.time()),
            )
        return doc_id

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._tx() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
        return cursor.rowcount > 0

    def count(self, collection: str) -> int:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,),
            ).fetchone()
        return int(row["n"])

    def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Equality filters on top-level fields, optional ordering by one field."""
        sql = "SELECT data FROM documents WHERE collection = ?"
        params: list[Any] = [collection]
        for key, value in (where or {}).items():
            sql += " AND json_extract(data, ?) = ?"
            params.extend([f"$.{key}", value])
        direction = "DESC" if descending else "ASC"
        if order_by:
            sql += f" ORDER BY json_extract(data, ?) {direction}, created_at {direction}, rowid {direction}"
            params.append(f"$.{order_by}")
        else:
            sql += f" ORDER BY created_at {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [d for d in (self._load(r) for r in rows) if d is not None]

    def try_acquire(self, collection: str, doc_id: str, lease_seconds: float) -> bool:
        """Take a lease unless an unexpired one is held."""
        now = time.time()
        with self._tx(immediate=True) as conn:
            row = conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            held = self._load(row)
            if held and float(held.get("expires_at", 0)) > now:
                return False
            payload = json.dumps({"acquired_at": now, "expires_at": now + lease_seconds})
            conn.execute(
                "INSERT OR REPLACE INTO documents (collection, id, data, created_at) VALUES (?, ?, ?, ?)",
                (collection, doc_id, payload, now),
            )
        return True

    def close(self) -> None:
        # Connections are per-operation; nothing held open.
        pass


# ── In-memory ────────────────────────────────────────────────────────────────


class MemoryDocumentStore:
    """Process-local document store with the same semantics as the SQLite one."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, tuple[int, dict[str, Any]]]] = {}
        self._seq = _counter()
        self._lock = threading.Lock()

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._docs.get(collection, {}).get(doc_id)
            return json.loads(json.dumps(entry[1])) if entry else None

    def upsert_merge(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self.upsert_merge_max(collection, doc_id, fields, ())

    def upsert_merge_max(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        monotonic_keys: Iterable[str],
        key: Callable[[Any], Any] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            coll = self._docs.setdefault(collection, {})
            seq, current = coll.get(doc_id, (next(self._seq), {}))
            merged = _merge(current, json.loads(json.dumps(fields)), monotonic_keys, key)
            coll[doc_id] = (seq, merged)
            return dict(merged)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        with self._lock:
            self._docs.setdefault(collection, {})[doc_id] = (
                next(self._seq), json.loads(json.dumps(data)),
            )
        return doc_id

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._docs.get(collection, {}).pop(doc_id, None) is not None

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._docs.get(collection, {}))

    def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            entries = list(self._docs.get(collection, {}).values())

        where = where or {}
        matched = [
            (seq, doc) for seq, doc in entries
            if all(doc.get(k) == v for k, v in where.items())
        ]
        if order_by:
            # Missing values sort lowest, like SQL NULLs
            matched.sort(
                key=lambda e: (e[1].get(order_by) is not None, e[1].get(order_by) or "", e[0]),
                reverse=descending,
            )
        else:
            matched.sort(key=lambda e: e[0], reverse=descending)
        docs = [json.loads(json.dumps(doc)) for _, doc in matched]
        return docs[:limit] if limit is not None else docs

    def try_acquire(self, collection: str, doc_id: str, lease_seconds: float) -> bool:
        now = time.time()
        with self._lock:
            coll = self._docs.setdefault(collection, {})
            held = coll.get(doc_id)
            if held and float(held[1].get("expires_at", 0)) > now:
                return False
            coll[doc_id] = (next(self._seq), {"acquired_at": now, "expires_at": now + lease_seconds})
            return True

    def close(self) -> None:
        return None


def open_store(location: str | Path) -> DocumentStore:
    """Open a store from a path, or ``memory://`` for an in-process one."""
    if str(location) == MEMORY_URL:
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    logger.info("Using SQLite document store at %s", location)
    return SqliteDocumentStore(location)
