"""Health probes: DB connectivity, CRM integration, data freshness counts.

Each probe either returns its slot payload or raises. The aggregator decides
what a failure looks like in the snapshot; probes never swallow errors.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from ..config import Settings
from ..control.errors import ProbeFailure
from ..control.store import DocumentStore

logger = logging.getLogger(__name__)

NEWS_COLLECTION = "guruDigest"
EVENTS_COLLECTION = "econEvents"
UMF_LIVE_COLLECTION = "umf_snapshot_live"
UMF_LIVE_DOC = "latest"
UMF_CACHE_KEY = "umf:snapshot"


# ── UMF snapshot cache ───────────────────────────────────────────────────────


@dataclass
class _CacheEntry:
    value: Any
    at: float
    ttl: float


class SnapshotCache:
    """TTL cache for hot market data; expired entries read as missing."""

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get_fresh(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if time.monotonic() - entry.at < entry.ttl:
            return entry.value
        return None

    def set_fresh(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, at=time.monotonic(), ttl=ttl)


def hydrate_umf_cache(store: DocumentStore, cache: SnapshotCache, ttl: float) -> int:
    """Copy the live UMF snapshot from the store into the cache. Returns asset count."""
    snapshot = store.get(UMF_LIVE_COLLECTION, UMF_LIVE_DOC)
    if not snapshot:
        logger.warning("[Cache] UMF snapshot missing in store")
        return 0
    cache.set_fresh(UMF_CACHE_KEY, snapshot, ttl)
    assets = len(snapshot.get("assets") or [])
    logger.info("[Cache] UMF updated: %d assets, TS: %s", assets, snapshot.get("timestamp_utc"))
    return assets


# ── Probes ───────────────────────────────────────────────────────────────────


def probe_database(app_db_path: str | Path) -> dict[str, Any]:
    """Relational app DB: connectivity + user count."""
    path = Path(app_db_path)
    if not path.exists():
        raise ProbeFailure(f"Database not found: {path}")
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=2.0)
        try:
            row = conn.execute("SELECT COUNT(*) FROM users").fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise ProbeFailure(f"Database error: {e}") from e
    return {"status": "connected", "userCount": int(row[0]), "error": None}


async def probe_zoho(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """Exchange the Zoho refresh token for an access token."""
    if not settings.zoho_client_id:
        return {"status": "not_configured", "authenticated": False, "error": "Missing Client ID"}

    params = {
        "refresh_token": settings.zoho_refresh_token,
        "client_id": settings.zoho_client_id,
        "client_secret": settings.zoho_client_secret,
        "grant_type": "refresh_token",
    }
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        resp = await client.post(settings.zoho_accounts_url, params=params)

    if resp.status_code != 200:
        raise ProbeFailure(f"Zoho token endpoint returned {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as e:
        raise ProbeFailure("Zoho token endpoint returned non-JSON body") from e
    if not isinstance(body, dict) or "access_token" not in body:
        detail = body.get("error") if isinstance(body, dict) else None
        raise ProbeFailure(f"Zoho token exchange failed: {detail or 'no access_token'}")
    return {"status": "connected", "authenticated": True, "error": None}


def count_umf(store: DocumentStore, cache: SnapshotCache) -> dict[str, Any]:
    """UMF freshness: in-memory cache vs. stored live snapshot."""
    cached = cache.get_fresh(UMF_CACHE_KEY) or {}
    live = store.get(UMF_LIVE_COLLECTION, UMF_LIVE_DOC) or {}
    return {
        "cache_assets": len(cached.get("assets") or []),
        "firestore_assets": len(live.get("assets") or []),
        "last_update": live.get("timestamp_utc"),
    }


def _count_dated(store: DocumentStore, collection: str) -> dict[str, Any]:
    latest = store.query(collection, order_by="date", descending=True, limit=1)
    return {
        "total_entries": store.count(collection),
        "last_update": latest[0].get("date") if latest else None,
    }


def count_news(store: DocumentStore) -> dict[str, Any]:
    return _count_dated(store, NEWS_COLLECTION)


def count_events(store: DocumentStore) -> dict[str, Any]:
    return _count_dated(store, EVENTS_COLLECTION)


def secrets_status(settings: Settings) -> dict[str, bool]:
    """Which secrets are configured - presence only, never values."""
    return {
        "DATABASE_URL": bool(settings.database_url),
        "FB_PROJECT_ID": bool(settings.fb_project_id),
        "FB_CLIENT_EMAIL": bool(settings.fb_client_email),
        "FB_PRIVATE_KEY": bool(settings.fb_private_key),
        "ZOHO_CLIENT_ID": bool(settings.zoho_client_id),
        "COINGECKO_KEY": bool(settings.coingecko_api_key),
        "ADMIN_TOKEN": bool(settings.admin_token),
    }
