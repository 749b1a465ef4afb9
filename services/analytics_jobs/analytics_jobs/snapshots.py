from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from .models import now

log = logging.getLogger("analytics.snapshots")

SCHEMA = """
CREATE TABLE IF NOT EXISTS analytics_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    requester_id TEXT NOT NULL,
    subject_key TEXT NOT NULL,
    stars INTEGER NOT NULL DEFAULT 0,
    forks INTEGER NOT NULL DEFAULT 0,
    followers INTEGER NOT NULL DEFAULT 0,
    following INTEGER NOT NULL DEFAULT 0,
    public_repos INTEGER NOT NULL DEFAULT 0,
    total_commits INTEGER NOT NULL DEFAULT 0,
    contribution_count INTEGER NOT NULL DEFAULT 0,
    language_stats TEXT NOT NULL DEFAULT '{}',
    snapshot_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_requester ON analytics_snapshots(requester_id, snapshot_at);
"""

COLUMNS = ("stars", "forks", "followers", "following", "public_repos", "total_commits", "contribution_count")


class SqliteSnapshotStore:
    """Append-only snapshot table. Every create inserts a new row."""

    def __init__(self, path: str = "analytics.db") -> None:
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA)

    async def create_snapshot(self, requester_id: str, subject_key: str, data: Dict[str, Any]) -> int:
        return await asyncio.to_thread(self._insert, requester_id, subject_key, data)

    async def get_latest(self, requester_id: str, subject_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._latest, requester_id, subject_key)

    async def delete_older_than(self, days: int = 365) -> int:
        return await asyncio.to_thread(self._delete_older_than, days)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _insert(self, requester_id: str, subject_key: str, data: Dict[str, Any]) -> int:
        values = [int(data.get(c) or 0) for c in COLUMNS]
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"INSERT INTO analytics_snapshots "
                f"(requester_id, subject_key, {', '.join(COLUMNS)}, language_stats, snapshot_at) "
                f"VALUES (?, ?, {', '.join('?' for _ in COLUMNS)}, ?, ?)",
                (requester_id, subject_key, *values, json.dumps(data.get("language_stats") or {}), now()),
            )
            return int(cur.lastrowid)

    def _latest(self, requester_id: str, subject_key: Optional[str]) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM analytics_snapshots WHERE requester_id = ?"
        params: list = [requester_id]
        if subject_key:
            sql += " AND subject_key = ?"
            params.append(subject_key)
        sql += " ORDER BY snapshot_at DESC, id DESC LIMIT 1"
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        snapshot = dict(row)
        snapshot["language_stats"] = json.loads(snapshot.get("language_stats") or "{}")
        return snapshot

    def _delete_older_than(self, days: int) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM analytics_snapshots WHERE snapshot_at < ?",
                (now() - days * 86400,),
            )
            return cur.rowcount


async def snapshot_cleanup_loop(
    snapshots: SqliteSnapshotStore,
    retention_days: int = 365,
    interval_s: float = 7 * 86400.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Delete snapshots past the retention window every `interval_s` until cancelled."""

    while True:
        await sleep(interval_s)
        try:
            deleted = await snapshots.delete_older_than(retention_days)
        except sqlite3.Error as exc:
            log.error("snapshot cleanup failed: %s", exc, extra={"event": "snapshot_cleanup_failed", "error": str(exc)})
            continue
        log.info(
            "snapshot cleanup removed %s rows older than %s days",
            deleted,
            retention_days,
            extra={"event": "snapshot_cleanup"},
        )
