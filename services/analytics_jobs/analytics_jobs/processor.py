from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

log = logging.getLogger("analytics.processor")


class ProfileFetcher(Protocol):
    async def fetch(self, subject_key: str) -> Dict[str, Any]: ...


class SnapshotStore(Protocol):
    async def create_snapshot(self, requester_id: str, subject_key: str, data: Dict[str, Any]) -> int: ...


class AnalyticsProcessor:
    """
    The unit of work behind every analytics job: fetch the subject's profile,
    then store it as a new snapshot row.

    The same instance serves the worker pool and the inline fallback. It never
    retries and lets fetch/persistence errors through untouched.
    """

    def __init__(self, fetcher: ProfileFetcher, snapshots: SnapshotStore) -> None:
        self.fetcher = fetcher
        self.snapshots = snapshots

    async def __call__(self, payload: Dict[str, Any], job_id: Optional[str] = None) -> int:
        requester_id = payload["requester_id"]
        subject_key = payload["subject_key"]
        origin = f"job {job_id}" if job_id else "inline"

        log.info("fetching profile for %s (%s)", subject_key, origin, extra={"job_id": job_id})
        data = await self.fetcher.fetch(subject_key)
        snapshot_id = await self.snapshots.create_snapshot(requester_id, subject_key, data)
        log.info(
            "stored snapshot %s for %s (%s)",
            snapshot_id,
            subject_key,
            origin,
            extra={"event": "snapshot_stored", "job_id": job_id, "snapshot_id": snapshot_id},
        )
        return snapshot_id
