from __future__ import annotations

import asyncio
import sys
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

# Add services/analytics_jobs to PYTHONPATH so tests can import analytics_jobs/*
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from analytics_jobs import models, snapshots, store as redis_store  # noqa: E402
from analytics_jobs.connection import ConnectionManager  # noqa: E402
from analytics_jobs.event_log import EventLogger  # noqa: E402
from analytics_jobs.exceptions import BrokerConnectionError  # noqa: E402
from analytics_jobs.models import Job, JobStatus  # noqa: E402


class FakeRedisClient:
    """Stands in for redis.asyncio.Redis as far as the ConnectionManager cares."""

    def __init__(self, outcomes: Optional[List[bool]] = None, healthy: bool = True) -> None:
        self.outcomes = list(outcomes or [])
        self.healthy = healthy
        self.pings = 0
        self.closed = False

    async def ping(self) -> bool:
        self.pings += 1
        ok = self.outcomes.pop(0) if self.outcomes else self.healthy
        if not ok:
            raise RedisConnectionError("Connection refused")
        return True

    async def aclose(self) -> None:
        self.closed = True


class MemoryJobStore:
    """In-memory broker with the same dedup and retry rules as RedisJobStore."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Job] = {}
        self.queue: Deque[str] = deque()
        self.add_errors = 0
        self.claim_errors = 0

    async def add(self, job: Job) -> bool:
        if self.add_errors:
            self.add_errors -= 1
            raise BrokerConnectionError("Connection reset by peer")
        existing = self.jobs.get(job.id)
        if existing is not None and existing.outstanding:
            return False
        self.jobs[job.id] = job
        self.queue.append(job.id)
        return True

    async def claim(self, timeout: float = 1.0) -> Optional[Job]:
        if self.claim_errors:
            self.claim_errors -= 1
            raise BrokerConnectionError("Connection reset by peer")
        t = models.now()
        for job in self.jobs.values():
            if job.status is JobStatus.WAITING and job.run_at is not None and job.run_at <= t and job.id not in self.queue:
                self.queue.append(job.id)
        if not self.queue:
            await asyncio.sleep(min(timeout, 0.001))
            return None
        job = self.jobs[self.queue.popleft()]
        if job.status is not JobStatus.WAITING:
            return None
        job.mark_active()
        return job

    async def complete(self, job: Job, result: Dict[str, Any]) -> Job:
        job.mark_completed(result)
        return job

    async def fail(self, job: Job, error: str) -> Job:
        job.mark_failed(error)
        return job


class FakeProcessor:
    """Records calls and concurrency; fails the first `fail_times` calls."""

    def __init__(
        self,
        fail_times: int = 0,
        always_fail: bool = False,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.delay = delay
        self.gate = gate
        self.calls: List[tuple] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, payload: Dict[str, Any], job_id: Optional[str] = None) -> int:
        self.calls.append((payload, job_id))
        n = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.always_fail or n <= self.fail_times:
                raise RuntimeError(f"GitHub API error on call {n}")
            return n
        finally:
            self.active -= 1


class FakeFetcher:
    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self.data = data or {"stars": 42, "followers": 7, "following": 3, "public_repos": 9, "language_stats": {"Python": 5}}
        self.fetched: List[str] = []

    async def fetch(self, subject_key: str) -> Dict[str, Any]:
        self.fetched.append(subject_key)
        return dict(self.data)


class Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


async def fast_sleep(_: float) -> None:
    await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> Clock:
    c = Clock()
    for module in (models, redis_store, snapshots):
        monkeypatch.setattr(module, "now", c)
    return c


@pytest.fixture
def event_log(tmp_path) -> EventLogger:
    return EventLogger(path=str(tmp_path / "events.jsonl"), fmt="json", enabled=True)


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest_asyncio.fixture
async def ready_connection():
    conn = ConnectionManager(FakeRedisClient(), health_check_interval_s=60, sleep=fast_sleep)
    conn.start()
    assert await conn.wait_ready(timeout=1.0)
    yield conn
    await conn.close()
