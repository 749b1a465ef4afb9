import asyncio
import csv
import json
import sqlite3

import httpx
import pytest
from pydantic import ValidationError

from analytics_jobs.config import Settings
from analytics_jobs.event_log import EventLogger
from analytics_jobs.github import GitHubProfileFetcher
from analytics_jobs.models import JobStatus
from analytics_jobs.snapshots import SqliteSnapshotStore, snapshot_cleanup_loop


def test_settings_from_env():
    settings = Settings.from_env(
        {
            "REDIS_HOST": "redis.internal",
            "REDIS_TLS": "true",
            "REDIS_CONNECT_TIMEOUT_MS": "2500",
            "REDIS_MAX_RECONNECT_ATTEMPTS": "0",
            "WORKER_CONCURRENCY": "8",
            "JOB_MAX_ATTEMPTS": "3",
            "JOB_TIMEOUT_MS": "0",
            "SHUTDOWN_TIMEOUT_MS": "10000",
        }
    )
    assert settings.redis.host == "redis.internal"
    assert settings.redis.tls is True
    assert settings.redis.connect_timeout_s == 2.5
    assert settings.redis.max_reconnect_attempts == 0
    assert settings.worker.concurrency == 8
    assert settings.worker.retry.max_attempts == 3
    assert settings.worker.retry.backoff_delay_ms == 2000
    assert settings.worker.job_timeout_s is None
    assert settings.worker.shutdown_timeout_s == 10.0


def test_settings_reject_bad_values():
    with pytest.raises(ValidationError):
        Settings.from_env({"WORKER_CONCURRENCY": "0"})


@pytest.mark.parametrize(
    "key,value",
    [
        ("JOB_TIMEOUT_MS", "soon"),
        ("REDIS_PORT", "redis"),
        ("REDIS_TLS", "maybe"),
        ("REDIS_CONNECT_TIMEOUT_MS", "ten"),
        ("JOB_MAX_ATTEMPTS", "five"),
        ("SNAPSHOT_STALE_AFTER_S", "hourly"),
    ],
)
def test_settings_report_unparseable_values_as_validation_errors(key, value):
    with pytest.raises(ValidationError):
        Settings.from_env({key: value})


def test_stall_window_must_outlast_job_timeout():
    with pytest.raises(ValidationError):
        Settings.from_env({"JOB_TIMEOUT_MS": "120000", "JOB_STALL_AFTER_MS": "60000"})
    assert Settings.from_env({"JOB_TIMEOUT_MS": "0", "JOB_STALL_AFTER_MS": "60000"}).worker.stall_after_s == 60.0


@pytest.mark.asyncio
async def test_github_fetcher_summarizes_profile():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/users/octocat":
            return httpx.Response(200, json={"followers": 10, "following": 2, "public_repos": 3})
        if request.url.path == "/users/octocat/repos":
            assert request.url.params["per_page"] == "100"
            return httpx.Response(
                200,
                json=[
                    {"stargazers_count": 5, "forks_count": 1, "language": "Python"},
                    {"stargazers_count": 2, "forks_count": 0, "language": "Go"},
                    {"stargazers_count": 1, "forks_count": 2, "language": "Python"},
                    {"stargazers_count": 0, "forks_count": 0, "language": None},
                ],
            )
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.github.test")
    fetcher = GitHubProfileFetcher(client=client)

    data = await fetcher.fetch("octocat")

    assert data["stars"] == 8
    assert data["forks"] == 3
    assert data["followers"] == 10
    assert data["language_stats"] == {"Python": 2, "Go": 1}
    await client.aclose()


@pytest.mark.asyncio
async def test_github_fetcher_propagates_http_errors():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(403)),
        base_url="https://api.github.test",
    )
    fetcher = GitHubProfileFetcher(client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await fetcher.fetch("octocat")
    await client.aclose()


@pytest.mark.asyncio
async def test_snapshots_are_append_only(tmp_path):
    store = SqliteSnapshotStore(str(tmp_path / "snap.db"))

    first = await store.create_snapshot("u1", "octocat", {"stars": 1})
    second = await store.create_snapshot("u1", "octocat", {"stars": 2})

    assert second != first
    latest = await store.get_latest("u1", "octocat")
    assert latest["id"] == second
    assert latest["stars"] == 2
    assert await store.delete_older_than(365) == 0
    assert await store.delete_older_than(-1) == 2
    store.close()


def test_event_logger_json_and_csv(tmp_path):
    jsonl = EventLogger(path=str(tmp_path / "events.jsonl"), fmt="json", enabled=True)
    jsonl.emit("job_completed", {"job_id": "u1:octocat", "status": JobStatus.COMPLETED})
    rec = json.loads((tmp_path / "events.jsonl").read_text().strip())
    assert rec["event"] == "job_completed"
    assert rec["status"] == "completed"

    path = tmp_path / "events.csv"
    csv_log = EventLogger(path=str(path), fmt="csv", enabled=True)
    csv_log.emit("job_failed", {"job_id": "a:b", "attempts": 5})
    csv_log.emit("job_failed", {"job_id": "c:d", "attempts": 5})
    rows = list(csv.DictReader(path.open()))
    assert [r["job_id"] for r in rows] == ["a:b", "c:d"]

    disabled = EventLogger(path=str(tmp_path / "off.jsonl"), enabled=False)
    disabled.emit("job_completed", {})
    assert not (tmp_path / "off.jsonl").exists()


def stop_after(n: int, waits: list):
    async def sleep(seconds: float) -> None:
        waits.append(seconds)
        if len(waits) > n:
            raise asyncio.CancelledError

    return sleep


@pytest.mark.asyncio
async def test_cleanup_loop_deletes_snapshots_past_retention(tmp_path, clock):
    store = SqliteSnapshotStore(str(tmp_path / "snap.db"))
    await store.create_snapshot("u1", "octocat", {"stars": 1})
    clock.advance(400 * 86400)
    await store.create_snapshot("u1", "octocat", {"stars": 2})
    waits: list = []

    with pytest.raises(asyncio.CancelledError):
        await snapshot_cleanup_loop(store, retention_days=365, interval_s=3600, sleep=stop_after(1, waits))

    assert waits == [3600, 3600]
    latest = await store.get_latest("u1", "octocat")
    assert latest["stars"] == 2
    assert await store.delete_older_than(-1) == 1
    store.close()


class LockedSnapshots:
    def __init__(self) -> None:
        self.calls = 0

    async def delete_older_than(self, days: int) -> int:
        self.calls += 1
        if self.calls == 1:
            raise sqlite3.OperationalError("database is locked")
        return 0


@pytest.mark.asyncio
async def test_cleanup_loop_survives_a_failed_run(caplog):
    snapshots = LockedSnapshots()

    with pytest.raises(asyncio.CancelledError):
        await snapshot_cleanup_loop(snapshots, interval_s=60, sleep=stop_after(2, []))

    assert snapshots.calls == 2
    assert "snapshot_cleanup_failed" in [getattr(r, "event", None) for r in caplog.records]
