import asyncio

from conftest import FakeFetcher, MemoryJobStore
from fastapi.testclient import TestClient

from analytics_jobs.config import Settings
from analytics_jobs.main import create_app
from analytics_jobs.models import ConnectionState, RetryPolicy
from analytics_jobs.processor import AnalyticsProcessor
from analytics_jobs.snapshots import SqliteSnapshotStore
from analytics_jobs.submitter import DurableExecutor, InlineExecutor, JobSubmitter


class StubConnection:
    def __init__(self, state=ConnectionState.CONNECTING):
        self.state = state
        self.probes = 0

    @property
    def is_ready(self):
        return self.state is ConnectionState.READY

    def probe(self):
        self.probes += 1

    def report_failure(self, error):
        self.state = ConnectionState.RECONNECTING


def make_client(tmp_path, state=ConnectionState.CONNECTING, stale_after_s=3600.0):
    snapshots = SqliteSnapshotStore(str(tmp_path / "api.db"))
    connection = StubConnection(state)
    store = MemoryJobStore()
    submitter = JobSubmitter(
        connection,
        DurableExecutor(store, RetryPolicy()),
        InlineExecutor(AnalyticsProcessor(FakeFetcher(), snapshots)),
    )
    app = create_app(Settings(stale_after_s=stale_after_s), submitter=submitter, snapshots=snapshots)
    return TestClient(app), connection, store, snapshots


def test_healthz_reports_broker_state_and_probes(tmp_path):
    client, connection, _, _ = make_client(tmp_path, ConnectionState.ERRORED)
    with client:
        r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "broker": "errored", "inline_pending": 0}
    assert connection.probes == 1


def test_metrics_are_exposed(tmp_path):
    client, _, _, _ = make_client(tmp_path)
    with client:
        r = client.get("/metrics")
    assert r.status_code == 200
    assert "analytics_jobs_submitted_total" in r.text


def test_refresh_enqueues_when_broker_ready(tmp_path):
    client, _, store, _ = make_client(tmp_path, ConnectionState.READY)
    with client:
        r = client.post("/analytics/refresh", json={"requester_id": "u1", "subject_key": "octocat"})
        dup = client.post("/analytics/refresh", json={"requester_id": "u1", "subject_key": "octocat"})
    assert r.status_code == 202
    assert r.json() == {"job_id": "u1:octocat", "mode": "durable", "created": True}
    assert dup.json()["created"] is False
    assert list(store.jobs) == ["u1:octocat"]


def test_refresh_falls_back_inline_when_broker_down(tmp_path):
    client, _, store, _ = make_client(tmp_path, ConnectionState.RECONNECTING)
    with client:
        r = client.post("/analytics/refresh", json={"requester_id": "u1", "subject_key": "octocat"})
    assert r.status_code == 202
    assert r.json()["mode"] == "inline"
    assert store.jobs == {}


def test_refresh_rejects_malformed_input(tmp_path):
    client, _, _, _ = make_client(tmp_path)
    with client:
        r = client.post("/analytics/refresh", json={"requester_id": "u1", "subject_key": "a:b"})
    assert r.status_code == 422
    assert r.json()["field"] == "subject_key"


def test_latest_snapshot_fresh_and_stale(tmp_path):
    client, _, store, snapshots = make_client(tmp_path, ConnectionState.READY)
    asyncio.run(snapshots.create_snapshot("u1", "octocat", {"stars": 5}))
    with client:
        fresh = client.get("/analytics/latest", params={"requester_id": "u1"})
    assert fresh.json()["status"] == "fresh"
    assert fresh.json()["snapshot"]["stars"] == 5
    assert fresh.json()["job"] is None

    client, _, store, _ = make_client(tmp_path, ConnectionState.READY, stale_after_s=0)
    with client:
        stale = client.get("/analytics/latest", params={"requester_id": "u1"})
    assert stale.json()["status"] == "refreshing"
    assert stale.json()["job"]["job_id"] == "u1:octocat"
    assert "u1:octocat" in store.jobs


def test_latest_without_snapshot(tmp_path):
    client, _, _, _ = make_client(tmp_path, ConnectionState.READY)
    with client:
        missing = client.get("/analytics/latest", params={"requester_id": "u2"})
        started = client.get("/analytics/latest", params={"requester_id": "u2", "subject_key": "hubot"})
    assert missing.status_code == 404
    assert started.json()["status"] == "processing"
    assert started.json()["job"]["mode"] == "durable"
