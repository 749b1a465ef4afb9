from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from .config import Settings
from .connection import ConnectionManager
from .exceptions import register_exception_handlers
from .github import GitHubProfileFetcher
from .logging_config import configure_logging
from .models import now
from .processor import AnalyticsProcessor
from .snapshots import SqliteSnapshotStore
from .store import RedisJobStore
from .submitter import DurableExecutor, InlineExecutor, JobSubmitter

log = logging.getLogger("analytics.api")


# -----------------------
# API models
# -----------------------


class RefreshReq(BaseModel):
    requester_id: str
    subject_key: str


# -----------------------
# App
# -----------------------


def create_app(
    settings: Optional[Settings] = None,
    *,
    submitter: Optional[JobSubmitter] = None,
    snapshots: Any = None,
) -> FastAPI:
    """
    Build the API. Without an injected submitter the startup hook wires the
    real Redis connection, GitHub fetcher and SQLite snapshot store.
    """

    app = FastAPI(title="Analytics Jobs - Submission API")
    register_exception_handlers(app)
    app.state.settings = settings
    app.state.submitter = submitter
    app.state.snapshots = snapshots
    app.state.owned = []

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.submitter is not None:
            return
        configure_logging()
        cfg = app.state.settings or Settings.from_env()
        app.state.settings = cfg
        connection = ConnectionManager.from_settings(cfg.redis)
        fetcher = GitHubProfileFetcher(cfg.github_api_url, cfg.github_token)
        if app.state.snapshots is None:
            app.state.snapshots = SqliteSnapshotStore(cfg.snapshot_db_path)
        processor = AnalyticsProcessor(fetcher, app.state.snapshots)
        app.state.submitter = JobSubmitter(
            connection,
            DurableExecutor(
                RedisJobStore(connection.client, cfg.worker.queue_name, stall_after_s=cfg.worker.stall_after_s),
                cfg.worker.retry,
            ),
            InlineExecutor(processor),
        )
        app.state.owned = [connection, fetcher, app.state.snapshots]
        connection.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if not app.state.owned:
            return
        cfg = app.state.settings
        drained = await app.state.submitter.inline.drain(timeout=cfg.worker.shutdown_timeout_s)
        if not drained:
            log.warning("inline jobs still running at shutdown were cancelled", extra={"event": "inline_cancelled"})
        connection, fetcher, snapshots = app.state.owned
        await fetcher.aclose()
        await connection.close()
        snapshots.close()

    # -----------------------
    # Routes
    # -----------------------

    @app.get("/healthz")
    async def healthz(request: Request):
        sub: JobSubmitter = request.app.state.submitter
        # an errored connection gets another chance whenever someone asks
        sub.connection.probe()
        return {
            "ok": True,
            "broker": sub.connection.state.value,
            "inline_pending": sub.inline.pending,
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/analytics/refresh", status_code=202)
    async def refresh(req: RefreshReq, request: Request):
        handle = await request.app.state.submitter.submit(req.requester_id, req.subject_key)
        return asdict(handle)

    @app.get("/analytics/latest")
    async def latest(request: Request, requester_id: str, subject_key: Optional[str] = None):
        state = request.app.state
        stale_after_s = state.settings.stale_after_s if state.settings else 3600.0
        snapshot = await state.snapshots.get_latest(requester_id, subject_key)
        is_stale = snapshot is None or (now() - float(snapshot["snapshot_at"])) > stale_after_s
        target = subject_key or (snapshot["subject_key"] if snapshot else None)

        job = None
        if is_stale and target:
            job = asdict(await state.submitter.submit(requester_id, target))

        if snapshot is None:
            if target:
                return {"status": "processing", "snapshot": None, "job": job}
            return Response(status_code=404)
        return {"status": "refreshing" if is_stale else "fresh", "snapshot": snapshot, "job": job}

    return app
