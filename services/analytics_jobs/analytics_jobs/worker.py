import asyncio
import contextlib
import logging
import sys

from prometheus_client import start_http_server

from .config import Settings
from .connection import ConnectionManager
from .github import GitHubProfileFetcher
from .logging_config import configure_logging
from .pool import WorkerPool
from .processor import AnalyticsProcessor
from .snapshots import SqliteSnapshotStore, snapshot_cleanup_loop
from .store import RedisJobStore
from .supervisor import EXIT_FATAL, LifecycleSupervisor

log = logging.getLogger("worker")


async def serve(settings: Settings) -> int:
    connection = ConnectionManager.from_settings(settings.redis)
    store = RedisJobStore(connection.client, settings.worker.queue_name, stall_after_s=settings.worker.stall_after_s)
    fetcher = GitHubProfileFetcher(settings.github_api_url, settings.github_token)
    snapshots = SqliteSnapshotStore(settings.snapshot_db_path)
    pool = WorkerPool(
        store,
        AnalyticsProcessor(fetcher, snapshots),
        connection,
        concurrency=settings.worker.concurrency,
        job_timeout_s=settings.worker.job_timeout_s,
    )
    supervisor = LifecycleSupervisor(pool, shutdown_timeout_s=settings.worker.shutdown_timeout_s)

    cleanup = None
    if settings.snapshot_cleanup_interval_s > 0:
        cleanup = asyncio.create_task(
            snapshot_cleanup_loop(snapshots, settings.snapshot_retention_days, settings.snapshot_cleanup_interval_s),
            name="snapshot-cleanup",
        )

    connection.start()
    code = await supervisor.run()
    if cleanup is not None:
        cleanup.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup
    if code != EXIT_FATAL:
        await fetcher.aclose()
        await connection.close()
        snapshots.close()
    return code


def main():
    configure_logging()
    try:
        settings = Settings.from_env()
        if settings.worker.metrics_port:
            start_http_server(settings.worker.metrics_port)
        code = asyncio.run(serve(settings))
    except Exception as exc:  # broad on purpose: anything here is fatal
        log.critical("worker crashed", exc_info=True, extra={"event": "fatal", "exit_code": EXIT_FATAL, "error": str(exc)})
        code = EXIT_FATAL
    sys.exit(code)


if __name__ == "__main__":
    main()
