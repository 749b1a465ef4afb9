from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .connection import ConnectionManager
from .event_log import EventLogger, get_event_logger
from .exceptions import BrokerConnectionError, FatalWorkerError, JobExecutionError
from .metrics import JOB_RUNTIME_S, JOBS_FINISHED, JOBS_INFLIGHT, JOBS_PICKED
from .models import ConnectionState, Job, JobStatus

log = logging.getLogger("analytics.worker")

Processor = Callable[..., Awaitable[Any]]
FatalHandler = Callable[[FatalWorkerError], None]


class WorkerPool:
    """
    Pulls jobs from the durable store and runs up to `concurrency` of them at once.

    Retry timing is owned by the store (`store.fail` re-schedules the job per
    its RetryPolicy); the pool only reports outcomes. A job failure never stops
    the pool. The broker connection giving up (`errored`) does: the pool
    reports a FatalWorkerError through `on_fatal` and `run()` raises it.
    """

    def __init__(
        self,
        store: Any,
        processor: Processor,
        connection: ConnectionManager,
        *,
        concurrency: int = 5,
        job_timeout_s: Optional[float] = 60.0,
        poll_timeout_s: float = 1.0,
        event_log: Optional[EventLogger] = None,
        on_fatal: Optional[FatalHandler] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.processor = processor
        self.connection = connection
        self.concurrency = concurrency
        self.job_timeout_s = job_timeout_s
        self.poll_timeout_s = poll_timeout_s
        self.event_log = event_log or get_event_logger()
        self.on_fatal = on_fatal

        self._slots = asyncio.Semaphore(concurrency)
        self._inflight: Set[asyncio.Task] = set()
        self._closing = False
        self._started = False
        self._stopped = asyncio.Event()
        self._fatal: Optional[FatalWorkerError] = None

    @property
    def active(self) -> int:
        return len(self._inflight)

    @property
    def closing(self) -> bool:
        return self._closing

    async def run(self) -> None:
        self._started = True
        self.connection.add_listener(self._on_connection_state)
        log.info("worker pool started (concurrency=%s)", self.concurrency, extra={"event": "pool_started"})
        try:
            while not self._closing:
                if self.connection.state is ConnectionState.ERRORED:
                    self._raise_fatal(self.connection.last_error)
                    break
                if not self.connection.is_ready:
                    await self.connection.wait_ready(timeout=self.poll_timeout_s)
                    continue

                await self._slots.acquire()
                if self._closing:
                    self._slots.release()
                    break
                try:
                    job = await self.store.claim(timeout=self.poll_timeout_s)
                except BrokerConnectionError as exc:
                    self._slots.release()
                    log.warning("claim failed: %s", exc, extra={"event": "claim_failed", "error": str(exc)})
                    self.connection.report_failure(exc)
                    continue
                if job is None:
                    self._slots.release()
                    continue

                # A job claimed during close still runs; it is already active in the store.
                JOBS_PICKED.inc()
                log.info(
                    "picked job %s (attempt %s)",
                    job.id,
                    job.attempts_made,
                    extra={"event": "job_active", "job_id": job.id, "attempts": job.attempts_made},
                )
                task = asyncio.create_task(self._execute(job), name=f"job:{job.id}")
                self._inflight.add(task)
                task.add_done_callback(self._job_done)
        finally:
            self.connection.remove_listener(self._on_connection_state)
            self._stopped.set()

        if self._fatal is not None:
            raise self._fatal

    async def close(self) -> None:
        """Stop claiming and wait for in-flight jobs. Safe to call more than once."""

        if not self._closing:
            log.info("worker pool closing (%s in flight)", self.active, extra={"event": "pool_closing"})
        self._closing = True
        if self._started:
            await self._stopped.wait()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _job_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()

    def _on_connection_state(
        self, old: ConnectionState, new: ConnectionState, error: Optional[BaseException]
    ) -> None:
        if new is ConnectionState.ERRORED and not self._closing:
            self._raise_fatal(error)

    def _raise_fatal(self, error: Optional[BaseException]) -> None:
        if self._fatal is not None:
            return
        self._fatal = FatalWorkerError(f"broker connection lost: {error or 'gave up reconnecting'}")
        self._closing = True
        log.critical(str(self._fatal), extra={"event": "worker_fatal", "error": str(error) if error else None})
        if self.on_fatal is not None:
            self.on_fatal(self._fatal)

    async def _execute(self, job: Job) -> None:
        JOBS_INFLIGHT.inc()
        start = time.monotonic()
        try:
            try:
                snapshot_id = await asyncio.wait_for(
                    self.processor(job.payload, job_id=job.id), timeout=self.job_timeout_s
                )
            except Exception as exc:
                error = JobExecutionError(job.id, job.attempts_made, exc)
                await self._report_failure(job, error, time.monotonic() - start)
            else:
                await self._report_success(job, {"snapshot_id": snapshot_id}, time.monotonic() - start)
        except BrokerConnectionError as exc:
            # The job stays active in the store; nothing else can be done from here.
            log.error(
                "could not record outcome of job %s: %s",
                job.id,
                exc,
                extra={"event": "report_failed", "job_id": job.id, "error": str(exc)},
            )
            self.connection.report_failure(exc)
        finally:
            JOBS_INFLIGHT.dec()

    async def _report_success(self, job: Job, result: Dict[str, Any], runtime_s: float) -> None:
        job = await self.store.complete(job, result)
        JOB_RUNTIME_S.observe(runtime_s)
        JOBS_FINISHED.labels(status=JobStatus.COMPLETED.value).inc()
        fields = {
            "job_id": job.id,
            "status": job.status.value,
            "attempts": job.attempts_made,
            "runtime_s": round(runtime_s, 4),
            "snapshot_id": result.get("snapshot_id"),
        }
        log.info("job %s completed", job.id, extra={"event": "job_completed", **fields})
        self.event_log.emit("job_completed", {"mode": "durable", **fields})

    async def _report_failure(self, job: Job, error: JobExecutionError, runtime_s: float) -> None:
        job = await self.store.fail(job, str(error.cause) or type(error.cause).__name__)
        JOB_RUNTIME_S.observe(runtime_s)
        fields = {
            "job_id": job.id,
            "status": job.status.value,
            "attempts": job.attempts_made,
            "runtime_s": round(runtime_s, 4),
            "error": str(error),
        }
        if job.status is JobStatus.FAILED:
            JOBS_FINISHED.labels(status=JobStatus.FAILED.value).inc()
            log.error("job %s failed permanently", job.id, extra={"event": "job_failed", **fields})
            self.event_log.emit("job_failed", {"mode": "durable", **fields})
            return

        JOBS_FINISHED.labels(status="retry").inc()
        delay_s = max(0.0, (job.run_at or time.time()) - time.time())
        log.warning(
            "job %s failed, retry in %.1fs",
            job.id,
            delay_s,
            extra={"event": "job_retry_scheduled", "delay_s": round(delay_s, 3), **fields},
        )
        self.event_log.emit("job_retry_scheduled", {"mode": "durable", **fields})
