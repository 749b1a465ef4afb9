from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .connection import ConnectionManager
from .event_log import EventLogger, get_event_logger
from .exceptions import BrokerConnectionError, InvalidSubmission, SubmissionDegradedWarning
from .metrics import INLINE_RUNS, JOBS_SUBMITTED
from .models import Job, RetryPolicy, SubmissionHandle, make_job_id

log = logging.getLogger("analytics.submitter")

Processor = Callable[..., Awaitable[Any]]


class Executor(Protocol):
    mode: str

    async def dispatch(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """Hand the job off. Returns False if an identical job was already outstanding."""
        ...


class DurableExecutor:
    mode = "durable"

    def __init__(self, store: Any, policy: RetryPolicy) -> None:
        self.store = store
        self.policy = policy

    async def dispatch(self, job_id: str, payload: Dict[str, Any]) -> bool:
        return await self.store.add(Job(id=job_id, payload=payload, policy=self.policy))


class InlineExecutor:
    """Runs the processor in-process as a background task. No durability, no retry."""

    mode = "inline"

    def __init__(self, processor: Processor, event_log: Optional[EventLogger] = None) -> None:
        self.processor = processor
        self.event_log = event_log or get_event_logger()
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def running(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def dispatch(self, job_id: str, payload: Dict[str, Any]) -> bool:
        if job_id in self._tasks:
            return False
        task = asyncio.create_task(self._run(job_id, payload), name=f"inline:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return True

    async def _run(self, job_id: str, payload: Dict[str, Any]) -> None:
        try:
            snapshot_id = await self.processor(payload)
        except Exception as exc:
            INLINE_RUNS.labels(status="failed").inc()
            log.exception(
                "inline job %s failed",
                job_id,
                extra={"event": "inline_failed", "job_id": job_id, "mode": self.mode, "error": str(exc)},
            )
            self.event_log.emit("inline_failed", {"job_id": job_id, "mode": self.mode, "error": str(exc)})
            return
        INLINE_RUNS.labels(status="completed").inc()
        log.info(
            "inline job %s completed",
            job_id,
            extra={"event": "inline_completed", "job_id": job_id, "mode": self.mode, "snapshot_id": snapshot_id},
        )
        self.event_log.emit("inline_completed", {"job_id": job_id, "mode": self.mode, "snapshot_id": snapshot_id})

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding inline runs. Returns False if the timeout hit first."""

        tasks = list(self._tasks.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        return not pending


def _validate(field: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidSubmission(field, "must be a string")
    value = value.strip()
    if not value:
        raise InvalidSubmission(field, "must not be empty")
    if ":" in value:
        raise InvalidSubmission(field, "must not contain ':'")
    return value


class JobSubmitter:
    """
    Entry point for refresh requests.

    Picks the durable executor while the broker connection is ready and the
    inline executor otherwise. `submit` only raises for malformed input.
    """

    def __init__(self, connection: ConnectionManager, durable: Executor, inline: InlineExecutor) -> None:
        self.connection = connection
        self.durable = durable
        self.inline = inline

    async def submit(self, requester_id: str, subject_key: str) -> SubmissionHandle:
        requester_id = _validate("requester_id", requester_id)
        subject_key = _validate("subject_key", subject_key)
        job_id = make_job_id(requester_id, subject_key)
        payload = {"requester_id": requester_id, "subject_key": subject_key}

        # an inline run of the same job absorbs the submission on either path
        if self.inline.running(job_id):
            return self._handle(job_id, self.inline.mode, False)

        if self.connection.is_ready:
            try:
                created = await self.durable.dispatch(job_id, payload)
            except BrokerConnectionError as exc:
                self.connection.report_failure(exc)
                reason = str(exc)
            else:
                return self._handle(job_id, self.durable.mode, created)
        else:
            self.connection.probe()
            reason = f"broker {self.connection.state.value}"

        warning = SubmissionDegradedWarning(job_id, reason)
        log.warning(str(warning), extra={"event": "submission_degraded", "job_id": job_id, "mode": self.inline.mode})
        created = await self.inline.dispatch(job_id, payload)
        return self._handle(job_id, self.inline.mode, created)

    def _handle(self, job_id: str, mode: str, created: bool) -> SubmissionHandle:
        JOBS_SUBMITTED.labels(mode=mode, created=str(created).lower()).inc()
        if created:
            log.info("job %s submitted (%s)", job_id, mode, extra={"event": "job_submitted", "job_id": job_id, "mode": mode})
        else:
            log.info(
                "job %s already outstanding (%s)",
                job_id,
                mode,
                extra={"event": "job_deduplicated", "job_id": job_id, "mode": mode},
            )
        return SubmissionHandle(job_id=job_id, mode=mode, created=created)
