from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class BrokerConnectionError(Exception):
    """Redis was unreachable or dropped the connection mid-command."""


class SubmissionDegradedWarning(UserWarning):
    def __init__(self, job_id: str, reason: str):
        super().__init__(f"Durable queue unavailable for job {job_id} ({reason}); running inline.")
        self.job_id = job_id
        self.reason = reason


class JobExecutionError(Exception):
    def __init__(self, job_id: str, attempts_made: int, cause: BaseException):
        detail = str(cause) or type(cause).__name__
        super().__init__(f"Job {job_id} failed on attempt {attempts_made}: {detail}")
        self.job_id = job_id
        self.attempts_made = attempts_made
        self.cause = cause


class FatalWorkerError(Exception):
    """The worker's transport is gone; the process must be restarted."""


class ShutdownTimeoutError(Exception):
    def __init__(self, timeout_s: float):
        super().__init__(f"Graceful shutdown did not finish within {timeout_s:.1f}s.")
        self.timeout_s = timeout_s


class InvalidSubmission(ValueError):
    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field


def register_exception_handlers(app):
    @app.exception_handler(InvalidSubmission)
    async def invalid_submission_handler(request: Request, exc: InvalidSubmission):
        return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})
