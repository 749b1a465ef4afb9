from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def now() -> float:
    return time.time()


class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING = (JobStatus.WAITING, JobStatus.ACTIVE)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    ERRORED = "errored"


class RetryPolicy(BaseModel):
    """Retry and retention options attached to a job when it is submitted."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, le=100)
    backoff_type: Literal["exponential", "fixed"] = "exponential"
    backoff_delay_ms: int = Field(default=2000, ge=0)
    keep_completed_s: int = Field(default=3600, ge=0)
    keep_failed_s: int = Field(default=86400, ge=0)

    def delay_ms(self, attempts_made: int) -> int:
        """Delay before the next attempt after `attempts_made` failed attempts."""

        # attempt 1 failure => retry after base delay
        # attempt 2 failure => retry after 2x base delay
        if self.backoff_type == "fixed":
            return self.backoff_delay_ms
        return self.backoff_delay_ms * (2 ** max(0, attempts_made - 1))

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


def make_job_id(requester_id: str, subject_key: str) -> str:
    return f"{requester_id}:{subject_key}"


@dataclass
class Job:
    """One durable unit of analytics work, keyed by requester and subject."""

    id: str
    payload: Dict[str, Any]
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    attempts_made: int = 0
    status: JobStatus = JobStatus.WAITING

    created_at: float = field(default_factory=now)
    run_at: Optional[float] = None
    finished_at: Optional[float] = None

    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def outstanding(self) -> bool:
        return self.status in OUTSTANDING

    def mark_active(self) -> None:
        self.status = JobStatus.ACTIVE
        self.attempts_made += 1
        self.run_at = None

    def mark_completed(self, result: Dict[str, Any]) -> None:
        self.status = JobStatus.COMPLETED
        self.finished_at = now()
        self.result = result
        self.last_error = None

    def mark_failed(self, error: str) -> bool:
        """Record a failed attempt. Returns True when another attempt is scheduled."""

        self.last_error = error
        if self.policy.should_retry(self.attempts_made):
            self.status = JobStatus.WAITING
            self.run_at = now() + self.policy.delay_ms(self.attempts_made) / 1000.0
            return True
        self.status = JobStatus.FAILED
        self.finished_at = now()
        return False

    def to_hash(self) -> Dict[str, str]:
        """Flatten into string fields for a Redis hash."""

        data = {
            "id": self.id,
            "payload": json.dumps(self.payload),
            "policy": self.policy.model_dump_json(),
            "attempts_made": str(self.attempts_made),
            "status": self.status.value,
            "created_at": repr(self.created_at),
        }
        if self.run_at is not None:
            data["run_at"] = repr(self.run_at)
        if self.finished_at is not None:
            data["finished_at"] = repr(self.finished_at)
        if self.last_error is not None:
            data["last_error"] = self.last_error
        if self.result is not None:
            data["result"] = json.dumps(self.result)
        return data

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "Job":
        def opt_float(key: str) -> Optional[float]:
            value = data.get(key)
            return float(value) if value not in (None, "") else None

        return cls(
            id=data["id"],
            payload=json.loads(data.get("payload") or "{}"),
            policy=RetryPolicy.model_validate_json(data["policy"]) if data.get("policy") else RetryPolicy(),
            attempts_made=int(data.get("attempts_made", 0)),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            created_at=float(data.get("created_at") or now()),
            run_at=opt_float("run_at"),
            finished_at=opt_float("finished_at"),
            last_error=data.get("last_error") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
        )


@dataclass(frozen=True)
class SubmissionHandle:
    """What `JobSubmitter.submit` hands back to the caller."""

    job_id: str
    mode: Literal["durable", "inline"]
    # False when an outstanding job with the same id absorbed the submission
    created: bool
