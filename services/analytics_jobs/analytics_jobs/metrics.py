from prometheus_client import Counter, Gauge, Histogram

from .models import ConnectionState

JOBS_SUBMITTED = Counter("analytics_jobs_submitted_total", "Refresh submissions", ["mode", "created"])  # durable|inline
JOBS_PICKED = Counter("analytics_jobs_picked_total", "Jobs claimed by the worker pool")
JOBS_FINISHED = Counter("analytics_jobs_finished_total", "Job attempts finished", ["status"])  # completed|retry|failed
INLINE_RUNS = Counter("analytics_inline_runs_total", "Inline fallback executions", ["status"])  # completed|failed
JOBS_INFLIGHT = Gauge("analytics_jobs_inflight", "Jobs currently executing in this worker")
JOB_RUNTIME_S = Histogram("analytics_job_runtime_seconds", "Job processor runtime")
BROKER_STATE = Gauge("analytics_broker_connection_state", "1 for the current broker connection state", ["state"])
BROKER_TRANSITIONS = Counter("analytics_broker_transitions_total", "Broker connection state transitions", ["state"])


def record_broker_state(state: ConnectionState) -> None:
    for s in ConnectionState:
        BROKER_STATE.labels(state=s.value).set(1 if s is state else 0)
    BROKER_TRANSITIONS.labels(state=state.value).inc()
