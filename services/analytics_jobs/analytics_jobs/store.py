from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from redis.exceptions import RedisError

from .exceptions import BrokerConnectionError
from .models import Job, JobStatus, now

log = logging.getLogger("analytics.store")

STALLED_ERROR = "job stalled: worker stopped before recording an outcome"

# KEYS[1] job hash, KEYS[2] wait list; ARGV[1] job id, ARGV[2..] hash field/value pairs.
# A job that is still waiting or active absorbs the submission.
ENQUEUE_LUA = """
local status = redis.call('HGET', KEYS[1], 'status')
if status == 'waiting' or status == 'active' then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
redis.call('LPUSH', KEYS[2], ARGV[1])
return 1
"""

# KEYS[1] job hash, KEYS[2] active zset; ARGV[1] job id, ARGV[2] active_since, ARGV[3] stall deadline.
# Skips ids whose job expired or was already picked up.
ACTIVATE_LUA = """
if redis.call('HGET', KEYS[1], 'status') ~= 'waiting' then
  return false
end
redis.call('HSET', KEYS[1], 'status', 'active', 'active_since', ARGV[2])
redis.call('HDEL', KEYS[1], 'run_at')
redis.call('HINCRBY', KEYS[1], 'attempts_made', 1)
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return redis.call('HGETALL', KEYS[1])
"""

# KEYS[1] job hash, KEYS[2] active zset, KEYS[3] delayed zset
# ARGV[1] job id, ARGV[2] active_since seen by the caller, ARGV[3] 'retry' or 'failed',
# ARGV[4] run_at or finished_at, ARGV[5] error, ARGV[6] keep_failed_s
# Only the activation the caller looked at is recovered; a newer one is left alone.
RECOVER_LUA = """
if redis.call('HGET', KEYS[1], 'status') ~= 'active' then
  redis.call('ZREM', KEYS[2], ARGV[1])
  return 0
end
if (redis.call('HGET', KEYS[1], 'active_since') or '') ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[1], 'active_since')
if ARGV[3] == 'retry' then
  redis.call('HSET', KEYS[1], 'status', 'waiting', 'run_at', ARGV[4], 'last_error', ARGV[5])
  redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
else
  redis.call('HSET', KEYS[1], 'status', 'failed', 'finished_at', ARGV[4], 'last_error', ARGV[5])
  if tonumber(ARGV[6]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[6])
  else
    redis.call('DEL', KEYS[1])
  end
end
return 1
"""


@contextlib.contextmanager
def broker_errors() -> Iterator[None]:
    """Map every client-side Redis failure (transport, failover, OOM, ...) to BrokerConnectionError."""

    try:
        yield
    except (RedisError, OSError) as exc:
        raise BrokerConnectionError(f"{type(exc).__name__}: {exc}") from exc


def _pairs(flat: List[Any]) -> Dict[str, str]:
    return {flat[i]: flat[i + 1] for i in range(0, len(flat), 2)}


class RedisJobStore:
    """
    Durable job queue on Redis.

    Layout (all keys prefixed with the queue name):
    - `<q>:job:<id>`  hash with the serialized Job
    - `<q>:wait`      list of job ids ready to run
    - `<q>:delayed`   sorted set of job ids waiting for a retry, scored by run_at
    - `<q>:active`    sorted set of claimed job ids, scored by the time they count as stalled

    Finished jobs keep their hash for the retention window of their policy and
    then expire. A claimed job that gets no outcome within `stall_after_s`
    (its worker died or was killed) counts as a failed attempt and goes back
    through the retry schedule.
    """

    def __init__(self, redis: Any, queue_name: str = "analytics-processing", stall_after_s: float = 120.0) -> None:
        self.redis = redis
        self.queue_name = queue_name
        self.stall_after_s = stall_after_s
        self.wait_key = f"{queue_name}:wait"
        self.delayed_key = f"{queue_name}:delayed"
        self.active_key = f"{queue_name}:active"
        self._enqueue = redis.register_script(ENQUEUE_LUA)
        self._activate = redis.register_script(ACTIVATE_LUA)
        self._recover = redis.register_script(RECOVER_LUA)

    def job_key(self, job_id: str) -> str:
        return f"{self.queue_name}:job:{job_id}"

    async def add(self, job: Job) -> bool:
        """Enqueue `job`. Returns False if an outstanding job already has its id."""

        fields: List[str] = []
        for k, v in job.to_hash().items():
            fields.extend((k, v))
        with broker_errors():
            created = await self._enqueue(keys=[self.job_key(job.id), self.wait_key], args=[job.id, *fields])
        return bool(created)

    async def promote_delayed(self, limit: int = 100) -> int:
        moved = 0
        with broker_errors():
            due = await self.redis.zrangebyscore(self.delayed_key, 0, now(), start=0, num=limit)
            for job_id in due:
                # zrem decides which worker gets to move it
                if await self.redis.zrem(self.delayed_key, job_id):
                    await self.redis.rpush(self.wait_key, job_id)
                    moved += 1
        return moved

    async def recover_stalled(self, limit: int = 100) -> int:
        """Fail the current attempt of every job whose stall deadline has passed."""

        recovered = 0
        with broker_errors():
            stalled = await self.redis.zrangebyscore(self.active_key, 0, now(), start=0, num=limit)
            for job_id in stalled:
                data = await self.redis.hgetall(self.job_key(job_id))
                if not data:
                    await self.redis.zrem(self.active_key, job_id)
                    continue
                job = Job.from_hash(data)
                if job.status is not JobStatus.ACTIVE:
                    await self.redis.zrem(self.active_key, job_id)
                    continue
                if job.mark_failed(STALLED_ERROR):
                    outcome, stamp = "retry", job.run_at
                else:
                    outcome, stamp = "failed", job.finished_at
                done = await self._recover(
                    keys=[self.job_key(job_id), self.active_key, self.delayed_key],
                    args=[
                        job_id,
                        data.get("active_since", ""),
                        outcome,
                        repr(stamp),
                        STALLED_ERROR,
                        job.policy.keep_failed_s,
                    ],
                )
                if done:
                    recovered += 1
                    log.warning(
                        "job %s stalled on attempt %s (%s)",
                        job_id,
                        job.attempts_made,
                        outcome,
                        extra={"event": "job_stalled", "job_id": job_id, "attempts": job.attempts_made, "status": job.status.value},
                    )
        return recovered

    async def claim(self, timeout: float = 1.0) -> Optional[Job]:
        await self.recover_stalled()
        await self.promote_delayed()
        with broker_errors():
            popped = await self.redis.brpop([self.wait_key], timeout=timeout)
            if not popped:
                return None
            _, job_id = popped
            t = now()
            flat = await self._activate(
                keys=[self.job_key(job_id), self.active_key],
                args=[job_id, repr(t), repr(t + self.stall_after_s)],
            )
        if not flat:
            log.warning("skipping stale queue entry %s", job_id, extra={"event": "job_stale", "job_id": job_id})
            return None
        return Job.from_hash(_pairs(flat))

    async def complete(self, job: Job, result: Dict[str, Any]) -> Job:
        job.mark_completed(result)
        key = self.job_key(job.id)
        with broker_errors():
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "status": job.status.value,
                        "finished_at": repr(job.finished_at),
                        "result": json.dumps(result),
                    },
                )
                pipe.hdel(key, "last_error", "active_since")
                pipe.zrem(self.active_key, job.id)
                self._retain(pipe, key, job.policy.keep_completed_s)
                await pipe.execute()
        return job

    async def fail(self, job: Job, error: str) -> Job:
        retry = job.mark_failed(error)
        key = self.job_key(job.id)
        with broker_errors():
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hdel(key, "active_since")
                pipe.zrem(self.active_key, job.id)
                if retry:
                    pipe.hset(key, mapping={"status": job.status.value, "run_at": repr(job.run_at), "last_error": error})
                    pipe.zadd(self.delayed_key, {job.id: job.run_at})
                else:
                    pipe.hset(
                        key,
                        mapping={"status": job.status.value, "finished_at": repr(job.finished_at), "last_error": error},
                    )
                    self._retain(pipe, key, job.policy.keep_failed_s)
                await pipe.execute()
        return job

    @staticmethod
    def _retain(pipe: Any, key: str, keep_s: int) -> None:
        if keep_s > 0:
            pipe.expire(key, keep_s)
        else:
            pipe.delete(key)
