"""Redis-based per-job lock primitives so only one maintenance runner works at a time."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "arena:scheduler:{job}:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def job_lock_key(job: str) -> str:
    return LOCK_KEY_TEMPLATE.format(job=job)


@dataclass(frozen=True)
class JobLockHandle:
    manager: "MaintenanceLockManager"
    job: str
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self.job, self.token)


class MaintenanceLockManager:
    """Acquire and release one lock per maintenance job using Redis SET NX EX."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 300) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def lock_key(self, job: str) -> str:
        return job_lock_key(job)

    def acquire(self, job: str) -> JobLockHandle | None:
        key = self.lock_key(job)
        token = str(uuid.uuid4())
        acquired = self._redis.set(key, token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            return None
        return JobLockHandle(manager=self, job=job, token=token, key=key)

    def release(self, job: str, token: str) -> bool:
        # Compare-and-delete so an expired lock re-acquired by another runner is left alone.
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, self.lock_key(job), token)
        return int(released) == 1
