"""Redis-backed job registry.

Same contract as ``InMemoryJobRegistry`` but the active job table survives a
process restart (no durable execution marker is kept, so a restarted process
may re-run optimistic work for a job that was in flight).

Data structures in Redis:
 1. String: <prefix>:job:<id> - JSON snapshot of the job
 2. Set:    <prefix>:active   - ids currently registered
 3. Set:    <prefix>:retired  - ids removed on a terminal transition

Atomic updates use optimistic transactions: WATCH the job key, read, apply the
mutation locally, then MULTI/EXEC the write. A concurrent writer aborts the
EXEC with ``WatchError`` and the mutation is re-applied to the fresh value.
"""
from __future__ import annotations

import json
import threading
from typing import Any, Optional

import redis

from paygate.config import REGISTRY_SETTINGS
from paygate.jobs.job import Job
from paygate.jobs.registry import (
    DuplicateJobError,
    InMemoryJobRegistry,
    JobRegistry,
    Mutation,
    RegistryClosedError,
)
from paygate.models.db.enums import ACTIVE_STATUSES, JobStatus
from paygate.utils import get_logger

logger = get_logger(__name__)

MAX_CAS_RETRIES = 50


class RedisJobRegistry:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self._redis_url: str = str(REGISTRY_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        prefix = str(REGISTRY_SETTINGS.get("redis_key_prefix", "paygate"))
        self._job_prefix = f"{prefix}:job:"
        self._active_key = f"{prefix}:active"
        self._retired_key = f"{prefix}:retired"
        self._health_check_timeout = float(REGISTRY_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._client: redis.Redis = client if client is not None else redis.from_url(
            self._redis_url, socket_connect_timeout=self._health_check_timeout
        )
        self._closed = False
        self._lock = threading.Lock()

    # ----------------------------- internal helpers ----------------------------- #
    def _key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("Registry closed")

    @staticmethod
    def _decode(raw: Any) -> Optional[Job]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return Job.from_dict(json.loads(raw))

    @staticmethod
    def _encode(job: Job) -> str:
        return json.dumps(job.to_dict())

    @staticmethod
    def _safe_str(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    # ----------------------------- public API ----------------------------- #
    def health_check(self) -> bool:
        try:
            return bool(self._client.ping())
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis registry health check failed", error=str(e))
            return False

    def put(self, job: Job) -> None:
        self._ensure_open()
        key = self._key(job.id)
        with self._client.pipeline() as pipe:
            for _ in range(MAX_CAS_RETRIES):
                try:
                    pipe.watch(key, self._retired_key)
                    if pipe.exists(key) or pipe.sismember(self._retired_key, job.id):
                        pipe.unwatch()
                        raise DuplicateJobError(f"Job id '{job.id}' already used")
                    pipe.multi()
                    pipe.set(key, self._encode(job))
                    pipe.sadd(self._active_key, job.id)
                    pipe.execute()
                    return
                except redis.WatchError:
                    continue
        raise redis.RedisError(f"Could not register job {job.id}: too much contention")

    def get(self, job_id: str) -> Optional[Job]:
        return self._decode(self._client.get(self._key(job_id)))

    def update(self, job_id: str, mutation: Mutation) -> Optional[Job]:
        self._ensure_open()
        key = self._key(job_id)
        with self._client.pipeline() as pipe:
            for _ in range(MAX_CAS_RETRIES):
                try:
                    pipe.watch(key)
                    current = self._decode(pipe.get(key))
                    if current is None:
                        pipe.unwatch()
                        return None
                    updated = mutation(current)
                    if updated is None:
                        pipe.unwatch()
                        return None
                    if updated.id != current.id:
                        pipe.unwatch()
                        raise ValueError("Mutation must not change the job id")
                    pipe.multi()
                    pipe.set(key, self._encode(updated))
                    pipe.execute()
                    return updated
                except redis.WatchError:
                    logger.debug("Job update raced, retrying", job_id=job_id)
                    continue
        raise redis.RedisError(f"Could not update job {job_id}: too much contention")

    def delete(self, job_id: str) -> Optional[Job]:
        self._ensure_open()
        key = self._key(job_id)
        with self._client.pipeline() as pipe:
            for _ in range(MAX_CAS_RETRIES):
                try:
                    pipe.watch(key)
                    current = self._decode(pipe.get(key))
                    if current is None:
                        pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.delete(key)
                    pipe.srem(self._active_key, job_id)
                    pipe.sadd(self._retired_key, job_id)
                    pipe.execute()
                    return current
                except redis.WatchError:
                    continue
        raise redis.RedisError(f"Could not delete job {job_id}: too much contention")

    def list_all(self) -> list[Job]:
        ids = sorted(self._safe_str(i) for i in self._client.smembers(self._active_key))
        if not ids:
            return []
        raws = self._client.mget([self._key(i) for i in ids])
        jobs = [self._decode(raw) for raw in raws]
        return [j for j in jobs if j is not None]

    def retire_terminal(self) -> int:
        """Retire entries already in a terminal status.

        A shutdown between a job's terminal transition and its removal leaves
        the terminal snapshot registered; its history row is already written.
        """
        leftovers = [j for j in self.list_all() if j.status not in ACTIVE_STATUSES]
        for job in leftovers:
            self.delete(job.id)
        if leftovers:
            logger.info("Retired terminal jobs left from a previous run", count=len(leftovers))
        return len(leftovers)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        logger.info("Redis job registry closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def purge(self) -> None:
        """Remove every registry key. Intended for test isolation only."""
        ids = [self._safe_str(i) for i in self._client.smembers(self._active_key)]
        keys = [self._key(i) for i in ids] + [self._active_key, self._retired_key]
        self._client.delete(*keys)
        self._closed = False

    def snapshot(self) -> dict:
        jobs = self.list_all()
        statuses = [j.status for j in jobs]
        try:
            retired = int(self._client.scard(self._retired_key))
        except (TypeError, ValueError):
            retired = 0
        return {
            "backend": "redis",
            "active": len(statuses),
            "awaiting_payment": statuses.count(JobStatus.AWAITING_PAYMENT),
            "optimistically_processing": statuses.count(JobStatus.OPTIMISTICALLY_PROCESSING),
            "retired": retired,
            "closed": self._closed,
            "redis_url": self._redis_url,
        }


def create_registry() -> JobRegistry:
    """Create the registry backend selected by configuration.

    When Redis is enabled but unreachable the in-memory registry is used, so
    the service still starts (without restart persistence).
    """
    use_redis = bool(REGISTRY_SETTINGS.get("use_redis", False))
    if use_redis:
        try:
            registry = RedisJobRegistry()
            if registry.health_check():
                registry.retire_terminal()
                logger.info("Using Redis-backed job registry")
                return registry
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory registry.")
        except redis.RedisError as e:
            logger.warning("Error initializing Redis registry, falling back to in-memory registry", error=str(e))
    logger.info("Using in-memory job registry")
    return InMemoryJobRegistry()


__all__ = ["RedisJobRegistry", "create_registry", "MAX_CAS_RETRIES"]
