import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

import redis

from .models import Job, Operation

logger = logging.getLogger(__name__)

REDIS_KEY_TTL_SEC = 24 * 3600
REDIS_SOCKET_TIMEOUT_SEC = 2.0


def redis_client(url: str) -> redis.Redis:
    return redis.from_url(
        url,
        decode_responses=False,
        socket_timeout=REDIS_SOCKET_TIMEOUT_SEC,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SEC,
    )


class JobRegistry:
    """In-memory job ledger, optionally mirrored to a Redis hash per job.

    Jobs only live for the duration of one HTTP request, so the registry is
    a lookup aid, not a source of truth: losing it on restart is fine.
    """

    def __init__(self, max_jobs: int = 1000, rdb: Optional[redis.Redis] = None):
        self.max_jobs = max_jobs
        self.rdb = rdb
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        # one writer thread keeps redis calls off the event loop and in order
        self._writer = None
        if rdb is not None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="redis-mirror")

    def create(self, operation: Operation, inputs: List[Path], output_path: Path) -> Job:
        job = Job(
            job_id=uuid.uuid4().hex,
            operation=operation,
            inputs=[str(p) for p in inputs],
            output_path=str(output_path),
            created_at=time.time(),
        )
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict()
            snapshot = job.model_copy(deep=True)
        self._mirror(snapshot)
        return snapshot

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update(self, job_id: str, **fields) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            for k, v in fields.items():
                setattr(job, k, v)
            snapshot = job.model_copy(deep=True)
        self._mirror(snapshot)
        return snapshot

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _evict(self) -> None:
        # oldest finished jobs go first; running jobs are never dropped
        overflow = len(self._jobs) - self.max_jobs
        if overflow <= 0:
            return
        for job_id in [j.job_id for j in self._jobs.values() if j.finished][:overflow]:
            del self._jobs[job_id]

    def flush(self) -> None:
        """Block until every queued redis write has been attempted."""
        if self._writer is not None:
            self._writer.submit(lambda: None).result()

    def close(self) -> None:
        if self._writer is not None:
            self._writer.shutdown(wait=True)

    def _mirror(self, job: Job) -> None:
        if self._writer is not None:
            self._writer.submit(self._write, job)

    def _write(self, job: Job) -> None:
        key = f"jobs:{job.job_id}"
        try:
            self.rdb.hset(
                key,
                mapping={
                    "status": job.status,
                    "operation": job.operation,
                    "data": job.model_dump_json(),
                },
            )
            self.rdb.expire(key, REDIS_KEY_TTL_SEC)
        except redis.RedisError as exc:
            logger.warning("Could not mirror job %s to redis: %s", job.job_id, exc)
