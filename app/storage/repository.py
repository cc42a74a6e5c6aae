"""Storage repository for ephemeral job records."""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.models.schemas import TERMINAL_STATUSES, Job, utc_now


class JobStore:
    """Job store interface: get / put / delete / list_expired."""

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError("Subclass must implement get()")

    def put(self, job: Job) -> None:
        raise NotImplementedError("Subclass must implement put()")

    def delete(self, job_id: str) -> None:
        raise NotImplementedError("Subclass must implement delete()")

    def list_expired(self, now: Optional[datetime] = None) -> list[str]:
        raise NotImplementedError("Subclass must implement list_expired()")

    def list_jobs(self) -> list[Job]:
        raise NotImplementedError("Subclass must implement list_jobs()")


class InMemoryJobStore(JobStore):
    """
    Process-local job store with TTL and max-count eviction.

    Updates to one job are serialized by a per-job lock so concurrent partial
    patches are merged, never lost.
    """

    def __init__(
        self,
        logger: Any,
        max_jobs: int = 250,
        ttl_seconds: int = 6 * 60 * 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the store.

        Args:
            logger: Logger instance
            max_jobs: Maximum retained records (oldest evicted first)
            ttl_seconds: Lifetime of a record after its last update
            clock: Time source (injectable for tests)
        """
        self.logger = logger
        self.max_jobs = max_jobs
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._lock:
            return self._locks.setdefault(job_id, threading.Lock())

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def put(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
            overflow = len(self._jobs) - self.max_jobs
            if overflow > 0:
                oldest = sorted(self._jobs.values(), key=lambda j: j.created_at)[:overflow]
                for old in oldest:
                    self._jobs.pop(old.job_id, None)
                    self._locks.pop(old.job_id, None)
                    self.logger.debug(f"Evicted job {old.job_id} (store full)")

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._locks.pop(job_id, None)

    def list_expired(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        with self._lock:
            return [j.job_id for j in self._jobs.values() if now - j.updated_at > self.ttl]

    def list_jobs(self) -> list[Job]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]

    def update(self, job_id: str, patch: dict[str, Any]) -> Optional[Job]:
        """
        Merge a partial patch into a job under its lock.

        `meta` is merged key by key and `progress_pct` never decreases.
        Patches to a job in a terminal status only touch `meta`.

        Returns:
            The updated job, or None if it no longer exists
        """
        with self._job_lock(job_id):
            current = self.get(job_id)
            if current is None:
                return None
            patch = dict(patch)
            if current.status in TERMINAL_STATUSES:
                patch = {k: v for k, v in patch.items() if k == "meta"}
            if "meta" in patch:
                patch["meta"] = {**current.meta, **(patch["meta"] or {})}
            if "progress_pct" in patch:
                patch["progress_pct"] = max(current.progress_pct, min(100, int(patch["progress_pct"])))
            updated = current.model_copy(update={**patch, "updated_at": self.clock()})
            self.put(updated)
            return updated

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete expired jobs. Returns the number removed."""
        expired = self.list_expired(now)
        for job_id in expired:
            self.delete(job_id)
        if expired:
            self.logger.info(f"Swept {len(expired)} expired jobs")
        return len(expired)
