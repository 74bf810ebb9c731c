"""In-process registry of live analysis jobs.

Holds the jobId -> JobStatus table and the target -> jobId index behind a
single lock so an index entry and its job are created and removed together.
The registry is not durable; finished jobs live on in ``analysis_runs``.
"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .models import JobStatus

logger = logging.getLogger(__name__)


class JobRegistry:
    """Thread-safe table of JobStatus aggregates plus the active-target index.

    Finished jobs are kept for status lookups until ``max_finished_jobs``
    newer ones have finished, then evicted oldest first.
    """

    def __init__(self, max_finished_jobs: int = 256):
        self.max_finished_jobs = max_finished_jobs
        self._lock = threading.RLock()
        self._jobs: Dict[str, JobStatus] = {}
        self._active_by_target: Dict[str, str] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    def create(self, status: JobStatus) -> Dict[str, Any]:
        """Insert a new job and point its target at it. Returns the snapshot."""
        with self._lock:
            if status.job_id in self._jobs:
                raise ValueError(f"Job {status.job_id} already registered")
            self._jobs[status.job_id] = status
            previous = self._active_by_target.get(status.target.key)
            if previous:
                # Most recent trigger wins the index
                logger.info(
                    f"Job {status.job_id} replaces {previous} as active job for {status.target.key}"
                )
            self._active_by_target[status.target.key] = status.job_id
            return status.to_dict()

    def get(self, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a serialized copy of the job, or None if unknown."""
        with self._lock:
            status = self._jobs.get(job_id)
            return status.to_dict() if status else None

    def update(self, job_id: str, mutate: Callable[[JobStatus], Any]) -> Optional[Dict[str, Any]]:
        """Apply ``mutate`` to the job under the lock.

        Returns:
            The post-mutation snapshot, or None if the job is unknown
        """
        with self._lock:
            status = self._jobs.get(job_id)
            if status is None:
                return None
            was_terminal = status.is_terminal
            mutate(status)
            if status.is_terminal and not was_terminal:
                self._record_finished(job_id)
            return status.to_dict()

    def release_target(self, target_key: str, job_id: str) -> bool:
        """Drop the index entry for ``target_key`` if it still points at ``job_id``.

        A newer job for the same target keeps its entry.
        """
        with self._lock:
            if self._active_by_target.get(target_key) == job_id:
                del self._active_by_target[target_key]
                return True
            return False

    def active_job_for(self, target_key: str) -> Optional[JobStatus]:
        """Return the active job for a target, dropping stale index entries."""
        with self._lock:
            job_id = self._active_by_target.get(target_key)
            if job_id is None:
                return None
            status = self._jobs.get(job_id)
            if status is None or status.is_terminal:
                logger.debug(f"Cleaning up stale index entry {target_key} -> {job_id}")
                del self._active_by_target[target_key]
                return None
            return status

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._jobs.values() if not s.is_terminal)

    def active_job_ids(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, s in self._jobs.items() if not s.is_terminal]

    def _record_finished(self, job_id: str) -> None:
        # Caller holds the lock
        self._finished[job_id] = None
        while len(self._finished) > self.max_finished_jobs:
            evicted, _ = self._finished.popitem(last=False)
            self._jobs.pop(evicted, None)
            logger.debug(f"Evicted finished job {evicted} from registry")
