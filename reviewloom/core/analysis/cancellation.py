"""Tracks external processes per job so a cancel can terminate them."""

import logging
import threading
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    """Process table and cancellation flags keyed by job id.

    Process handles only need ``returncode`` and ``terminate()``, which both
    ``asyncio.subprocess.Process`` and ``subprocess.Popen`` provide.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processes: Dict[str, List[Any]] = {}
        self._cancelled: Set[str] = set()

    def register(self, job_id: str, process: Any) -> bool:
        """Track a process spawned for ``job_id``.

        A process registered after the job was cancelled is terminated
        immediately and not tracked.

        Returns:
            False if the job was already cancelled
        """
        with self._lock:
            if job_id not in self._cancelled:
                self._processes.setdefault(job_id, []).append(process)
                return True

        logger.info(f"Job {job_id} already cancelled, terminating late process")
        self._terminate(process)
        return False

    def unregister(self, job_id: str, process: Any) -> None:
        with self._lock:
            procs = self._processes.get(job_id)
            if not procs:
                return
            if process in procs:
                procs.remove(process)
            if not procs:
                del self._processes[job_id]

    def kill_all(self, job_id: str) -> int:
        """Terminate every process registered for ``job_id``.

        Returns:
            How many processes were signalled; exited ones count as zero
        """
        with self._lock:
            procs = self._processes.pop(job_id, [])

        killed = sum(1 for proc in procs if self._terminate(proc))
        if procs:
            logger.info(f"Signalled {killed}/{len(procs)} processes for job {job_id}")
        return killed

    def mark_cancelled(self, job_id: str) -> None:
        with self._lock:
            self._cancelled.add(job_id)

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def tracked_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._processes.get(job_id, ()))

    def forget(self, job_id: str) -> None:
        """Drop all state for a finished job."""
        with self._lock:
            self._processes.pop(job_id, None)
            self._cancelled.discard(job_id)

    @staticmethod
    def _terminate(process: Any) -> bool:
        if getattr(process, "returncode", None) is not None:
            return False
        try:
            process.terminate()
            return True
        except ProcessLookupError:
            return False
