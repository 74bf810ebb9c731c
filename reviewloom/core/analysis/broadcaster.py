"""Progress fan-out from analysis jobs to live observers.

Each observer owns a bounded ``ProgressChannel``. Publishing never blocks:
when an observer falls behind, its oldest buffered frame is dropped so the
newest status always gets through.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from ..exceptions import CapacityError
from .registry import JobRegistry

logger = logging.getLogger(__name__)


def to_sse(payload: Dict[str, Any]) -> str:
    """Encode one server-sent-events data frame."""
    return f"data: {json.dumps(payload)}\n\n"


def progress_frame(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "progress", **snapshot}


class ProgressChannel:
    """Bounded, drop-oldest queue of status snapshots for one observer."""

    def __init__(self, job_id: str, maxsize: int = 64):
        self.job_id = job_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def offer(self, snapshot: Dict[str, Any]) -> None:
        """Enqueue without blocking, evicting the oldest frame if full."""
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
                logger.debug(f"Observer of job {self.job_id} is slow, dropped a frame")
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(snapshot)

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for the next snapshot; None when ``timeout`` elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


class ProgressBroadcaster:
    """Publish/subscribe hub keyed by job id.

    Observers may attach before the job exists; they receive its frames once
    it is created. Must be used from the event loop thread.
    """

    def __init__(self, registry: JobRegistry, max_observers_per_job: int = 32, buffer_size: int = 64):
        self._registry = registry
        self.max_observers_per_job = max_observers_per_job
        self.buffer_size = buffer_size
        self._channels: Dict[str, Set[ProgressChannel]] = {}

    def check_capacity(self, job_id: str) -> None:
        """Raise CapacityError if ``job_id`` cannot take another observer."""
        if self.observer_count(job_id) >= self.max_observers_per_job:
            raise CapacityError(
                f"Too many observers for analysis {job_id} (max {self.max_observers_per_job})"
            )

    def attach(self, job_id: str) -> ProgressChannel:
        """Register an observer and seed it with the current snapshot.

        Raises:
            CapacityError: the job already has the maximum number of observers
        """
        self.check_capacity(job_id)
        observers = self._channels.setdefault(job_id, set())
        channel = ProgressChannel(job_id, maxsize=self.buffer_size)
        observers.add(channel)

        snapshot = self._registry.snapshot(job_id)
        if snapshot is not None:
            channel.offer(snapshot)
        logger.debug(f"Observer attached to job {job_id} ({len(observers)} total)")
        return channel

    def detach(self, channel: ProgressChannel) -> None:
        observers = self._channels.get(channel.job_id)
        if not observers:
            return
        observers.discard(channel)
        if not observers:
            del self._channels[channel.job_id]
        logger.debug(f"Observer detached from job {channel.job_id}")

    def publish(self, job_id: str, snapshot: Dict[str, Any]) -> int:
        """Deliver ``snapshot`` to every observer of ``job_id``.

        Returns:
            Number of observers the snapshot was offered to
        """
        observers = self._channels.get(job_id)
        if not observers:
            return 0
        for channel in list(observers):
            # Each observer gets its own copy
            channel.offer(dict(snapshot))
        return len(observers)

    def observer_count(self, job_id: str) -> int:
        return len(self._channels.get(job_id, ()))
