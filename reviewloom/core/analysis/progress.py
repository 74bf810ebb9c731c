"""Progress sink handed to analyzers."""

import logging

from .broadcaster import ProgressBroadcaster
from .models import InvalidTransition, LevelState
from .registry import JobRegistry

logger = logging.getLogger(__name__)


class JobProgressSink:
    """Applies an analyzer's level updates to one job and broadcasts them.

    Updates that would move a level backwards, or touch a job that was
    already cancelled, are rejected and not broadcast.
    """

    def __init__(self, job_id: str, registry: JobRegistry, broadcaster: ProgressBroadcaster):
        self.job_id = job_id
        self._registry = registry
        self._broadcaster = broadcaster

    def report(self, level: int, state: LevelState) -> bool:
        def apply(status):
            if status.is_terminal:
                raise InvalidTransition(f"Job {self.job_id} is already {status.status.value}")
            status.set_level(level, state.status, state.progress_message)
            status.progress_message = state.progress_message

        try:
            snapshot = self._registry.update(self.job_id, apply)
        except InvalidTransition as e:
            logger.info(f"Ignoring progress update for job {self.job_id}: {e}")
            return False

        if snapshot is None:
            logger.debug(f"Progress for unknown job {self.job_id} dropped")
            return False

        self._broadcaster.publish(self.job_id, snapshot)
        return True
