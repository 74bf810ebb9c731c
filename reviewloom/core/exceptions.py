"""Exception taxonomy for ReviewLoom.

Every error that can reach an HTTP client derives from ``ReviewLoomError``
and carries the status code it is rendered with. ``AnalyzerFailure`` and
``CancellationSignal`` only travel between an analyzer and the orchestrator.
"""


class ReviewLoomError(Exception):
    """Base class for errors rendered as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReviewLoomError):
    """Bad target identifier, oversized instructions, invalid tier."""

    status_code = 400


class NotFoundError(ReviewLoomError):
    """Unknown review, pull request, job or run."""

    status_code = 404


class CapacityError(ReviewLoomError):
    """Too many active jobs, or too many observers on one job."""

    status_code = 429


class AnalyzerFailure(Exception):
    """The analyzer could not produce a usable result."""


class CancellationSignal(Exception):
    """Raised by an analyzer once it notices its job was cancelled."""
