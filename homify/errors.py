"""Error taxonomy for job submission, polling and local storage.

Only SubmissionError and PhotoNotFoundError reach callers of the workflow
surface. Polling failures are absorbed by the poller and surface as a record
that stays ``processing`` or flips to ``failed``.
"""

from __future__ import annotations


class HomifyError(Exception):
    """Base class for all errors raised by this package."""


class SubmissionError(HomifyError):
    """The remote trigger rejected a job, or the upload never reached it."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        workflow_id: str | None = None,
        photo_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.workflow_id = workflow_id
        self.photo_id = photo_id


class PollFetchError(HomifyError):
    """A single status fetch failed (network, HTTP status or payload shape)."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(f"{message} (job {job_id})")
        self.job_id = job_id


class PermanentJobFailure(HomifyError):
    """A job id that will not be polled again for the life of the process."""

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(f"Job {job_id} permanently failed: {reason}")
        self.job_id = job_id
        self.reason = reason


class OrphanedJobReference(HomifyError):
    """A processing photo that carries no valid job id."""

    def __init__(self, photo_id: str, job_id: str | None) -> None:
        super().__init__(f"Photo {photo_id} is processing without a valid job id ({job_id!r})")
        self.photo_id = photo_id
        self.job_id = job_id


class PhotoNotFoundError(HomifyError):
    def __init__(self, photo_id: str) -> None:
        super().__init__(f"Photo not found: {photo_id}")
        self.photo_id = photo_id


class StorageError(HomifyError):
    """The key-value store could not be read or written."""
