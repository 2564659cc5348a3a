# bulkjobs/exceptions.py
"""
Shared exception classes used across the codebase.

Submission-time problems are raised synchronously to the caller and never
create a job. Everything that happens after a job exists (per-item lookup
errors, worker faults, stalls) is recorded on the job row instead of raised.
"""

from __future__ import annotations


class BulkJobError(Exception):
    """Base class for bulk job errors."""


class JobNotFound(BulkJobError):
    """
    Raised when a job id does not exist, or exists but belongs to another owner.

    Both cases are reported identically so callers cannot probe other
    tenants' job ids.
    """

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class SubmissionRejected(BulkJobError):
    """
    Raised by the submission service when a batch is refused.

    `code` is a stable machine-readable key ("empty_batch", "no_quota", ...);
    the message is meant for the end user.
    """

    code = "rejected"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ValidationRejected(SubmissionRejected):
    code = "invalid_request"


class OwnerRejected(SubmissionRejected):
    code = "unknown_owner"


class QuotaRejected(SubmissionRejected):
    code = "insufficient_quota"


__all__ = [
    "BulkJobError",
    "JobNotFound",
    "SubmissionRejected",
    "ValidationRejected",
    "OwnerRejected",
    "QuotaRejected",
]
