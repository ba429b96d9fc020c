"""
Error taxonomy for the batch orchestrator.

Backend errors are per-job: the orchestrator catches them and records the
outcome on the JobRecord, it never lets one abort the batch. The remaining
errors are raised to the caller (routes map them to HTTP codes).
"""


class RenderBatchError(Exception):
    """Base class for every error raised by this package."""


# ── Backend errors ───────────────────────────────────────────────────────────

class BackendError(RenderBatchError):
    pass


class TransientBackendError(BackendError):
    """Network error, timeout or retryable HTTP status during submit / poll."""


class TerminalBackendError(BackendError):
    """The backend reported the job as failed or rejected it outright."""


class ResultIntegrityError(BackendError):
    """The backend reported success but returned no usable output URL."""


# ── Caller errors ────────────────────────────────────────────────────────────

class ValidationError(RenderBatchError, ValueError):
    """Malformed VariationRequest. Raised before any batch exists."""


class InvalidTransitionError(RenderBatchError):
    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: illegal transition {current} → {target}")


class RetryRejectedError(RenderBatchError):
    """Retry requested for a job that is not Failed."""


class RetryLimitExceededError(RetryRejectedError):
    """The job already used its retry budget and stays Failed."""


class BatchNotFoundError(RenderBatchError):
    pass


class JobNotFoundError(RenderBatchError):
    pass
