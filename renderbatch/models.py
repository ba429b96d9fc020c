"""
Pydantic models and enums for batch generation.

JobRecord / BatchRecord are the persisted state; the batch status is never
stored, it is derived from the job slice every time it is read.
"""

from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid4())


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES = {JobStatus.SUBMITTED, JobStatus.PROCESSING}
TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# Lifecycle graph. Failed is terminal except for an explicit retry.
ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.SUBMITTED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.SUBMITTED: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


def is_allowed_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ── Batch Status ─────────────────────────────────────────────────────────────

class BatchStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Variation input ──────────────────────────────────────────────────────────

class VariationRequest(BaseModel):
    """What the wizard hands over: how many videos and which knobs to vary."""
    count: int
    source_ref: str = ""
    dimensions: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Ordered map of dimension → allowed values, e.g. {'hookStyle': ['question', 'shock']}",
    )
    randomize: list[str] = Field(default_factory=list, description="Dimensions sampled randomly per job")
    required_dimensions: list[str] = Field(default_factory=list)
    seed: Optional[int] = None


class JobSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    dimensions: dict[str, str] = Field(default_factory=dict)
    source_ref: str = ""


# ── Adapter wire shapes ──────────────────────────────────────────────────────

class SubmitResult(BaseModel):
    backend_job_id: str = ""
    immediate_status: Optional[JobStatus] = None  # COMPLETED / FAILED for sync backends
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


class PollResult(BaseModel):
    status: JobStatus  # PROCESSING / COMPLETED / FAILED
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


# ── Records ──────────────────────────────────────────────────────────────────

class JobRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    spec: JobSpec
    status: JobStatus = JobStatus.PENDING
    backend: str = ""
    backend_job_id: str = ""
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    estimated_cost: float = 0.0


class BatchRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str = ""
    name: str = ""
    settings: Optional[VariationRequest] = None
    jobs: list[JobRecord] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
    started_at: Optional[str] = None
    paused: bool = False
    cancelled: bool = False

    @computed_field
    @property
    def status(self) -> BatchStatus:
        return derive_batch_status(self)

    def find_job(self, job_id: str) -> Optional[JobRecord]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None


def derive_batch_status(batch: BatchRecord) -> BatchStatus:
    """
    Compute the batch status from its jobs and the pause / cancel flags.

    Running covers jobs in flight and, once started, Pending jobs still
    waiting for (re)submission.
    """
    counts = Counter(job.status for job in batch.jobs)
    total = len(batch.jobs)

    if batch.cancelled:
        return BatchStatus.FAILED if counts[JobStatus.COMPLETED] else BatchStatus.CANCELLED

    if total and counts[JobStatus.COMPLETED] == total:
        return BatchStatus.COMPLETED

    in_flight = counts[JobStatus.SUBMITTED] + counts[JobStatus.PROCESSING]
    pending = counts[JobStatus.PENDING]

    if batch.paused and (in_flight or pending):
        return BatchStatus.PAUSED
    if in_flight or (batch.started_at and pending):
        return BatchStatus.RUNNING
    if not batch.started_at:
        return BatchStatus.DRAFT
    if total == 0:
        return BatchStatus.COMPLETED
    return BatchStatus.FAILED


# ── Aggregates ───────────────────────────────────────────────────────────────

class BatchSummary(BaseModel):
    batch_id: str
    status: BatchStatus
    total: int
    by_status: dict[JobStatus, int]
    percent_complete: float
    success_rate: float
    estimated_cost_so_far: float
    estimated_total_cost: float
    failed_label: str


class RefreshReport(BaseModel):
    batch_id: str
    submitted: int = 0
    polled: int = 0
    transitioned: int = 0
    transient_errors: int = 0
    skipped: bool = False


# ── API Request Models ───────────────────────────────────────────────────────

class BatchCreateRequest(BaseModel):
    owner_id: str
    name: str = ""
    request: VariationRequest
    start: bool = False


class CostEstimateResponse(BaseModel):
    count: int
    estimated_total_cost: float
    by_tier: dict[str, float] = Field(default_factory=dict)
