"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from syncjobs.v1.jobs.models import JobKind, JobStatus


class JobCreate(BaseModel):
    """Schema for enqueueing a new job."""

    kind: JobKind = Field(..., description="Job kind")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    batch_id: str | None = Field(
        default=None, description="Batch key; makes the enqueue idempotent"
    )
    dedupe_key: str | None = Field(
        default=None, description="Explicit deduplication key"
    )


class JobBatchCreate(BaseModel):
    """Schema for enqueueing several jobs of one kind under one batch."""

    kind: JobKind
    batch_id: str = Field(..., min_length=1)
    payloads: list[dict[str, Any]] = Field(..., min_length=1)


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str
    deduplicated: bool = Field(
        default=False, description="Whether an existing job was returned"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: UUID
    kind: str
    status: str
    attempts: int
    batch_id: str | None = None
    payload: dict[str, Any]
    last_error: str | None = None
    result: dict[str, Any] | None = None
    dedupe_key: str | None = None
    run_after: datetime | None = None
    created_at: datetime
    updated_at: datetime
    is_stuck: bool = False


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_kind: dict[str, int]
    queue_depth: int  # queued + retrying + processing
    failed_last_hour: int
    stuck_jobs: int


class StuckJobResponse(BaseModel):
    """A processing job past the stuck threshold."""

    id: UUID
    kind: str
    attempts: int
    batch_id: str | None = None
    updated_at: datetime
    stuck_for_minutes: int


class RunJobsRequest(BaseModel):
    """Options for a single runner invocation."""

    max_jobs: int | None = Field(
        default=None, ge=1, description="Ceiling on jobs processed in this run"
    )
    kinds: list[JobKind] | None = Field(default=None, description="Restrict to kinds")
    batch_id: str | None = Field(default=None, description="Restrict to one batch")
    include_retrying: bool = Field(
        default=True, description="Also pick up jobs in retrying status"
    )
    skip_stuck_jobs: bool = Field(
        default=True,
        description="Leave stuck processing jobs alone; false reclaims them",
    )


class JobOutcome(BaseModel):
    """What happened to one job during a run."""

    job_id: UUID
    kind: str
    status: Literal["done", "error", "skipped"]
    attempts: int
    duration_ms: int | None = None
    reason: str | None = None


class RunError(BaseModel):
    """A per-job failure captured during a run."""

    job_id: UUID
    kind: str
    message: str
    category: str
    severity: str
    retryable: bool
    user_message: str
    error_record_id: UUID | None = None


class RunStats(BaseModel):
    duration_ms: int
    selected: int
    reclaimed_stuck: int = 0
    remaining_eligible: int = 0


class RunResult(BaseModel):
    """Aggregate result of one runner invocation."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    jobs: list[JobOutcome] = Field(default_factory=list)
    errors: list[RunError] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    stats: RunStats | None = None


class JobActionResponse(BaseModel):
    """Result of an operator action on one job."""

    job_id: UUID
    status: str
    changed: bool
