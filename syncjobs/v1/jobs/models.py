"""
Job store models: the job row and its status state machine.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from syncjobs.infra.database import Base, UTCDateTime, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    RETRYING = "retrying"


class JobKind(str, Enum):
    """Kinds of work the runner knows how to dispatch."""

    NORMALIZE = "normalize"
    EMBED = "embed"
    INSIGHT = "insight"
    SYNC_PROVIDER_A = "sync_provider_a"
    SYNC_PROVIDER_B = "sync_provider_b"
    INGESTION_BATCH = "ingestion_batch"
    CLEANUP = "cleanup"


# expected status -> statuses it may move to
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.RETRYING: frozenset({JobStatus.PROCESSING, JobStatus.QUEUED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.DONE, JobStatus.ERROR, JobStatus.QUEUED}
    ),
    JobStatus.ERROR: frozenset({JobStatus.RETRYING, JobStatus.QUEUED}),
    JobStatus.DONE: frozenset(),
}

CLAIMABLE_STATUSES = (JobStatus.QUEUED, JobStatus.RETRYING)
PENDING_STATUSES = (JobStatus.QUEUED, JobStatus.RETRYING, JobStatus.PROCESSING)


def is_allowed_transition(expected: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(expected, frozenset())


class Job(Base):
    """
    A unit of background work owned by a single owner.

    Status only changes through compare-and-set updates in JobService, so
    two runners can never both move the same row out of the same state.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, comment="Owner scope"
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False, comment="Job kind")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|processing|done|error|retrying",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of times the job entered processing",
    )
    batch_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Batch grouping identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job-specific parameters"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Message of the most recent failure"
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler result data"
    )
    dedupe_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Deduplication key for batch jobs"
    )
    run_after: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Not-before time for delayed retries"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'done', 'error', 'retrying')",
            name="jobs_status_check",
        ),
        CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        UniqueConstraint("owner_id", "dedupe_key", name="uq_jobs_owner_dedupe_key"),
        Index("ix_jobs_owner_status_created", "owner_id", "status", "created_at"),
    )

    def is_pending(self) -> bool:
        """Queued, retrying or processing."""
        return self.status in {s.value for s in PENDING_STATUSES}

    def can_retry(self, max_retries: int) -> bool:
        return self.status == JobStatus.ERROR.value and self.attempts < max_retries

    def is_stuck(self, threshold_minutes: int, now: datetime | None = None) -> bool:
        """Check if a processing job has been untouched past the threshold."""
        if self.status != JobStatus.PROCESSING.value:
            return False
        now = now or datetime.now(UTC)
        return self.updated_at < now - timedelta(minutes=threshold_minutes)
