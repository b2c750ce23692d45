from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from syncjobs.infra.database import Base, UTCDateTime, utcnow

UNKNOWN = "unknown"


class ErrorRecord(Base):
    """One classified failure occurrence."""

    __tablename__ = "error_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, comment="Owner scope")
    job_id: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Job whose run produced this error"
    )
    provider: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Origin system tag"
    )
    stage: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="ingestion|normalization|processing"
    )
    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    raw_message: Mapped[str] = mapped_column(Text, nullable=False)
    classification: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Embedded classification; absent on legacy rows"
    )
    context: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Operation context"
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    user_acknowledged: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Set once, when the cause went away"
    )
    resolution_method: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="error_records_retry_count_check"),
        Index("ix_error_records_owner_occurred", "owner_id", "occurred_at"),
        Index("ix_error_records_job", "job_id"),
    )

    @property
    def category(self) -> str:
        return (self.classification or {}).get("category") or UNKNOWN

    @property
    def severity(self) -> str:
        return (self.classification or {}).get("severity") or UNKNOWN

    @property
    def retryable(self) -> bool:
        return bool((self.classification or {}).get("retryable", False))

    @property
    def user_message(self) -> str | None:
        return (self.classification or {}).get("user_message")

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
