from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from syncjobs.infra.database import Base, UTCDateTime, utcnow


class IngestionRecord(Base):
    """
    An externally sourced item (a synced message, a calendar event, ...).

    (owner_id, source, source_id) is unique; repeated syncs of the same item
    update this row in place.
    """

    __tablename__ = "ingestion_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, comment="Owner scope")
    source: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Origin system, e.g. provider_a"
    )
    source_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Identifier within the origin system"
    )
    batch_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Sync batch that last touched the record"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Raw content"
    )
    source_meta: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Source metadata"
    )
    occurred_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the item happened at the source"
    )
    linked_entity_id: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Downstream entity matched to this record"
    )
    normalized: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Normalized representation"
    )
    normalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "source", "source_id", name="uq_ingestion_owner_source_item"
        ),
        Index("ix_ingestion_owner_batch", "owner_id", "batch_id"),
    )
