"""
Idempotent ingestion layer.

Records are keyed by (owner_id, source, source_id). Re-ingesting an item
updates content, metadata and timestamps in place while keeping the record
id and any entity link made on an earlier ingestion.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.v1.core.exceptions import ValidationError
from syncjobs.v1.ingestion.models import IngestionRecord
from syncjobs.v1.ingestion.normalize import normalizer_for

logger = get_logger(__name__)

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class IngestionFields(BaseModel):
    """Mutable fields of an ingestion record."""

    payload: dict[str, Any] = Field(default_factory=dict)
    source_meta: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None
    batch_id: str | None = None
    linked_entity_id: UUID | None = None


class IngestionItem(IngestionFields):
    """An item as it arrives from a sync, keyed by its source id."""

    source_id: str = Field(..., min_length=1)


class IngestionRecordResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    source: str
    source_id: str
    batch_id: str | None = None
    payload: dict[str, Any]
    source_meta: dict[str, Any]
    occurred_at: datetime | None = None
    linked_entity_id: UUID | None = None
    normalized: dict[str, Any] | None = None
    normalized_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class IngestionService:
    """Upserts and reads ingestion records."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _insert_for(self, session: AsyncSession):
        dialect = session.get_bind().dialect.name
        try:
            return _INSERTS[dialect]
        except KeyError:
            raise RuntimeError(f"Upsert is not supported on {dialect}") from None

    async def upsert(
        self,
        session: AsyncSession,
        owner_id: UUID,
        source: str,
        source_id: str,
        fields: IngestionFields,
        commit: bool = True,
    ) -> UUID:
        """Insert or update one record; returns its stable id."""
        if not source or not source_id:
            raise ValidationError(
                "source and source_id are required",
                details={"source": source, "source_id": source_id},
            )

        now = datetime.now(UTC)
        insert = self._insert_for(session)
        stmt = insert(IngestionRecord).values(
            id=uuid4(),
            owner_id=owner_id,
            source=source,
            source_id=source_id,
            batch_id=fields.batch_id,
            payload=fields.payload,
            source_meta=fields.source_meta,
            occurred_at=fields.occurred_at,
            linked_entity_id=fields.linked_entity_id,
            created_at=now,
            updated_at=now,
        )
        table = IngestionRecord.__table__
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.owner_id, table.c.source, table.c.source_id],
            set_={
                "payload": stmt.excluded.payload,
                "source_meta": stmt.excluded.source_meta,
                "occurred_at": stmt.excluded.occurred_at,
                "batch_id": func.coalesce(stmt.excluded.batch_id, table.c.batch_id),
                # An existing link wins over whatever the new sync carries
                "linked_entity_id": func.coalesce(
                    table.c.linked_entity_id, stmt.excluded.linked_entity_id
                ),
                "normalized_at": None,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(table.c.id)

        result = await session.execute(stmt)
        record_id = result.scalar_one()
        if commit:
            await session.commit()

        logger.debug(
            "Ingestion record upserted",
            record_id=str(record_id),
            source=source,
            source_id=source_id,
        )
        return record_id

    async def upsert_many(
        self,
        session: AsyncSession,
        owner_id: UUID,
        source: str,
        items: Sequence[IngestionItem],
        batch_id: str | None = None,
    ) -> list[UUID]:
        """Upsert a sync batch in one transaction."""
        record_ids = []
        for item in items:
            fields = IngestionFields(
                payload=item.payload,
                source_meta=item.source_meta,
                occurred_at=item.occurred_at,
                batch_id=item.batch_id or batch_id,
                linked_entity_id=item.linked_entity_id,
            )
            record_ids.append(
                await self.upsert(
                    session, owner_id, source, item.source_id, fields, commit=False
                )
            )
        await session.commit()

        logger.info(
            "Ingestion batch upserted",
            owner_id=str(owner_id),
            source=source,
            batch_id=batch_id,
            count=len(record_ids),
        )
        return record_ids

    async def get_record(
        self, session: AsyncSession, owner_id: UUID, record_id: UUID
    ) -> IngestionRecord | None:
        result = await session.execute(
            select(IngestionRecord)
            .where(
                and_(
                    IngestionRecord.id == record_id,
                    IngestionRecord.owner_id == owner_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_records(
        self, session: AsyncSession, owner_id: UUID, record_ids: Iterable[UUID]
    ) -> list[IngestionRecord]:
        ids = list(record_ids)
        if not ids:
            return []
        result = await session.execute(
            select(IngestionRecord)
            .where(
                and_(
                    IngestionRecord.owner_id == owner_id,
                    IngestionRecord.id.in_(ids),
                )
            )
            .order_by(IngestionRecord.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_records(
        self,
        session: AsyncSession,
        owner_id: UUID,
        source: str | None = None,
        batch_id: str | None = None,
        pending_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IngestionRecord], int]:
        query = select(IngestionRecord).where(IngestionRecord.owner_id == owner_id)
        if source:
            query = query.where(IngestionRecord.source == source)
        if batch_id:
            query = query.where(IngestionRecord.batch_id == batch_id)
        if pending_only:
            query = query.where(IngestionRecord.normalized_at.is_(None))

        total_result = await session.execute(
            select(func.count()).select_from(query.subquery())
        )
        total = total_result.scalar() or 0

        result = await session.execute(
            query.order_by(IngestionRecord.created_at.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), total

    async def normalize_records(
        self,
        session: AsyncSession,
        owner_id: UUID,
        record_ids: Iterable[UUID],
    ) -> list[UUID]:
        """
        Normalize the given records and store the result.

        The first malformed record aborts the whole call so the job that
        asked for it fails and gets classified.
        """
        records = await self.get_records(session, owner_id, record_ids)
        now = datetime.now(UTC)
        done = []
        for record in records:
            normalized = normalizer_for(record.source).normalize(
                record.payload, record.source_meta
            )
            await session.execute(
                update(IngestionRecord)
                .where(IngestionRecord.id == record.id)
                .values(normalized=normalized, normalized_at=now)
            )
            done.append(record.id)
        await session.commit()
        return done

    async def link_entity(
        self,
        session: AsyncSession,
        owner_id: UUID,
        record_id: UUID,
        entity_id: UUID,
    ) -> bool:
        result = await session.execute(
            update(IngestionRecord)
            .where(
                and_(
                    IngestionRecord.id == record_id,
                    IngestionRecord.owner_id == owner_id,
                )
            )
            .values(linked_entity_id=entity_id, updated_at=datetime.now(UTC))
        )
        await session.commit()
        return result.rowcount > 0
