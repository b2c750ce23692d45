"""
Ingestion API endpoints.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings, SettingsDep
from syncjobs.infra.database import get_session
from syncjobs.v1.core.exceptions import NotFoundError, create_success_response
from syncjobs.v1.core.security import Principal, PrincipalDep
from syncjobs.v1.ingestion.service import (
    IngestionFields,
    IngestionItem,
    IngestionRecordResponse,
    IngestionService,
)
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/ingestion", tags=["ingestion"])


class RecordUpsert(IngestionFields):
    source: str = Field(..., min_length=1, max_length=100)
    source_id: str = Field(..., min_length=1)


class SyncCompletion(BaseModel):
    """Items delivered by one finished provider sync."""

    source: str = Field(..., min_length=1, max_length=100)
    batch_id: str = Field(..., min_length=1)
    items: list[IngestionItem] = Field(..., min_length=1)
    enqueue_normalize: bool = True


@router.post("/records", response_model=dict)
async def upsert_record(
    record: RecordUpsert,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Insert or update one record keyed by (source, source_id)."""
    service = IngestionService(settings)
    record_id = await service.upsert(
        session,
        principal.owner_uuid,
        record.source,
        record.source_id,
        IngestionFields(
            payload=record.payload,
            source_meta=record.source_meta,
            occurred_at=record.occurred_at,
            batch_id=record.batch_id,
            linked_entity_id=record.linked_entity_id,
        ),
    )
    stored = await service.get_record(session, principal.owner_uuid, record_id)
    if stored is None:
        raise NotFoundError("Record not found", details={"record_id": str(record_id)})
    return create_success_response(
        data=IngestionRecordResponse.model_validate(stored).model_dump(mode="json")
    )


@router.get("/records", response_model=dict)
async def list_records(
    source: str | None = Query(default=None),
    batch_id: str | None = Query(default=None),
    pending_only: bool = Query(default=False, description="Only not yet normalized"),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    service = IngestionService(settings)
    records, total = await service.list_records(
        session,
        principal.owner_uuid,
        source=source,
        batch_id=batch_id,
        pending_only=pending_only,
        limit=limit,
        offset=offset,
    )
    return create_success_response(
        data={
            "records": [
                IngestionRecordResponse.model_validate(r).model_dump(mode="json")
                for r in records
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@router.get("/records/{record_id}", response_model=dict)
async def get_record(
    record_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    service = IngestionService(settings)
    record = await service.get_record(session, principal.owner_uuid, record_id)
    if record is None:
        raise NotFoundError("Record not found", details={"record_id": str(record_id)})
    return create_success_response(
        data=IngestionRecordResponse.model_validate(record).model_dump(mode="json")
    )


@router.post("/sync", response_model=dict)
async def complete_sync(
    sync: SyncCompletion,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Store the items of a finished sync and queue their normalization."""
    service = IngestionService(settings)
    record_ids = await service.upsert_many(
        session, principal.owner_uuid, sync.source, sync.items, batch_id=sync.batch_id
    )

    job = None
    if sync.enqueue_normalize:
        job = await JobService(settings).enqueue_normalize(
            session,
            principal.owner_uuid,
            sync.source,
            record_ids,
            batch_id=sync.batch_id,
        )

    logger.info(
        "Sync completion ingested",
        source=sync.source,
        batch_id=sync.batch_id,
        records=len(record_ids),
    )
    return create_success_response(
        data={
            "record_ids": [str(r) for r in record_ids],
            "normalize_job": job.model_dump(mode="json") if job else None,
        }
    )
