"""
Job handlers.

Each handler implements the JobHandler protocol and is registered in the
job registry under its kind by registry_init.register_job_handlers().
"""

from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.v1.core.registries import JobContext, executor_registry
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.ingestion.service import IngestionItem, IngestionService
from syncjobs.v1.jobs.exceptions import (
    HandlerConfigurationError,
    MalformedPayloadError,
)
from syncjobs.v1.jobs.models import JobKind
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)


def _parse_items(payload: dict[str, Any], source: str) -> list[IngestionItem]:
    """Accept either ``{"items": [...]}`` or a single item with a source_id."""
    if "items" in payload:
        raw_items = payload["items"]
        if not isinstance(raw_items, list):
            raise MalformedPayloadError(
                "Malformed sync payload: 'items' must be a list", provider=source
            )
    elif "source_id" in payload:
        raw_items = [payload]
    else:
        raise MalformedPayloadError(
            "Malformed sync payload: expected 'items' or 'source_id'", provider=source
        )

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise MalformedPayloadError(
                "Malformed sync payload: item must be an object", provider=source
            )
        try:
            items.append(
                IngestionItem(
                    source_id=str(raw.get("source_id") or ""),
                    payload=raw.get("content") or raw.get("payload") or {},
                    source_meta=raw.get("source_meta") or {},
                    occurred_at=raw.get("occurred_at"),
                    linked_entity_id=raw.get("linked_entity_id"),
                )
            )
        except PydanticValidationError as e:
            raise MalformedPayloadError(
                f"Malformed sync item: {e.errors()[0]['msg']}", provider=source
            ) from e
    return items


class SyncIngestionHandler:
    """
    Upserts synced items and queues their normalization.

    Payload expected:
    {
        "items": [{"source_id": "...", "content": {...}, "source_meta": {...}}],
        "source": "provider_x",        # ingestion_batch only
        "enqueue_normalize": true      # optional
    }
    A single item may also be given inline with its source_id.
    """

    def __init__(self, settings: Settings, source: str | None = None):
        self.settings = settings
        self.source = source
        self.ingestion = IngestionService(settings)
        self.jobs = JobService(settings)

    async def handle(
        self,
        session: AsyncSession,
        ctx: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        source = self.source or payload.get("source")
        if not source:
            raise MalformedPayloadError("Malformed ingestion payload: missing 'source'")

        items = _parse_items(payload, source)
        record_ids = await self.ingestion.upsert_many(
            session, ctx.owner_id, source, items, batch_id=ctx.batch_id
        )

        normalize_job_id = None
        if record_ids and payload.get("enqueue_normalize", True):
            response = await self.jobs.enqueue_normalize(
                session, ctx.owner_id, source, record_ids, batch_id=ctx.batch_id
            )
            normalize_job_id = str(response.job_id)

        logger.info(
            "Sync items ingested",
            job_id=str(ctx.job_id),
            source=source,
            count=len(record_ids),
        )
        return {
            "source": source,
            "records": len(record_ids),
            "record_ids": [str(r) for r in record_ids],
            "normalize_job_id": normalize_job_id,
        }


class NormalizeHandler:
    """
    Normalizes ingestion records.

    Payload expected:
    {"record_ids": ["uuid", ...]}  or  {"batch_id": "..."} for every
    pending record of a batch.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.ingestion = IngestionService(settings)

    async def handle(
        self,
        session: AsyncSession,
        ctx: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        if "record_ids" in payload:
            try:
                record_ids = [UUID(str(r)) for r in payload["record_ids"]]
            except (TypeError, ValueError):
                raise MalformedPayloadError(
                    "Malformed normalize payload: invalid record_ids"
                ) from None
        else:
            batch_id = payload.get("batch_id") or ctx.batch_id
            if not batch_id:
                raise MalformedPayloadError(
                    "Malformed normalize payload: expected 'record_ids' or 'batch_id'"
                )
            records, _ = await self.ingestion.list_records(
                session, ctx.owner_id, batch_id=batch_id, pending_only=True, limit=1000
            )
            record_ids = [r.id for r in records]

        normalized = await self.ingestion.normalize_records(
            session, ctx.owner_id, record_ids
        )
        return {"normalized": len(normalized), "requested": len(record_ids)}


class DelegatedWorkHandler:
    """
    Hands embed and insight work to the executor registered for the kind.

    The executor itself is opaque here; a missing registration is a
    configuration problem, not a transient one.
    """

    def __init__(self, settings: Settings, kind: JobKind):
        self.settings = settings
        self.kind = kind

    async def handle(
        self,
        session: AsyncSession,
        ctx: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        if not executor_registry.has(self.kind.value):
            raise HandlerConfigurationError(
                f"Configuration error: no executor registered for {self.kind.value}"
            )
        executor = executor_registry.get(self.kind.value)
        result = await executor.execute(ctx.owner_id, payload)
        return result or {"status": "completed"}


class CleanupHandler:
    """
    Removes old terminal jobs and old resolved errors for the owner.

    Payload: {"job_retention_days": int?, "error_retention_days": int?}
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.jobs = JobService(settings)
        self.tracker = ErrorTracker(settings)

    async def handle(
        self,
        session: AsyncSession,
        ctx: JobContext,
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        jobs_deleted = await self.jobs.cleanup_old_jobs(
            session, ctx.owner_id, payload.get("job_retention_days")
        )
        errors_deleted = await self.tracker.cleanup_old_errors(
            session, ctx.owner_id, payload.get("error_retention_days")
        )
        return {"jobs_deleted": jobs_deleted, "errors_deleted": errors_deleted}
