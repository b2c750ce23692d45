"""
Error API endpoints: health summary, retry and user actions on errors.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings, SettingsDep
from syncjobs.infra.database import Database, get_database, get_session
from syncjobs.v1.core.exceptions import NotFoundError, create_success_response
from syncjobs.v1.core.security import Principal, PrincipalDep
from syncjobs.v1.errors.classification import ErrorSeverity, ErrorStage
from syncjobs.v1.errors.retry import RetryOrchestrator
from syncjobs.v1.errors.schemas import (
    ErrorActionResponse,
    ErrorRecordResponse,
    ErrorSummaryQuery,
    RetryOptions,
)
from syncjobs.v1.errors.summary import ErrorSummaryService
from syncjobs.v1.errors.tracker import ErrorTracker

logger = get_logger(__name__)
router = APIRouter(prefix="/errors", tags=["errors"])


@router.get("/summary", response_model=dict)
async def get_error_summary(
    time_range_hours: int = Query(default=24, ge=1, le=168),
    include_resolved: bool = Query(default=False),
    provider: str | None = Query(default=None),
    stage: ErrorStage | None = Query(default=None),
    severity_filter: ErrorSeverity | None = Query(default=None),
    include_details: bool = Query(default=True),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Error health report with urgency, patterns and next steps."""
    query = ErrorSummaryQuery(
        time_range_hours=time_range_hours,
        include_resolved=include_resolved,
        provider=provider,
        stage=stage,
        severity_filter=severity_filter,
        include_details=include_details,
    )
    service = ErrorSummaryService(
        settings, tracker=ErrorTracker(settings, database.SessionLocal)
    )
    result = await service.get_error_summary(session, principal.owner_uuid, query)
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_errors(
    job_id: UUID | None = Query(default=None),
    include_resolved: bool = Query(default=True),
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Most recent errors, optionally for one job."""
    tracker = ErrorTracker(settings)
    records = await tracker.list_errors(
        session,
        principal.owner_uuid,
        job_id=job_id,
        include_resolved=include_resolved,
        limit=limit,
    )
    return create_success_response(
        data={
            "errors": [
                ErrorRecordResponse.model_validate(r).model_dump(mode="json")
                for r in records
            ],
            "total": len(records),
        }
    )


@router.post("/retry", response_model=dict)
async def retry_errors(
    options: RetryOptions,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry failed jobs by error id, job id or filter."""
    orchestrator = RetryOrchestrator(settings, session_factory=database.SessionLocal)
    result = await orchestrator.retry(session, principal.owner_uuid, options)
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/retry/eligibility", response_model=dict)
async def get_retry_eligibility(
    error_ids: list[UUID] | None = Query(default=None),
    max_retries: int | None = Query(default=None, ge=1, le=10),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Whether each error would be picked up by automatic retry, and why."""
    orchestrator = RetryOrchestrator(settings, session_factory=database.SessionLocal)
    report = await orchestrator.get_retry_eligibility(
        session, principal.owner_uuid, error_ids=error_ids, max_retries=max_retries
    )
    return create_success_response(
        data={
            "errors": [r.model_dump(mode="json") for r in report],
            "eligible": sum(1 for r in report if r.eligible),
        }
    )


@router.get("/retry/stats", response_model=dict)
async def get_retry_statistics(
    time_range_hours: int = Query(default=168, ge=1, le=720),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry effectiveness over a time window."""
    orchestrator = RetryOrchestrator(settings, session_factory=database.SessionLocal)
    stats = await orchestrator.get_retry_statistics(
        session, principal.owner_uuid, time_range_hours=time_range_hours
    )
    return create_success_response(data=stats.model_dump())


@router.post("/{error_id}/acknowledge", response_model=dict)
async def acknowledge_error(
    error_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark an error as seen; acknowledged errors leave the automatic retry pool."""
    tracker = ErrorTracker(settings)
    if await tracker.get_error(session, principal.owner_uuid, error_id) is None:
        raise NotFoundError("Error not found", details={"error_id": str(error_id)})

    changed = await tracker.acknowledge_error(session, principal.owner_uuid, error_id)
    response = ErrorActionResponse(error_id=error_id, changed=changed)
    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/{error_id}/resolve", response_model=dict)
async def resolve_error(
    error_id: UUID,
    method: str = Query(default="manual", max_length=50),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark an error resolved by hand."""
    tracker = ErrorTracker(settings)
    if await tracker.get_error(session, principal.owner_uuid, error_id) is None:
        raise NotFoundError("Error not found", details={"error_id": str(error_id)})

    changed = await tracker.resolve_error(
        session, principal.owner_uuid, error_id, method=method
    )
    response = ErrorActionResponse(error_id=error_id, changed=changed)
    return create_success_response(data=response.model_dump(mode="json"))
