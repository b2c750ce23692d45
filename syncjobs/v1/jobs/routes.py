"""
Job API endpoints.

Enqueueing, runner invocation, monitoring and the operator actions on
stuck or failed jobs.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings, SettingsDep
from syncjobs.infra.database import Database, get_database, get_session
from syncjobs.v1.core.exceptions import NotFoundError, create_success_response
from syncjobs.v1.core.security import Principal, PrincipalDep
from syncjobs.v1.jobs.models import JobKind, JobStatus
from syncjobs.v1.jobs.runner import JobRunner
from syncjobs.v1.jobs.schemas import (
    JobActionResponse,
    JobBatchCreate,
    JobCreate,
    JobListResponse,
    JobResponse,
    RunJobsRequest,
    StuckJobResponse,
)
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_response(job, settings: Settings) -> JobResponse:
    data = JobResponse.model_validate(job)
    data.is_stuck = job.is_stuck(settings.job_stuck_threshold_minutes)
    return data


@router.post("", response_model=dict)
async def enqueue_job(
    job_create: JobCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""
    job_service = JobService(settings)
    result = await job_service.enqueue_job(session, principal.owner_uuid, job_create)
    return create_success_response(data=result.model_dump(mode="json"))


@router.post("/batch", response_model=dict)
async def enqueue_batch(
    batch: JobBatchCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue one job per payload under a shared batch id."""
    job_service = JobService(settings)
    results = await job_service.enqueue_batch(
        session, principal.owner_uuid, batch.kind, batch.batch_id, batch.payloads
    )
    return create_success_response(
        data={
            "batch_id": batch.batch_id,
            "jobs": [r.model_dump(mode="json") for r in results],
            "deduplicated": sum(1 for r in results if r.deduplicated),
        }
    )


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    kind: JobKind | None = Query(default=None, description="Filter by job kind"),
    batch_id: str | None = Query(default=None, description="Filter by batch"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session,
        principal.owner_uuid,
        statuses=status,
        kind=kind.value if kind else None,
        batch_id=batch_id,
        limit=limit,
        offset=offset,
    )

    response_data = JobListResponse(
        jobs=[_job_response(job, settings) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics for the owner."""
    job_service = JobService(settings)
    stats = await job_service.get_job_stats(session, principal.owner_uuid)
    return create_success_response(data=stats.model_dump())


@router.get("/stuck", response_model=dict)
async def list_stuck_jobs(
    threshold_minutes: int | None = Query(
        default=None, ge=1, description="Override the stuck threshold"
    ),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Processing jobs that stopped making progress."""
    job_service = JobService(settings)
    jobs = await job_service.get_stuck_jobs(
        session, principal.owner_uuid, threshold_minutes=threshold_minutes
    )
    now = datetime.now(UTC)
    stuck = [
        StuckJobResponse(
            id=job.id,
            kind=job.kind,
            attempts=job.attempts,
            batch_id=job.batch_id,
            updated_at=job.updated_at,
            stuck_for_minutes=int((now - job.updated_at).total_seconds() // 60),
        ).model_dump(mode="json")
        for job in jobs
    ]
    return create_success_response(data={"jobs": stuck, "total": len(stuck)})


@router.post("/run", response_model=dict)
async def run_jobs(
    request: RunJobsRequest,
    principal: Principal = PrincipalDep,
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Process eligible jobs for the owner and report what happened."""
    runner = JobRunner(settings, session_factory=database.SessionLocal)
    result = await runner.run(
        principal.owner_uuid,
        max_jobs=request.max_jobs,
        kinds=[k.value for k in request.kinds] if request.kinds else None,
        batch_id=request.batch_id,
        include_retrying=request.include_retrying,
        skip_stuck_jobs=request.skip_stuck_jobs,
    )
    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job_service = JobService(settings)
    job = await job_service.get_job(session, principal.owner_uuid, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})

    return create_success_response(
        data=_job_response(job, settings).model_dump(mode="json")
    )


@router.post("/{job_id}/requeue", response_model=dict)
async def requeue_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Put a failed, retrying or stuck job back in the queue."""
    job_service = JobService(settings)
    job, changed = await job_service.requeue_job(session, principal.owner_uuid, job_id)
    if job is None:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})

    logger.info("Job requeue requested", job_id=str(job_id), changed=changed)
    response = JobActionResponse(job_id=job.id, status=job.status, changed=changed)
    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/{job_id}/terminate", response_model=dict)
async def terminate_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Mark a stuck job as failed."""
    job_service = JobService(settings)
    job, changed = await job_service.terminate_job(
        session, principal.owner_uuid, job_id
    )
    if job is None:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})

    response = JobActionResponse(job_id=job.id, status=job.status, changed=changed)
    return create_success_response(data=response.model_dump(mode="json"))
