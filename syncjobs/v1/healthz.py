from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings, SettingsDep
from syncjobs.infra.database import get_session
from syncjobs.v1.core.exceptions import create_success_response
from syncjobs.v1.errors.models import ErrorRecord
from syncjobs.v1.jobs.models import PENDING_STATUSES, Job, JobStatus

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue status across all owners."""

    queue_depth: int = 0
    stuck_jobs_count: int = 0
    failed_last_hour: int = 0
    unresolved_errors: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database and job queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except SQLAlchemyError as e:
            # Queue stats are informational; connectivity already passed
            logger.warning("Queue health check failed", error=str(e))

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))
        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )
    except (SQLAlchemyError, OSError) as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(
    session: AsyncSession, settings: Settings
) -> QueueHealth:
    now = datetime.now(UTC)

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([s.value for s in PENDING_STATUSES])
        )
    )

    stuck_cutoff = now - timedelta(minutes=settings.job_stuck_threshold_minutes)
    stuck_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.PROCESSING.value, Job.updated_at < stuck_cutoff
        )
    )

    failed_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status == JobStatus.ERROR.value,
            Job.updated_at >= now - timedelta(hours=1),
        )
    )

    unresolved_result = await session.execute(
        select(func.count(ErrorRecord.id)).where(ErrorRecord.resolved_at.is_(None))
    )

    return QueueHealth(
        queue_depth=queue_depth_result.scalar() or 0,
        stuck_jobs_count=stuck_result.scalar() or 0,
        failed_last_hour=failed_result.scalar() or 0,
        unresolved_errors=unresolved_result.scalar() or 0,
    )
