"""
Error tracker: persists classified failures and aggregates them.
"""

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.infra.database import get_database
from syncjobs.v1.errors.classification import (
    Classification,
    ErrorContext,
    ErrorSeverity,
    classify,
)
from syncjobs.v1.errors.models import ErrorRecord
from syncjobs.v1.errors.schemas import ErrorRecordResponse, ErrorSummary

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4000


def summarize(
    records: Sequence[ErrorRecord],
    time_range_hours: int,
    sample_size: int,
) -> ErrorSummary:
    """
    Aggregate records (newest first) into a summary.

    Records without a classification count under ``unknown`` for both
    category and severity.
    """
    by_category = Counter(r.category for r in records)
    by_severity = Counter(r.severity for r in records)
    critical = [r for r in records if r.severity == ErrorSeverity.CRITICAL.value]
    retryable = [r for r in records if r.retryable and not r.is_resolved]
    resolved_count = sum(1 for r in records if r.is_resolved)

    def _dump(rows: Iterable[ErrorRecord]) -> list[ErrorRecordResponse]:
        return [ErrorRecordResponse.model_validate(r) for r in rows]

    return ErrorSummary(
        time_range_hours=time_range_hours,
        total_errors=len(records),
        by_category=dict(by_category),
        by_severity=dict(by_severity),
        critical_count=len(critical),
        retryable_count=len(retryable),
        resolved_count=resolved_count,
        pending_count=len(records) - resolved_count,
        critical_errors=_dump(critical[:sample_size]),
        retryable_errors=_dump(retryable[:sample_size]),
        recent_errors=_dump(records[:sample_size]),
    )


class ErrorTracker:
    """Service for persisting and reading ErrorRecords."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.settings = settings
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_database().SessionLocal
        return self._session_factory

    async def record_error(
        self,
        owner_id: UUID,
        error: BaseException | str,
        context: ErrorContext | dict[str, Any] | None = None,
        classification: Classification | None = None,
        job_id: UUID | None = None,
    ) -> ErrorRecord | None:
        """
        Classify and persist one failure in a dedicated session.

        Tracker faults are logged and swallowed so the caller's own error
        handling always completes; in that case None is returned.
        """
        try:
            if not isinstance(context, ErrorContext):
                context = ErrorContext(**(context or {}))
            classification = classification or classify(error, context)
            message = (
                str(error) if isinstance(error, BaseException) else error
            ) or classification.technical_message

            record = ErrorRecord(
                owner_id=owner_id,
                job_id=job_id,
                provider=context.provider,
                stage=context.stage.value if context.stage else None,
                occurred_at=datetime.now(UTC),
                raw_message=message[:MAX_MESSAGE_LENGTH],
                classification=classification.model_dump(mode="json"),
                context=context.model_dump(mode="json", exclude_none=True),
                retry_count=0,
                user_acknowledged=False,
            )
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()

            logger.info(
                "Error recorded",
                error_id=str(record.id),
                owner_id=str(owner_id),
                job_id=str(job_id) if job_id else None,
                category=classification.category.value,
                severity=classification.severity.value,
            )
            return record
        except Exception:
            logger.exception(
                "Failed to record error",
                owner_id=str(owner_id),
                job_id=str(job_id) if job_id else None,
            )
            return None

    async def fetch_window(
        self,
        session: AsyncSession,
        owner_id: UUID,
        time_range_hours: int = 24,
        include_resolved: bool = False,
        provider: str | None = None,
        stage: str | None = None,
        severity: str | None = None,
    ) -> list[ErrorRecord]:
        """Errors in the time window, newest first, capped at the scan limit."""
        since = datetime.now(UTC) - timedelta(hours=time_range_hours)
        query = select(ErrorRecord).where(
            and_(ErrorRecord.owner_id == owner_id, ErrorRecord.occurred_at >= since)
        )
        if not include_resolved:
            query = query.where(ErrorRecord.resolved_at.is_(None))
        if provider:
            query = query.where(ErrorRecord.provider == provider)
        if stage:
            query = query.where(ErrorRecord.stage == stage)
        query = (
            query.order_by(ErrorRecord.occurred_at.desc())
            .limit(self.settings.error_summary_scan_limit)
            .execution_options(populate_existing=True)
        )

        result = await session.execute(query)
        records = list(result.scalars().all())
        if severity:
            records = [r for r in records if r.severity == severity]
        return records

    async def get_summary(
        self,
        session: AsyncSession,
        owner_id: UUID,
        time_range_hours: int = 24,
        include_resolved: bool = False,
        provider: str | None = None,
        stage: str | None = None,
    ) -> ErrorSummary:
        records = await self.fetch_window(
            session,
            owner_id,
            time_range_hours=time_range_hours,
            include_resolved=include_resolved,
            provider=provider,
            stage=stage,
        )
        return summarize(
            records, time_range_hours, self.settings.error_summary_sample_size
        )

    async def list_errors(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID | None = None,
        include_resolved: bool = True,
        limit: int = 50,
    ) -> list[ErrorRecord]:
        query = select(ErrorRecord).where(ErrorRecord.owner_id == owner_id)
        if job_id is not None:
            query = query.where(ErrorRecord.job_id == job_id)
        if not include_resolved:
            query = query.where(ErrorRecord.resolved_at.is_(None))
        result = await session.execute(
            query.order_by(ErrorRecord.occurred_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_error(
        self, session: AsyncSession, owner_id: UUID, error_id: UUID
    ) -> ErrorRecord | None:
        result = await session.execute(
            select(ErrorRecord)
            .where(and_(ErrorRecord.id == error_id, ErrorRecord.owner_id == owner_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_errors_by_ids(
        self, session: AsyncSession, owner_id: UUID, error_ids: Iterable[UUID]
    ) -> list[ErrorRecord]:
        ids = list(error_ids)
        if not ids:
            return []
        result = await session.execute(
            select(ErrorRecord)
            .where(and_(ErrorRecord.owner_id == owner_id, ErrorRecord.id.in_(ids)))
            .order_by(ErrorRecord.occurred_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def latest_errors_for_jobs(
        self, session: AsyncSession, owner_id: UUID, job_ids: Iterable[UUID]
    ) -> dict[UUID, ErrorRecord]:
        """Most recent unresolved error per job."""
        ids = list(job_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(ErrorRecord)
            .where(
                and_(
                    ErrorRecord.owner_id == owner_id,
                    ErrorRecord.job_id.in_(ids),
                    ErrorRecord.resolved_at.is_(None),
                )
            )
            .order_by(ErrorRecord.occurred_at.desc())
            .execution_options(populate_existing=True)
        )
        latest: dict[UUID, ErrorRecord] = {}
        for record in result.scalars().all():
            latest.setdefault(record.job_id, record)
        return latest

    async def acknowledge_error(
        self, session: AsyncSession, owner_id: UUID, error_id: UUID
    ) -> bool:
        """Mark an error as seen by the user."""
        result = await session.execute(
            update(ErrorRecord)
            .where(
                and_(
                    ErrorRecord.id == error_id,
                    ErrorRecord.owner_id == owner_id,
                    ErrorRecord.user_acknowledged.is_(False),
                )
            )
            .values(user_acknowledged=True, acknowledged_at=datetime.now(UTC))
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Error acknowledged", error_id=str(error_id))
        return success

    async def resolve_error(
        self,
        session: AsyncSession,
        owner_id: UUID,
        error_id: UUID,
        method: str,
    ) -> bool:
        """Mark an error resolved; an already resolved error stays untouched."""
        result = await session.execute(
            update(ErrorRecord)
            .where(
                and_(
                    ErrorRecord.id == error_id,
                    ErrorRecord.owner_id == owner_id,
                    ErrorRecord.resolved_at.is_(None),
                )
            )
            .values(resolved_at=datetime.now(UTC), resolution_method=method)
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Error resolved", error_id=str(error_id), method=method)
        return success

    async def resolve_errors_for_job(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        method: str,
    ) -> int:
        """Resolve every open error of a job, e.g. after it finally succeeded."""
        result = await session.execute(
            update(ErrorRecord)
            .where(
                and_(
                    ErrorRecord.owner_id == owner_id,
                    ErrorRecord.job_id == job_id,
                    ErrorRecord.resolved_at.is_(None),
                )
            )
            .values(resolved_at=datetime.now(UTC), resolution_method=method)
        )
        await session.commit()
        if result.rowcount:
            logger.info(
                "Job errors resolved",
                job_id=str(job_id),
                count=result.rowcount,
                method=method,
            )
        return result.rowcount

    async def record_retry_attempt(
        self, session: AsyncSession, owner_id: UUID, error_id: UUID
    ) -> bool:
        result = await session.execute(
            update(ErrorRecord)
            .where(and_(ErrorRecord.id == error_id, ErrorRecord.owner_id == owner_id))
            .values(
                retry_count=ErrorRecord.retry_count + 1,
                last_retry_at=datetime.now(UTC),
            )
        )
        await session.commit()
        return result.rowcount > 0

    async def get_retryable_errors(
        self,
        session: AsyncSession,
        owner_id: UUID,
        max_retry_count: int,
        provider: str | None = None,
        category: str | None = None,
        min_retry_interval_minutes: int = 0,
        limit: int = 50,
    ) -> list[ErrorRecord]:
        """
        Unresolved, unacknowledged, retryable errors under the retry ceiling,
        newest first.
        """
        conditions = [
            ErrorRecord.owner_id == owner_id,
            ErrorRecord.resolved_at.is_(None),
            ErrorRecord.user_acknowledged.is_(False),
            ErrorRecord.retry_count < max_retry_count,
        ]
        if provider:
            conditions.append(ErrorRecord.provider == provider)
        if min_retry_interval_minutes > 0:
            cutoff = datetime.now(UTC) - timedelta(minutes=min_retry_interval_minutes)
            conditions.append(
                or_(
                    ErrorRecord.last_retry_at.is_(None),
                    ErrorRecord.last_retry_at < cutoff,
                )
            )

        result = await session.execute(
            select(ErrorRecord)
            .where(and_(*conditions))
            .order_by(ErrorRecord.occurred_at.desc())
            .limit(self.settings.error_summary_scan_limit)
            .execution_options(populate_existing=True)
        )
        records = [
            r
            for r in result.scalars().all()
            if r.retryable and (category is None or r.category == category)
        ]
        return records[:limit]

    async def cleanup_old_errors(
        self,
        session: AsyncSession,
        owner_id: UUID | None = None,
        retention_days: int | None = None,
    ) -> int:
        """Delete resolved or acknowledged errors past the retention period."""
        retention_days = retention_days or self.settings.error_retention_days
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)

        conditions = [
            ErrorRecord.occurred_at < cutoff,
            or_(
                ErrorRecord.resolved_at.is_not(None),
                ErrorRecord.user_acknowledged.is_(True),
            ),
        ]
        if owner_id is not None:
            conditions.append(ErrorRecord.owner_id == owner_id)

        result = await session.execute(delete(ErrorRecord).where(and_(*conditions)))
        await session.commit()

        logger.info(
            "Old errors cleaned up",
            retention_days=retention_days,
            deleted_count=result.rowcount,
        )
        return result.rowcount
