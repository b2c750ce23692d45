"""
Job store service: enqueueing, compare-and-set transitions and queries.
"""

import hashlib
import json
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.v1.core.exceptions import ValidationError
from syncjobs.v1.jobs.exceptions import InvalidTransitionError
from syncjobs.v1.jobs.models import (
    CLAIMABLE_STATUSES,
    PENDING_STATUSES,
    Job,
    JobKind,
    JobStatus,
    is_allowed_transition,
)
from syncjobs.v1.jobs.schemas import JobCreate, JobEnqueueResponse, JobStatsResponse

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


def _values(statuses: Iterable[JobStatus | str]) -> list[str]:
    return [s.value if isinstance(s, JobStatus) else s for s in statuses]


class JobService:
    """Service for the job store."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # Enqueue

    async def enqueue_job(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_create: JobCreate,
    ) -> JobEnqueueResponse:
        """
        Enqueue a new job.

        With a batch_id (or explicit dedupe_key) the call is idempotent: the
        same (owner, kind, batch, payload) returns the existing job whatever
        its status. Without one every call creates a new row.
        """
        kind = JobKind(job_create.kind).value
        dedupe_key = job_create.dedupe_key
        if dedupe_key is None and job_create.batch_id:
            dedupe_key = self.generate_dedupe_key(
                kind, job_create.batch_id, job_create.payload
            )

        if dedupe_key:
            existing_job = await self._find_existing_job(session, owner_id, dedupe_key)
            if existing_job:
                logger.info(
                    "Job deduplicated",
                    job_id=str(existing_job.id),
                    dedupe_key=dedupe_key,
                    kind=kind,
                    owner_id=str(owner_id),
                )
                return JobEnqueueResponse(
                    job_id=existing_job.id,
                    status=existing_job.status,
                    deduplicated=True,
                )

        now = datetime.now(UTC)
        job = Job(
            id=uuid.uuid4(),
            owner_id=owner_id,
            kind=kind,
            status=JobStatus.QUEUED.value,
            attempts=0,
            batch_id=job_create.batch_id,
            payload=job_create.payload,
            dedupe_key=dedupe_key,
            created_at=now,
            updated_at=now,
        )

        try:
            session.add(job)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            # Another enqueuer won the race for the same dedupe key
            if dedupe_key:
                existing_job = await self._find_existing_job(
                    session, owner_id, dedupe_key
                )
                if existing_job:
                    return JobEnqueueResponse(
                        job_id=existing_job.id,
                        status=existing_job.status,
                        deduplicated=True,
                    )
            raise

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            kind=kind,
            batch_id=job_create.batch_id,
            owner_id=str(owner_id),
        )
        return JobEnqueueResponse(job_id=job.id, status=job.status, deduplicated=False)

    async def enqueue_batch(
        self,
        session: AsyncSession,
        owner_id: UUID,
        kind: JobKind | str,
        batch_id: str,
        payloads: Sequence[dict[str, Any]],
    ) -> list[JobEnqueueResponse]:
        """Enqueue one job per payload under a shared batch key."""
        if not batch_id:
            raise ValidationError("batch_id is required for batch enqueue")
        responses = []
        for payload in payloads:
            responses.append(
                await self.enqueue_job(
                    session,
                    owner_id,
                    JobCreate(kind=kind, payload=payload, batch_id=batch_id),
                )
            )
        return responses

    async def enqueue_normalize(
        self,
        session: AsyncSession,
        owner_id: UUID,
        source: str,
        record_ids: Sequence[UUID],
        batch_id: str | None = None,
    ) -> JobEnqueueResponse:
        """
        Queue normalization for freshly upserted records.

        Re-ingestion clears normalized_at, so every sync needs its own
        normalize job. The ingest revision keeps the dedupe key distinct
        from the job queued by an earlier sync of the same batch.
        """
        return await self.enqueue_job(
            session,
            owner_id,
            JobCreate(
                kind=JobKind.NORMALIZE,
                payload={
                    "source": source,
                    "record_ids": [str(r) for r in record_ids],
                    "revision": datetime.now(UTC).isoformat(),
                },
                batch_id=batch_id,
            ),
        )

    async def _find_existing_job(
        self, session: AsyncSession, owner_id: UUID, dedupe_key: str
    ) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(and_(Job.owner_id == owner_id, Job.dedupe_key == dedupe_key))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def generate_dedupe_key(
        self, kind: str, batch_id: str, payload: dict[str, Any] | None = None
    ) -> str:
        """Generate a deterministic deduplication key for a batch job."""
        fingerprint = json.dumps(payload or {}, sort_keys=True, default=str)
        key_data = f"{kind}:{batch_id}:{fingerprint}"
        return hashlib.sha256(key_data.encode()).hexdigest()[:32]

    # Transitions

    async def transition(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        expected: JobStatus,
        new: JobStatus,
        **values: Any,
    ) -> bool:
        """
        Atomically move a job from ``expected`` to ``new``.

        Returns False when the row is no longer in ``expected`` status (someone
        else got there first). ``attempts`` is bumped on entry to processing.
        """
        if not is_allowed_transition(expected, new):
            raise InvalidTransitionError(expected.value, new.value)

        now = datetime.now(UTC)
        update_values: dict[str, Any] = {
            "status": new.value,
            "updated_at": now,
            **values,
        }
        if new == JobStatus.PROCESSING:
            update_values["attempts"] = Job.attempts + 1

        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.owner_id == owner_id,
                    Job.status == expected.value,
                )
            )
            .values(**update_values)
        )
        await session.commit()

        changed = result.rowcount == 1
        if not changed:
            logger.debug(
                "Job transition rejected",
                job_id=str(job_id),
                expected=expected.value,
                new=new.value,
            )
        return changed

    async def claim(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        expected: JobStatus,
    ) -> bool:
        """Claim a queued or retrying job for processing."""
        return await self.transition(
            session, owner_id, job_id, expected, JobStatus.PROCESSING
        )

    async def reclaim_stuck(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        cutoff: datetime,
    ) -> bool:
        """
        Take over a processing job whose last update predates ``cutoff``.

        Only used when an operator opts in to reprocessing stuck jobs. The
        refreshed ``updated_at`` makes the row non-stuck again, so a second
        reclaimer racing on the same row loses.
        """
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.owner_id == owner_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.updated_at < cutoff,
                )
            )
            .values(
                attempts=Job.attempts + 1,
                updated_at=datetime.now(UTC),
            )
        )
        await session.commit()
        return result.rowcount == 1

    async def mark_done(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        result: dict[str, Any] | None = None,
    ) -> bool:
        return await self.transition(
            session,
            owner_id,
            job_id,
            JobStatus.PROCESSING,
            JobStatus.DONE,
            result=result,
            run_after=None,
        )

    async def mark_error(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        message: str,
    ) -> bool:
        return await self.transition(
            session,
            owner_id,
            job_id,
            JobStatus.PROCESSING,
            JobStatus.ERROR,
            last_error=message[:MAX_ERROR_LENGTH],
        )

    async def schedule_retry(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job_id: UUID,
        run_after: datetime,
    ) -> bool:
        """Park a failed job in retrying until ``run_after``."""
        return await self.transition(
            session,
            owner_id,
            job_id,
            JobStatus.ERROR,
            JobStatus.RETRYING,
            run_after=run_after,
        )

    async def reactivate(
        self, session: AsyncSession, owner_id: UUID, job_id: UUID
    ) -> bool:
        """Put a failed job straight back into the queue."""
        return await self.transition(
            session,
            owner_id,
            job_id,
            JobStatus.ERROR,
            JobStatus.QUEUED,
            run_after=None,
        )

    async def requeue_job(
        self, session: AsyncSession, owner_id: UUID, job_id: UUID
    ) -> tuple[Job | None, bool]:
        """
        Operator requeue: failed jobs, retrying jobs and stuck processing
        jobs go back to queued. Returns the refreshed job and whether the
        status changed.
        """
        job = await self.get_job(session, owner_id, job_id)
        if job is None:
            return None, False

        status = JobStatus(job.status)
        changed = False
        if status == JobStatus.PROCESSING:
            if job.is_stuck(self.settings.job_stuck_threshold_minutes):
                changed = await self._cas_stuck(
                    session, job, JobStatus.QUEUED, run_after=None
                )
        elif status in (JobStatus.ERROR, JobStatus.RETRYING):
            changed = await self.transition(
                session, owner_id, job_id, status, JobStatus.QUEUED, run_after=None
            )

        if changed:
            logger.info("Job requeued", job_id=str(job_id), previous=status.value)
        return await self.get_job(session, owner_id, job_id), changed

    async def terminate_job(
        self, session: AsyncSession, owner_id: UUID, job_id: UUID
    ) -> tuple[Job | None, bool]:
        """Operator termination of a stuck processing job (marks it error)."""
        job = await self.get_job(session, owner_id, job_id)
        if job is None:
            return None, False

        changed = False
        if job.is_stuck(self.settings.job_stuck_threshold_minutes):
            minutes = int(
                (datetime.now(UTC) - job.updated_at).total_seconds() // 60
            )
            changed = await self._cas_stuck(
                session,
                job,
                JobStatus.ERROR,
                last_error=f"Job timed out: terminated after {minutes} minutes in processing",
            )

        if changed:
            logger.warning("Stuck job terminated", job_id=str(job_id))
        return await self.get_job(session, owner_id, job_id), changed

    async def _cas_stuck(
        self, session: AsyncSession, job: Job, new: JobStatus, **values: Any
    ) -> bool:
        # Guard on updated_at as well so a job that resumed is left alone
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.owner_id == job.owner_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.updated_at == job.updated_at,
                )
            )
            .values(status=new.value, updated_at=datetime.now(UTC), **values)
        )
        await session.commit()
        return result.rowcount == 1

    # Queries

    async def get_job(
        self, session: AsyncSession, owner_id: UUID, job_id: UUID
    ) -> Job | None:
        """Get job by ID scoped to its owner."""
        result = await session.execute(
            select(Job)
            .where(and_(Job.id == job_id, Job.owner_id == owner_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_jobs_by_ids(
        self, session: AsyncSession, owner_id: UUID, job_ids: Iterable[UUID]
    ) -> dict[UUID, Job]:
        ids = list(job_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(Job)
            .where(and_(Job.owner_id == owner_id, Job.id.in_(ids)))
            .execution_options(populate_existing=True)
        )
        return {job.id: job for job in result.scalars().all()}

    async def list_jobs(
        self,
        session: AsyncSession,
        owner_id: UUID,
        statuses: Sequence[JobStatus] | None = None,
        kind: str | None = None,
        batch_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with filters; returns (page, total)."""
        base_query = select(Job).where(Job.owner_id == owner_id)
        if statuses:
            base_query = base_query.where(Job.status.in_(_values(statuses)))
        if kind:
            base_query = base_query.where(Job.kind == kind)
        if batch_id:
            base_query = base_query.where(Job.batch_id == batch_id)

        total_result = await session.execute(
            select(func.count()).select_from(base_query.subquery())
        )
        total = total_result.scalar() or 0

        jobs_result = await session.execute(
            base_query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    def _eligible_filter(
        self,
        owner_id: UUID | None,
        statuses: Sequence[JobStatus],
        kinds: Sequence[str] | None,
        batch_id: str | None,
        now: datetime,
    ):
        clauses = [
            Job.status.in_(_values(statuses)),
            or_(Job.run_after.is_(None), Job.run_after <= now),
        ]
        if owner_id is not None:
            clauses.append(Job.owner_id == owner_id)
        if kinds:
            clauses.append(Job.kind.in_([JobKind(k).value for k in kinds]))
        if batch_id:
            clauses.append(Job.batch_id == batch_id)
        return and_(*clauses)

    async def select_eligible(
        self,
        session: AsyncSession,
        owner_id: UUID,
        limit: int,
        statuses: Sequence[JobStatus] = CLAIMABLE_STATUSES,
        kinds: Sequence[str] | None = None,
        batch_id: str | None = None,
        now: datetime | None = None,
    ) -> list[Job]:
        """Oldest-first jobs whose status is claimable and not-before has passed."""
        now = now or datetime.now(UTC)
        result = await session.execute(
            select(Job)
            .where(self._eligible_filter(owner_id, statuses, kinds, batch_id, now))
            .order_by(Job.created_at, Job.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_eligible(
        self,
        session: AsyncSession,
        owner_id: UUID,
        statuses: Sequence[JobStatus] = CLAIMABLE_STATUSES,
        kinds: Sequence[str] | None = None,
        batch_id: str | None = None,
    ) -> int:
        result = await session.execute(
            select(func.count(Job.id)).where(
                self._eligible_filter(
                    owner_id, statuses, kinds, batch_id, datetime.now(UTC)
                )
            )
        )
        return result.scalar() or 0

    def stuck_cutoff(self, threshold_minutes: int | None = None) -> datetime:
        minutes = (
            threshold_minutes
            if threshold_minutes is not None
            else self.settings.job_stuck_threshold_minutes
        )
        return datetime.now(UTC) - timedelta(minutes=minutes)

    async def get_stuck_jobs(
        self,
        session: AsyncSession,
        owner_id: UUID | None,
        threshold_minutes: int | None = None,
        kinds: Sequence[str] | None = None,
        batch_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Processing jobs whose last update is older than the stuck threshold."""
        query = select(Job).where(
            and_(
                Job.status == JobStatus.PROCESSING.value,
                Job.updated_at < self.stuck_cutoff(threshold_minutes),
            )
        )
        if owner_id is not None:
            query = query.where(Job.owner_id == owner_id)
        if kinds:
            query = query.where(Job.kind.in_([JobKind(k).value for k in kinds]))
        if batch_id:
            query = query.where(Job.batch_id == batch_id)
        query = query.order_by(Job.updated_at)
        if limit:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def owners_with_eligible_jobs(
        self, session: AsyncSession, limit: int
    ) -> list[UUID]:
        """Owners that have claimable work, oldest waiting owner first."""
        oldest = func.min(Job.created_at)
        result = await session.execute(
            select(Job.owner_id)
            .where(
                self._eligible_filter(
                    None, CLAIMABLE_STATUSES, None, None, datetime.now(UTC)
                )
            )
            .group_by(Job.owner_id)
            .order_by(oldest)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_job_stats(
        self, session: AsyncSession, owner_id: UUID | None = None
    ) -> JobStatsResponse:
        """Get job statistics, optionally scoped to an owner."""
        base_filter = Job.owner_id == owner_id if owner_id else true()

        total_result = await session.execute(
            select(func.count(Job.id)).where(base_filter)
        )
        total_jobs = total_result.scalar() or 0

        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.status)
        )
        by_status = {status: count for status, count in status_result.all()}

        kind_result = await session.execute(
            select(Job.kind, func.count(Job.id)).where(base_filter).group_by(Job.kind)
        )
        by_kind = {kind: count for kind, count in kind_result.all()}

        queue_depth = sum(by_status.get(s.value, 0) for s in PENDING_STATUSES)

        one_hour_ago = datetime.now(UTC) - timedelta(hours=1)
        failed_recent_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    base_filter,
                    Job.status == JobStatus.ERROR.value,
                    Job.updated_at >= one_hour_ago,
                )
            )
        )
        failed_last_hour = failed_recent_result.scalar() or 0

        stuck_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    base_filter,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.updated_at < self.stuck_cutoff(),
                )
            )
        )
        stuck_jobs = stuck_result.scalar() or 0

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_kind=by_kind,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
            stuck_jobs=stuck_jobs,
        )

    async def cleanup_old_jobs(
        self,
        session: AsyncSession,
        owner_id: UUID | None = None,
        retention_days: int | None = None,
    ) -> int:
        """Delete done and errored jobs older than the retention period."""
        retention_days = retention_days or self.settings.job_cleanup_after_days
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)

        conditions = [
            Job.status.in_([JobStatus.DONE.value, JobStatus.ERROR.value]),
            Job.updated_at < cutoff,
        ]
        if owner_id is not None:
            conditions.append(Job.owner_id == owner_id)

        result = await session.execute(delete(Job).where(and_(*conditions)))
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
        return deleted_count
