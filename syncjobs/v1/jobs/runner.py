"""
Job runner.

Selects eligible jobs for one owner oldest first, claims each with a
compare-and-set, dispatches it to the handler registered for its kind and
records the outcome. Handler failures never leave the runner: they are
classified, written to the error tracker and reported in the RunResult.
Only a job store that cannot be reached propagates, as
JobStoreUnavailableError.
"""

import time
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import DBAPIError, SQLAlchemyError, StatementError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncjobs.config.logging import bind_job_context, clear_job_context, get_logger
from syncjobs.config.settings import Settings
from syncjobs.infra.database import get_database
from syncjobs.v1.core.registries import JobContext, JobHandler, Registry, job_registry
from syncjobs.v1.errors.classification import (
    ErrorCategory,
    ErrorContext,
    ErrorStage,
    classify,
)
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.jobs.exceptions import (
    HandlerConfigurationError,
    JobHandlerError,
    JobResultError,
    JobStoreUnavailableError,
)
from syncjobs.v1.jobs.models import CLAIMABLE_STATUSES, Job, JobKind, JobStatus
from syncjobs.v1.jobs.schemas import JobOutcome, RunError, RunResult, RunStats
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)

_STAGES = {
    JobKind.SYNC_PROVIDER_A.value: ErrorStage.INGESTION,
    JobKind.SYNC_PROVIDER_B.value: ErrorStage.INGESTION,
    JobKind.INGESTION_BATCH.value: ErrorStage.INGESTION,
    JobKind.NORMALIZE.value: ErrorStage.NORMALIZATION,
}

_PROVIDERS = {
    JobKind.SYNC_PROVIDER_A.value: "provider_a",
    JobKind.SYNC_PROVIDER_B.value: "provider_b",
}


def stage_for_kind(kind: str) -> ErrorStage:
    return _STAGES.get(kind, ErrorStage.PROCESSING)


def provider_for(job: Job, error: BaseException | None = None) -> str | None:
    """Best guess at the external provider involved in a job."""
    if isinstance(error, JobHandlerError) and error.provider:
        return error.provider
    payload = job.payload or {}
    return payload.get("provider") or payload.get("source") or _PROVIDERS.get(job.kind)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class JobRunner:
    """Processes queued work for one owner at a time."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        registry: Registry[JobHandler] | None = None,
        tracker: ErrorTracker | None = None,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self.registry = registry if registry is not None else job_registry
        self.jobs = JobService(settings)
        self.tracker = tracker or ErrorTracker(settings, session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_database().SessionLocal
        return self._session_factory

    def resolve_max_jobs(self, max_jobs: int | None) -> int:
        requested = max_jobs or self.settings.job_default_max_jobs
        return max(1, min(requested, self.settings.job_max_jobs_limit))

    async def run(
        self,
        owner_id: UUID,
        max_jobs: int | None = None,
        kinds: Sequence[str] | None = None,
        batch_id: str | None = None,
        include_retrying: bool = True,
        skip_stuck_jobs: bool = True,
    ) -> RunResult:
        """
        Process up to ``max_jobs`` eligible jobs for an owner.

        Jobs are selected once up front; work enqueued by handlers during
        this run waits for the next one. With ``skip_stuck_jobs`` false,
        processing jobs past the stuck threshold are reclaimed first.
        """
        started = time.monotonic()
        limit = self.resolve_max_jobs(max_jobs)
        statuses = CLAIMABLE_STATUSES if include_retrying else (JobStatus.QUEUED,)
        cutoff = self.jobs.stuck_cutoff()

        try:
            async with self.session_factory() as session:
                stuck = await self.jobs.get_stuck_jobs(
                    session, owner_id, kinds=kinds, batch_id=batch_id, limit=limit
                )
                candidates = await self.jobs.select_eligible(
                    session,
                    owner_id,
                    limit=limit,
                    statuses=statuses,
                    kinds=kinds,
                    batch_id=batch_id,
                )
        except (SQLAlchemyError, OSError) as e:
            logger.error("Job selection failed", owner_id=str(owner_id), error=str(e))
            raise JobStoreUnavailableError(details={"error": str(e)}) from e

        work: list[tuple[Job, bool]] = []
        if not skip_stuck_jobs:
            work.extend((job, True) for job in stuck)
        work.extend((job, False) for job in candidates)
        work = work[:limit]

        logger.info(
            "Job run started",
            owner_id=str(owner_id),
            selected=len(work),
            max_jobs=limit,
            kinds=list(kinds) if kinds else None,
            batch_id=batch_id,
        )

        result = RunResult()
        reclaimed = 0
        for job, reclaim in work:
            outcome, run_error = await self._process(
                owner_id, job, reclaim=reclaim, cutoff=cutoff
            )
            self._tally(result, outcome, run_error)
            if reclaim and outcome.status != "skipped":
                reclaimed += 1

        try:
            async with self.session_factory() as session:
                remaining = await self.jobs.count_eligible(
                    session, owner_id, statuses=statuses, kinds=kinds, batch_id=batch_id
                )
        except (SQLAlchemyError, OSError) as e:
            raise JobStoreUnavailableError(details={"error": str(e)}) from e

        result.stats = RunStats(
            duration_ms=_elapsed_ms(started),
            selected=len(work),
            reclaimed_stuck=reclaimed,
            remaining_eligible=remaining,
        )
        result.recommendations = self.generate_recommendations(
            result,
            stuck_count=len(stuck) if skip_stuck_jobs else 0,
        )

        logger.info(
            "Job run finished",
            owner_id=str(owner_id),
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            duration_ms=result.stats.duration_ms,
        )
        return result

    async def run_job(self, owner_id: UUID, job_id: UUID) -> RunResult:
        """Process one specific job now, if it is claimable."""
        started = time.monotonic()
        try:
            async with self.session_factory() as session:
                job = await self.jobs.get_job(session, owner_id, job_id)
        except (SQLAlchemyError, OSError) as e:
            raise JobStoreUnavailableError(details={"error": str(e)}) from e

        result = RunResult()
        if job is None:
            return result

        if JobStatus(job.status) in CLAIMABLE_STATUSES:
            outcome, run_error = await self._process(owner_id, job)
        else:
            outcome = JobOutcome(
                job_id=job.id,
                kind=job.kind,
                status="skipped",
                attempts=job.attempts,
                reason=f"Job is {job.status}",
            )
            run_error = None
        self._tally(result, outcome, run_error)
        result.stats = RunStats(duration_ms=_elapsed_ms(started), selected=1)
        return result

    def _tally(
        self, result: RunResult, outcome: JobOutcome, run_error: RunError | None
    ) -> None:
        result.jobs.append(outcome)
        if outcome.status == "skipped":
            result.skipped += 1
            return
        result.processed += 1
        if outcome.status == "done":
            result.succeeded += 1
        else:
            result.failed += 1
            if run_error is not None:
                result.errors.append(run_error)

    async def _process(
        self,
        owner_id: UUID,
        job: Job,
        reclaim: bool = False,
        cutoff: datetime | None = None,
    ) -> tuple[JobOutcome, RunError | None]:
        bind_job_context(job_id=str(job.id), job_kind=job.kind)
        try:
            return await self._process_claimed(owner_id, job, reclaim, cutoff)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Job store failure during run", error=str(e))
            raise JobStoreUnavailableError(details={"error": str(e)}) from e
        finally:
            clear_job_context("job_id", "job_kind")

    async def _process_claimed(
        self,
        owner_id: UUID,
        job: Job,
        reclaim: bool,
        cutoff: datetime | None,
    ) -> tuple[JobOutcome, RunError | None]:
        started = time.monotonic()
        async with self.session_factory() as session:
            if reclaim:
                claimed = await self.jobs.reclaim_stuck(
                    session, owner_id, job.id, cutoff or self.jobs.stuck_cutoff()
                )
            else:
                claimed = await self.jobs.claim(
                    session, owner_id, job.id, JobStatus(job.status)
                )
            if not claimed:
                logger.debug("Job claim lost")
                return (
                    JobOutcome(
                        job_id=job.id,
                        kind=job.kind,
                        status="skipped",
                        attempts=job.attempts,
                        reason="Claimed by another runner",
                    ),
                    None,
                )

            attempts = job.attempts + 1
            ctx = JobContext(
                owner_id=owner_id,
                job_id=job.id,
                kind=job.kind,
                attempts=attempts,
                batch_id=job.batch_id,
            )

            error: Exception | None = None
            handler_result: dict[str, Any] | None = None
            if not self.registry.has(job.kind):
                error = HandlerConfigurationError(
                    f"Configuration error: no handler registered for job kind {job.kind}"
                )
            else:
                handler = self.registry.get(job.kind)
                try:
                    handler_result = await handler.handle(
                        session, ctx, dict(job.payload or {})
                    )
                except Exception as e:
                    error = e

            if error is None:
                return await self._finish_success(
                    session, owner_id, job, attempts, handler_result, started
                )

            # Drop whatever the handler left half-written before recording
            await session.rollback()
            return await self._finish_failure(
                session, owner_id, job, attempts, error, started
            )

    async def _finish_success(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job: Job,
        attempts: int,
        handler_result: dict[str, Any] | None,
        started: float,
    ) -> tuple[JobOutcome, RunError | None]:
        try:
            done = await self.jobs.mark_done(session, owner_id, job.id, handler_result)
        except DBAPIError:
            raise
        except (StatementError, TypeError) as e:
            await session.rollback()
            cause = getattr(e, "orig", None) or e
            return await self._finish_failure(
                session,
                owner_id,
                job,
                attempts,
                JobResultError(f"Job result could not be stored: {cause}"),
                started,
            )
        if not done:
            logger.warning("Job changed state while processing; result dropped")
            return (
                JobOutcome(
                    job_id=job.id,
                    kind=job.kind,
                    status="skipped",
                    attempts=attempts,
                    duration_ms=_elapsed_ms(started),
                    reason="Job state changed during processing",
                ),
                None,
            )

        await self.tracker.resolve_errors_for_job(
            session, owner_id, job.id, method="job_succeeded"
        )
        duration_ms = _elapsed_ms(started)
        logger.info("Job completed", attempts=attempts, duration_ms=duration_ms)
        return (
            JobOutcome(
                job_id=job.id,
                kind=job.kind,
                status="done",
                attempts=attempts,
                duration_ms=duration_ms,
            ),
            None,
        )

    async def _finish_failure(
        self,
        session: AsyncSession,
        owner_id: UUID,
        job: Job,
        attempts: int,
        error: Exception,
        started: float,
    ) -> tuple[JobOutcome, RunError | None]:
        context = ErrorContext(
            provider=provider_for(job, error),
            stage=stage_for_kind(job.kind),
            operation=job.kind,
            job_id=str(job.id),
            job_kind=job.kind,
        )
        classification = classify(error, context)
        record = await self.tracker.record_error(
            owner_id, error, context, classification=classification, job_id=job.id
        )

        message = str(error) or error.__class__.__name__
        await self.jobs.mark_error(session, owner_id, job.id, message)

        duration_ms = _elapsed_ms(started)
        logger.warning(
            "Job failed",
            attempts=attempts,
            duration_ms=duration_ms,
            category=classification.category.value,
            retryable=classification.retryable,
            error=message,
        )
        return (
            JobOutcome(
                job_id=job.id,
                kind=job.kind,
                status="error",
                attempts=attempts,
                duration_ms=duration_ms,
                reason=classification.user_message,
            ),
            RunError(
                job_id=job.id,
                kind=job.kind,
                message=message,
                category=classification.category.value,
                severity=classification.severity.value,
                retryable=classification.retryable,
                user_message=classification.user_message,
                error_record_id=record.id if record is not None else None,
            ),
        )

    def generate_recommendations(
        self, result: RunResult, stuck_count: int = 0
    ) -> list[str]:
        recommendations = []
        categories = {e.category for e in result.errors}

        if result.processed == 0 and result.skipped == 0:
            recommendations.append("No eligible jobs to process")
        if ErrorCategory.AUTHENTICATION.value in categories:
            recommendations.append(
                "Reconnect the affected provider; authentication failures will not clear on retry"
            )
        if ErrorCategory.PERMISSION.value in categories:
            recommendations.append("Review the permissions granted to the provider")
        if ErrorCategory.QUOTA.value in categories:
            recommendations.append(
                "Provider quota reached; retry later with the delayed or smart strategy"
            )
        if ErrorCategory.CONFIGURATION.value in categories:
            recommendations.append(
                "Some job kinds are not configured; check handler and executor registration"
            )
        retryable = sum(1 for e in result.errors if e.retryable)
        if retryable:
            recommendations.append(
                f"{retryable} failed job(s) can be retried through error retry"
            )
        if result.skipped:
            recommendations.append(
                f"{result.skipped} job(s) were skipped because another runner claimed them"
            )
        if stuck_count:
            recommendations.append(
                f"{stuck_count} job(s) appear stuck in processing; requeue or terminate them"
            )
        if result.stats and result.stats.remaining_eligible:
            recommendations.append(
                f"{result.stats.remaining_eligible} more job(s) are waiting; run again to continue"
            )
        return recommendations
