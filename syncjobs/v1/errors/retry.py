"""
Retry orchestrator.

Turns failed work back into runnable jobs. Errors are selected explicitly
(error or job ids) or by filter (``retry_all`` with provider/category), one
error per job, and each job is revived with the chosen strategy:

- immediate: back to queued and run right away through the job runner
- delayed: parked in retrying until ``delay_minutes`` from now
- smart: delay grows with the job's attempts, and authentication errors
  get a credential refresh first

Automatic selection stops at ``max_retries``; an explicit id is always
retried once more.
"""

from collections import Counter
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.v1.core.registries import CredentialRefresher, Registry, credential_registry
from syncjobs.v1.errors.classification import ErrorCategory
from syncjobs.v1.errors.models import UNKNOWN, ErrorRecord
from syncjobs.v1.errors.schemas import (
    RetryEligibility,
    RetryItemResult,
    RetryOptions,
    RetryResult,
    RetryStatistics,
    RetrySummary,
)
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.jobs.models import PENDING_STATUSES, Job, JobStatus
from syncjobs.v1.jobs.runner import JobRunner
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)

MAX_RECOMMENDATIONS = 3


class RetryOrchestrator:
    """Selects failed jobs and revives them with a retry strategy."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        runner: JobRunner | None = None,
        tracker: ErrorTracker | None = None,
        credentials: Registry[CredentialRefresher] | None = None,
    ):
        self.settings = settings
        self.jobs = JobService(settings)
        self.tracker = tracker or ErrorTracker(settings, session_factory)
        self.runner = runner or JobRunner(
            settings, session_factory=session_factory, tracker=self.tracker
        )
        self.credentials = credentials if credentials is not None else credential_registry

    # Delay policy

    def smart_delay_minutes(
        self, attempts: int, category: str, delay_minutes: int | None = None
    ) -> int:
        """Backoff for the smart strategy: min(attempts, max_steps) x base."""
        steps = min(max(attempts, 0), self.settings.job_smart_backoff_max_steps)
        delay = steps * self.settings.job_smart_backoff_base_minutes
        if category == ErrorCategory.QUOTA.value:
            # Quota windows do not reset faster because we retried less often
            floor = (
                delay_minutes
                if delay_minutes is not None
                else self.settings.job_retry_delay_minutes
            )
            delay = max(delay, floor)
        return delay

    def delayed_minutes(self, delay_minutes: int | None) -> int:
        if delay_minutes is not None:
            return delay_minutes
        return self.settings.job_retry_delay_minutes

    # Selection

    async def _select(
        self,
        session: AsyncSession,
        owner_id: UUID,
        options: RetryOptions,
        max_retries: int,
    ) -> tuple[list[ErrorRecord], list[UUID]]:
        """
        Errors to retry, newest first and at most one per job, plus the
        explicitly requested job ids that have no open error at all.
        """
        records: list[ErrorRecord] = []
        bare_job_ids: list[UUID] = []

        if options.error_ids:
            records.extend(
                await self.tracker.get_errors_by_ids(
                    session, owner_id, options.error_ids
                )
            )
        if options.job_ids:
            latest = await self.tracker.latest_errors_for_jobs(
                session, owner_id, options.job_ids
            )
            records.extend(latest.values())
            bare_job_ids = [j for j in options.job_ids if j not in latest]
        if options.retry_all and not options.is_manual:
            records.extend(
                await self.tracker.get_retryable_errors(
                    session,
                    owner_id,
                    max_retry_count=max_retries,
                    provider=options.provider,
                    category=options.category.value if options.category else None,
                    limit=self.settings.job_max_jobs_limit,
                )
            )

        if options.provider:
            records = [r for r in records if r.provider == options.provider]
        if options.category:
            records = [r for r in records if r.category == options.category.value]

        records.sort(key=lambda r: r.occurred_at, reverse=True)
        selected: list[ErrorRecord] = []
        seen_errors: set[UUID] = set()
        seen_jobs: set[UUID] = set()
        for record in records:
            if record.id in seen_errors:
                continue
            seen_errors.add(record.id)
            if record.job_id is not None:
                if record.job_id in seen_jobs:
                    continue
                seen_jobs.add(record.job_id)
            selected.append(record)
        return selected, bare_job_ids

    # Retry

    async def retry(
        self,
        session: AsyncSession,
        owner_id: UUID,
        options: RetryOptions,
    ) -> RetryResult:
        max_retries = options.max_retries or self.settings.job_max_retries
        records, bare_job_ids = await self._select(
            session, owner_id, options, max_retries
        )
        job_ids = [r.job_id for r in records if r.job_id is not None] + bare_job_ids
        jobs = await self.jobs.get_jobs_by_ids(session, owner_id, job_ids)

        logger.info(
            "Retry started",
            owner_id=str(owner_id),
            strategy=options.retry_strategy,
            manual=options.is_manual,
            selected=len(records) + len(bare_job_ids),
        )

        results: list[RetryItemResult] = []
        for record in records:
            job = jobs.get(record.job_id) if record.job_id is not None else None
            results.append(
                await self._retry_one(
                    session, owner_id, record, job, options, max_retries
                )
            )
        for job_id in bare_job_ids:
            results.append(
                await self._retry_one(
                    session, owner_id, None, jobs.get(job_id), options, max_retries,
                    job_id=job_id,
                )
            )

        result = self._aggregate(results)
        logger.info(
            "Retry finished",
            owner_id=str(owner_id),
            attempted=result.attempted,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def _retry_one(
        self,
        session: AsyncSession,
        owner_id: UUID,
        record: ErrorRecord | None,
        job: Job | None,
        options: RetryOptions,
        max_retries: int,
        job_id: UUID | None = None,
    ) -> RetryItemResult:
        category = record.category if record is not None else UNKNOWN
        item = {
            "error_id": record.id if record is not None else None,
            "job_id": job.id if job is not None else (record.job_id if record else job_id),
            "category": category,
        }

        def skipped(message: str) -> RetryItemResult:
            return RetryItemResult(**item, outcome="skipped", method="none", message=message)

        if job is None:
            return skipped("No job found for this error")

        status = JobStatus(job.status)
        if status == JobStatus.DONE:
            if record is not None:
                await self.tracker.resolve_error(
                    session, owner_id, record.id, method="job_completed"
                )
            return skipped("Job already completed")
        if status in PENDING_STATUSES:
            if status == JobStatus.PROCESSING and job.is_stuck(
                self.settings.job_stuck_threshold_minutes
            ):
                return skipped("Job is stuck in processing; requeue or terminate it first")
            return skipped(f"Job is already {status.value}")

        if not options.is_manual:
            if record is not None and not record.retryable:
                return skipped(f"{category} errors are not retried automatically")
            if job.attempts >= max_retries:
                return skipped(
                    f"Retry limit reached ({job.attempts}/{max_retries}); retry it explicitly"
                )

        method_prefix = ""
        if (
            category == ErrorCategory.AUTHENTICATION.value
            and options.include_auth_refresh
        ):
            refreshed, message = await self._refresh_credentials(
                owner_id, record.provider if record is not None else None
            )
            if not refreshed:
                return RetryItemResult(
                    **item, outcome="failed", method="auth_refresh", message=message
                )
            method_prefix = "auth_refresh+"

        if options.retry_strategy == "immediate":
            return await self._retry_immediate(
                session, owner_id, record, job, item, method_prefix
            )

        if options.retry_strategy == "delayed":
            delay = self.delayed_minutes(options.delay_minutes)
        else:
            delay = self.smart_delay_minutes(
                job.attempts, category, options.delay_minutes
            )
        method = method_prefix + options.retry_strategy

        if delay <= 0:
            changed = await self.jobs.reactivate(session, owner_id, job.id)
            scheduled_for = None
        else:
            scheduled_for = datetime.now(UTC) + timedelta(minutes=delay)
            changed = await self.jobs.schedule_retry(
                session, owner_id, job.id, scheduled_for
            )
        if not changed:
            return skipped("Job changed state before it could be retried")

        if record is not None:
            await self.tracker.record_retry_attempt(session, owner_id, record.id)
        return RetryItemResult(
            **item,
            outcome="succeeded",
            method=method,
            message=(
                f"Retry scheduled in {delay} minute(s)" if delay > 0 else "Job re-queued"
            ),
            scheduled_for=scheduled_for,
            delay_minutes=delay,
        )

    async def _retry_immediate(
        self,
        session: AsyncSession,
        owner_id: UUID,
        record: ErrorRecord | None,
        job: Job,
        item: dict,
        method_prefix: str,
    ) -> RetryItemResult:
        method = method_prefix + "immediate"
        if not await self.jobs.reactivate(session, owner_id, job.id):
            return RetryItemResult(
                **item,
                outcome="skipped",
                method="none",
                message="Job changed state before it could be retried",
            )
        if record is not None:
            await self.tracker.record_retry_attempt(session, owner_id, record.id)

        run = await self.runner.run_job(owner_id, job.id)
        outcome = run.jobs[0] if run.jobs else None
        if outcome is not None and outcome.status == "done":
            return RetryItemResult(
                **item, outcome="succeeded", method=method, message="Job completed on retry"
            )
        if outcome is not None and outcome.status == "skipped":
            return RetryItemResult(
                **item,
                outcome="skipped",
                method=method,
                message=outcome.reason or "Job was picked up by another runner",
            )
        message = run.errors[0].message if run.errors else "Job failed again"
        return RetryItemResult(**item, outcome="failed", method=method, message=message)

    async def _refresh_credentials(
        self, owner_id: UUID, provider: str | None
    ) -> tuple[bool, str]:
        if not provider or not self.credentials.has(provider):
            return False, f"No credential refresher available for {provider or 'unknown provider'}"
        try:
            refreshed = await self.credentials.get(provider).refresh(owner_id, provider)
        except Exception as e:
            logger.warning(
                "Credential refresh failed",
                owner_id=str(owner_id),
                provider=provider,
                error=str(e),
            )
            return False, f"Credential refresh failed: {e}"
        if not refreshed:
            return False, "Credential refresh was refused; reconnect the account"
        logger.info("Credentials refreshed", owner_id=str(owner_id), provider=provider)
        return True, "Credentials refreshed"

    def _aggregate(self, results: list[RetryItemResult]) -> RetryResult:
        succeeded = sum(1 for r in results if r.outcome == "succeeded")
        failed = sum(1 for r in results if r.outcome == "failed")
        skipped = sum(1 for r in results if r.outcome == "skipped")
        attempted = succeeded + failed

        tried = [r for r in results if r.outcome != "skipped"]
        summary = RetrySummary(
            by_category=dict(Counter(r.category for r in tried)),
            by_method=dict(Counter(r.method for r in tried)),
            success_rate=round(succeeded / attempted, 3) if attempted else 0.0,
        )
        return RetryResult(
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            results=results,
            summary=summary,
            recommendations=self._recommendations(results),
        )

    def _recommendations(self, results: list[RetryItemResult]) -> list[str]:
        recommendations = []
        failed = [r for r in results if r.outcome == "failed"]
        if any(r.method == "auth_refresh" for r in failed):
            recommendations.append(
                "Reconnect accounts whose credentials could not be refreshed"
            )
        if any(r.category == ErrorCategory.QUOTA.value for r in results):
            recommendations.append(
                "Quota errors were delayed; avoid retrying them immediately"
            )
        if any("Retry limit reached" in r.message for r in results):
            recommendations.append(
                "Some jobs hit the retry limit; inspect them before retrying explicitly"
            )
        if failed and len(recommendations) < MAX_RECOMMENDATIONS:
            recommendations.append(
                f"{len(failed)} retry attempt(s) failed; check the error summary"
            )
        if not results:
            recommendations.append("No errors matched the retry selection")
        return recommendations[:MAX_RECOMMENDATIONS]

    # Reporting

    async def get_retry_eligibility(
        self,
        session: AsyncSession,
        owner_id: UUID,
        error_ids: list[UUID] | None = None,
        max_retries: int | None = None,
    ) -> list[RetryEligibility]:
        """Explain, per error, whether automatic retry would pick it up."""
        max_retries = max_retries or self.settings.job_max_retries
        if error_ids:
            records = await self.tracker.get_errors_by_ids(session, owner_id, error_ids)
        else:
            records = await self.tracker.list_errors(
                session, owner_id, include_resolved=False
            )
        jobs = await self.jobs.get_jobs_by_ids(
            session, owner_id, [r.job_id for r in records if r.job_id is not None]
        )

        report = []
        for record in records:
            job = jobs.get(record.job_id) if record.job_id is not None else None
            eligible, reason = self._eligibility(record, job, max_retries)
            report.append(
                RetryEligibility(
                    error_id=record.id,
                    eligible=eligible,
                    reason=reason,
                    category=record.category,
                    retry_count=record.retry_count,
                    job_status=job.status if job is not None else None,
                )
            )
        return report

    def _eligibility(
        self, record: ErrorRecord, job: Job | None, max_retries: int
    ) -> tuple[bool, str]:
        if record.is_resolved:
            return False, "Already resolved"
        if record.user_acknowledged:
            return False, "Acknowledged by user"
        if not record.retryable:
            return False, f"{record.category} errors need user action before retrying"
        if job is None:
            return False, "No job linked to this error"
        if job.status == JobStatus.DONE.value:
            return False, "Job already completed"
        if job.status in {s.value for s in PENDING_STATUSES}:
            return False, f"Job is already {job.status}"
        if record.retry_count >= max_retries or job.attempts >= max_retries:
            return False, "Retry limit reached; manual retry only"
        return True, "Eligible for automatic retry"

    async def get_retry_statistics(
        self,
        session: AsyncSession,
        owner_id: UUID,
        time_range_hours: int = 168,
        max_retries: int | None = None,
    ) -> RetryStatistics:
        max_retries = max_retries or self.settings.job_max_retries
        records = await self.tracker.fetch_window(
            session, owner_id, time_range_hours=time_range_hours, include_resolved=True
        )

        retried = [r for r in records if r.retry_count > 0]
        resolved_after_retry = [r for r in retried if r.is_resolved]
        exhausted = [
            r for r in records if not r.is_resolved and r.retry_count >= max_retries
        ]

        by_category: dict[str, dict[str, int]] = {}
        for record in records:
            stats = by_category.setdefault(
                record.category, {"total": 0, "retried": 0, "resolved": 0}
            )
            stats["total"] += 1
            if record.retry_count > 0:
                stats["retried"] += 1
            if record.is_resolved:
                stats["resolved"] += 1

        return RetryStatistics(
            total_errors=len(records),
            retryable_errors=sum(1 for r in records if r.retryable),
            retried_errors=len(retried),
            resolved_after_retry=len(resolved_after_retry),
            exhausted_errors=len(exhausted),
            retry_success_rate=(
                round(len(resolved_after_retry) / len(retried), 3) if retried else 0.0
            ),
            by_category=by_category,
        )
