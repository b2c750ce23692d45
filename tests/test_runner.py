import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from syncjobs.config.settings import Settings
from syncjobs.infra.database import Database
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.ingestion.service import IngestionService
from syncjobs.v1.jobs.exceptions import JobStoreUnavailableError, QuotaExceededError
from syncjobs.v1.jobs.models import Job, JobKind, JobStatus
from syncjobs.v1.jobs.runner import JobRunner, provider_for, stage_for_kind
from syncjobs.v1.jobs.schemas import JobCreate
from syncjobs.v1.jobs.service import JobService

from conftest import FailingHandler, SucceedingHandler


@pytest.fixture
def runner(test_settings, session_factory):
    return JobRunner(test_settings, session_factory=session_factory)


@pytest.fixture
def job_service(test_settings):
    return JobService(test_settings)


def _message_item(n: int) -> dict:
    return {
        "source_id": f"msg-{n}",
        "content": {"from": f"sender{n}@example.com", "subject": f"Hello {n}"},
    }


async def test_sync_batch_then_normalize(runner, job_service, session, owner_id):
    """Three provider syncs ingest, then queue normalization for the next run."""
    for n in range(3):
        await job_service.enqueue_job(
            session,
            owner_id,
            JobCreate(
                kind=JobKind.SYNC_PROVIDER_A,
                payload=_message_item(n),
                batch_id="sync-2024-06-01",
            ),
        )

    result = await runner.run(owner_id, max_jobs=10)

    assert result.processed == 3
    assert result.succeeded == 3
    assert result.failed == 0
    assert result.stats.selected == 3
    # Normalize jobs enqueued during the run wait for the next one
    assert result.stats.remaining_eligible == 3
    sync_jobs, _ = await job_service.list_jobs(
        session, owner_id, kind=JobKind.SYNC_PROVIDER_A.value
    )
    for job in sync_jobs:
        stored = await job_service.get_job(session, owner_id, job.id)
        assert stored.status == "done"
        assert stored.attempts == 1
        assert stored.result["records"] == 1

    second = await runner.run(owner_id, max_jobs=10)

    assert second.succeeded == 3
    assert {j.kind for j in second.jobs} == {"normalize"}
    assert second.stats.remaining_eligible == 0
    records, total = await IngestionService(runner.settings).list_records(
        session, owner_id, batch_id="sync-2024-06-01"
    )
    assert total == 3
    assert all(r.normalized is not None for r in records)


async def test_quota_failure_is_classified_and_recorded(
    runner, job_service, session, owner_id, use_handler, test_settings, session_factory
):
    use_handler(
        JobKind.SYNC_PROVIDER_A.value,
        FailingHandler(QuotaExceededError("API rate limit exceeded")),
    )
    enqueued = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.SYNC_PROVIDER_A, payload={}, batch_id="b-quota"),
    )

    result = await runner.run(owner_id)

    assert result.processed == 1
    assert result.failed == 1
    error = result.errors[0]
    assert error.category == "quota"
    assert error.severity == "medium"
    assert error.retryable is True
    assert error.message == "API rate limit exceeded"
    assert error.error_record_id is not None

    job = await job_service.get_job(session, owner_id, enqueued.job_id)
    assert job.status == "error"
    assert job.last_error == "API rate limit exceeded"

    tracker = ErrorTracker(test_settings, session_factory)
    records = await tracker.list_errors(session, owner_id, job_id=enqueued.job_id)
    assert len(records) == 1
    assert records[0].provider == "provider_a"
    assert records[0].stage == "ingestion"
    assert records[0].category == "quota"
    assert any("quota" in r.lower() for r in result.recommendations)


async def test_missing_executor_is_a_configuration_error(
    runner, session, owner_id, make_job
):
    await make_job(owner_id, kind=JobKind.EMBED.value)

    result = await runner.run(owner_id)

    assert result.failed == 1
    assert result.errors[0].category == "configuration"
    assert result.errors[0].retryable is False
    assert "no executor registered for embed" in result.errors[0].message


async def test_unregistered_kind_fails_the_job(
    runner, job_handlers, session, owner_id, make_job, job_service
):
    job = await make_job(owner_id, kind=JobKind.CLEANUP.value)
    job_handlers.unregister(JobKind.CLEANUP.value)

    result = await runner.run(owner_id)

    assert result.failed == 1
    assert result.errors[0].category == "configuration"
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "error"


async def test_unstorable_result_fails_the_job_and_the_run_continues(
    runner, session, owner_id, make_job, use_handler, job_service
):
    use_handler(
        JobKind.EMBED.value, SucceedingHandler({"at": datetime.now(UTC)})
    )
    first = await make_job(owner_id)
    second = await make_job(owner_id)

    result = await runner.run(owner_id, 5)

    assert result.processed == 2
    assert result.failed == 2
    assert result.errors[0].category == "processing"
    assert result.errors[0].retryable is True
    assert "could not be stored" in result.errors[0].message
    for job in (first, second):
        stored = await job_service.get_job(session, owner_id, job.id)
        assert stored.status == "error"
        assert stored.result is None


async def test_max_jobs_and_kind_filter(
    runner, session, owner_id, make_job, use_handler
):
    use_handler(JobKind.EMBED.value, SucceedingHandler())
    use_handler(JobKind.INSIGHT.value, SucceedingHandler())
    for _ in range(3):
        await make_job(owner_id, kind=JobKind.EMBED.value)
    await make_job(owner_id, kind=JobKind.INSIGHT.value)

    limited = await runner.run(owner_id, max_jobs=2, kinds=[JobKind.EMBED.value])

    assert limited.processed == 2
    assert {j.kind for j in limited.jobs} == {"embed"}
    assert limited.stats.remaining_eligible == 1


async def test_no_eligible_jobs(runner, owner_id):
    result = await runner.run(owner_id)

    assert result.processed == 0
    assert result.jobs == []
    assert result.recommendations == ["No eligible jobs to process"]


async def test_retrying_jobs_wait_for_run_after(
    runner, session, owner_id, make_job, job_service, use_handler
):
    use_handler(JobKind.EMBED.value, SucceedingHandler())
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    await job_service.schedule_retry(
        session, owner_id, job.id, datetime.now(UTC) + timedelta(minutes=5)
    )

    result = await runner.run(owner_id)

    assert result.processed == 0
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "retrying"


async def test_include_retrying_false_skips_retrying_jobs(
    runner, session, owner_id, make_job, use_handler
):
    use_handler(JobKind.EMBED.value, SucceedingHandler())
    await make_job(owner_id, status=JobStatus.RETRYING, attempts=1)

    result = await runner.run(owner_id, include_retrying=False)

    assert result.processed == 0


async def test_run_job_skips_finished_jobs(runner, owner_id, make_job):
    job = await make_job(owner_id, status=JobStatus.DONE, attempts=1)

    result = await runner.run_job(owner_id, job.id)

    assert result.skipped == 1
    assert result.processed == 0
    assert result.jobs[0].reason == "Job is done"


async def test_concurrent_runners_process_a_job_once(
    test_settings, session_factory, session, owner_id, make_job, use_handler, job_service
):
    handler = use_handler(JobKind.EMBED.value, SucceedingHandler())
    job = await make_job(owner_id)
    first = JobRunner(test_settings, session_factory=session_factory)
    second = JobRunner(test_settings, session_factory=session_factory)

    results = await asyncio.gather(first.run(owner_id), second.run(owner_id))

    assert sum(r.processed for r in results) == 1
    assert len(handler.calls) == 1
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "done"
    assert stored.attempts == 1


async def test_stuck_jobs_are_left_alone_by_default(
    runner, session, owner_id, make_job, use_handler, job_service
):
    use_handler(JobKind.EMBED.value, SucceedingHandler())
    old = datetime.now(UTC) - timedelta(minutes=30)
    job = await make_job(owner_id, status=JobStatus.PROCESSING, attempts=1, updated_at=old)

    skipped = await runner.run(owner_id)

    assert skipped.processed == 0
    assert any("stuck" in r for r in skipped.recommendations)

    reclaimed = await runner.run(owner_id, skip_stuck_jobs=False)

    assert reclaimed.succeeded == 1
    assert reclaimed.stats.reclaimed_stuck == 1
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "done"
    assert stored.attempts == 2


async def test_success_resolves_earlier_errors(
    runner, session, owner_id, make_job, use_handler, job_service, test_settings,
    session_factory,
):
    use_handler(JobKind.EMBED.value, FailingHandler(ConnectionError("Connection reset")))
    job = await make_job(owner_id)
    failed = await runner.run(owner_id)
    assert failed.errors[0].category == "network"

    use_handler(JobKind.EMBED.value, SucceedingHandler())
    assert await job_service.reactivate(session, owner_id, job.id)
    result = await runner.run(owner_id)

    assert result.succeeded == 1
    tracker = ErrorTracker(test_settings, session_factory)
    records = await tracker.list_errors(session, owner_id, job_id=job.id)
    assert records[0].resolved_at is not None
    assert records[0].resolution_method == "job_succeeded"


async def test_unreachable_store_raises(tmp_path, owner_id):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'jobs.db'}"
    )
    database = Database(settings)
    runner = JobRunner(settings, session_factory=database.SessionLocal)

    try:
        with pytest.raises(JobStoreUnavailableError) as exc_info:
            await runner.run(owner_id)
    finally:
        await database.close()

    assert exc_info.value.status_code == 503


def test_stage_and_provider_mapping():
    assert stage_for_kind("sync_provider_b").value == "ingestion"
    assert stage_for_kind("normalize").value == "normalization"
    assert stage_for_kind("embed").value == "processing"


def test_provider_prefers_error_then_payload():
    job = Job(kind="sync_provider_a", payload={})
    assert provider_for(job) == "provider_a"
    job.payload = {"source": "provider_c"}
    assert provider_for(job) == "provider_c"
    assert provider_for(job, QuotaExceededError("x", provider="provider_d")) == "provider_d"
