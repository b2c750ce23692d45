from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from syncjobs.v1.core.registries import Registry
from syncjobs.v1.errors.retry import RetryOrchestrator
from syncjobs.v1.errors.schemas import RetryOptions
from syncjobs.v1.errors.tracker import ErrorTracker
from syncjobs.v1.jobs.models import JobKind, JobStatus
from syncjobs.v1.jobs.service import JobService

from conftest import FailingHandler, SucceedingHandler


class StubRefresher:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls: list[tuple] = []

    async def refresh(self, owner_id, provider):
        self.calls.append((owner_id, provider))
        return self.result


@pytest.fixture
def credentials():
    return Registry("Credential")


@pytest.fixture
def orchestrator(test_settings, session_factory, credentials):
    return RetryOrchestrator(
        test_settings, session_factory=session_factory, credentials=credentials
    )


@pytest.fixture
def job_service(test_settings):
    return JobService(test_settings)


@pytest.fixture
def tracker(test_settings, session_factory):
    return ErrorTracker(test_settings, session_factory)


def _by_job(result):
    return {item.job_id: item for item in result.results}


def test_retry_options_require_a_selection():
    with pytest.raises(PydanticValidationError, match="error_ids, job_ids or retry_all"):
        RetryOptions()


def test_retry_options_manual_flag():
    assert RetryOptions(retry_all=True).is_manual is False
    assert RetryOptions(job_ids=[uuid4()]).is_manual is True
    assert RetryOptions(retry_all=True).retry_strategy == "smart"


@pytest.mark.parametrize(
    ("attempts", "category", "delay_minutes", "expected"),
    [
        (0, "network", None, 0),
        (1, "network", None, 5),
        (2, "network", None, 10),
        (6, "processing", None, 30),
        (9, "processing", None, 30),
        (0, "quota", None, 5),
        (1, "quota", 60, 60),
        (8, "quota", 5, 30),
    ],
)
def test_smart_delay(orchestrator, attempts, category, delay_minutes, expected):
    assert orchestrator.smart_delay_minutes(attempts, category, delay_minutes) == expected


async def test_smart_delay_grows_with_attempts(
    orchestrator, session, owner_id, make_job, record_job_error, job_service
):
    fresh = await make_job(owner_id, status=JobStatus.ERROR, attempts=0)
    worn = await make_job(owner_id, status=JobStatus.ERROR, attempts=2)
    await record_job_error(owner_id, fresh, "Connection refused")
    await record_job_error(owner_id, worn, "Connection refused")

    result = await orchestrator.retry(session, owner_id, RetryOptions(retry_all=True))

    items = _by_job(result)
    assert result.attempted == 2
    assert result.succeeded == 2
    assert items[fresh.id].delay_minutes == 0
    assert items[fresh.id].scheduled_for is None
    assert items[fresh.id].message == "Job re-queued"
    assert items[worn.id].delay_minutes == 10
    assert items[worn.id].method == "smart"

    requeued = await job_service.get_job(session, owner_id, fresh.id)
    parked = await job_service.get_job(session, owner_id, worn.id)
    assert requeued.status == "queued"
    assert parked.status == "retrying"
    assert parked.run_after > datetime.now(UTC)


async def test_delayed_strategy_uses_given_delay(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    await record_job_error(owner_id, job, "Connection refused")

    result = await orchestrator.retry(
        session,
        owner_id,
        RetryOptions(retry_all=True, retry_strategy="delayed", delay_minutes=45),
    )

    assert result.results[0].delay_minutes == 45
    assert result.results[0].method == "delayed"


async def test_immediate_retry_runs_the_job(
    orchestrator, session, owner_id, make_job, record_job_error, use_handler, tracker,
    job_service,
):
    use_handler(JobKind.EMBED.value, SucceedingHandler())
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "Connection refused")

    result = await orchestrator.retry(
        session,
        owner_id,
        RetryOptions(error_ids=[record.id], retry_strategy="immediate"),
    )

    assert result.succeeded == 1
    assert result.results[0].message == "Job completed on retry"
    assert result.summary.success_rate == 1.0
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "done"
    assert stored.attempts == 2
    error = await tracker.get_error(session, owner_id, record.id)
    assert error.retry_count == 1
    assert error.resolved_at is not None


async def test_immediate_retry_that_fails_again(
    orchestrator, session, owner_id, make_job, record_job_error, use_handler
):
    use_handler(JobKind.EMBED.value, FailingHandler(TimeoutError("Read timed out")))
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "Connection refused")

    result = await orchestrator.retry(
        session,
        owner_id,
        RetryOptions(error_ids=[record.id], retry_strategy="immediate"),
    )

    assert result.failed == 1
    assert result.results[0].message == "Read timed out"


async def test_retry_all_respects_the_retry_limit(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=3)
    record = await record_job_error(owner_id, job, "Connection refused")

    automatic = await orchestrator.retry(session, owner_id, RetryOptions(retry_all=True))

    assert automatic.skipped == 1
    assert automatic.results[0].message.startswith("Retry limit reached (3/3)")

    manual = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert manual.succeeded == 1
    assert manual.results[0].delay_minutes == 15


async def test_one_retry_per_job(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    await record_job_error(owner_id, job, "Connection refused")
    await record_job_error(owner_id, job, "Connection reset")

    result = await orchestrator.retry(session, owner_id, RetryOptions(retry_all=True))

    assert len(result.results) == 1
    assert result.succeeded == 1


async def test_completed_job_resolves_its_error(
    orchestrator, session, owner_id, make_job, record_job_error, tracker
):
    job = await make_job(owner_id, status=JobStatus.DONE, attempts=2)
    record = await record_job_error(owner_id, job, "Connection refused")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.skipped == 1
    assert result.results[0].message == "Job already completed"
    error = await tracker.get_error(session, owner_id, record.id)
    assert error.resolution_method == "job_completed"


async def test_pending_job_is_skipped(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.QUEUED, attempts=1)
    record = await record_job_error(owner_id, job, "Connection refused")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.skipped == 1
    assert result.results[0].message == "Job is already queued"


async def test_error_without_job_is_skipped(
    orchestrator, session, owner_id, record_job_error
):
    record = await record_job_error(owner_id, None, "Connection refused")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.skipped == 1
    assert result.results[0].message == "No job found for this error"


async def test_authentication_errors_are_not_retried_automatically(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    await record_job_error(owner_id, job, "invalid_grant")

    result = await orchestrator.retry(session, owner_id, RetryOptions(retry_all=True))

    assert result.results == []
    assert result.recommendations == ["No errors matched the retry selection"]


async def test_auth_retry_without_refresher_fails(
    orchestrator, session, owner_id, make_job, record_job_error, job_service
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "invalid_grant")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.failed == 1
    assert result.results[0].method == "auth_refresh"
    assert "No credential refresher available for provider_a" in result.results[0].message
    assert result.recommendations[0].startswith("Reconnect accounts")
    stored = await job_service.get_job(session, owner_id, job.id)
    assert stored.status == "error"


async def test_auth_retry_refreshes_credentials_first(
    orchestrator, credentials, session, owner_id, make_job, record_job_error
):
    refresher = StubRefresher()
    credentials.register("provider_a", refresher)
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "invalid_grant")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.succeeded == 1
    assert result.results[0].method == "auth_refresh+smart"
    assert refresher.calls == [(owner_id, "provider_a")]


async def test_refused_refresh_fails(
    orchestrator, credentials, session, owner_id, make_job, record_job_error
):
    credentials.register("provider_a", StubRefresher(result=False))
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "invalid_grant")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(error_ids=[record.id])
    )

    assert result.failed == 1
    assert "reconnect the account" in result.results[0].message


async def test_auth_refresh_can_be_disabled(
    orchestrator, session, owner_id, make_job, record_job_error
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    record = await record_job_error(owner_id, job, "invalid_grant")

    result = await orchestrator.retry(
        session,
        owner_id,
        RetryOptions(error_ids=[record.id], include_auth_refresh=False),
    )

    assert result.succeeded == 1
    assert result.results[0].method == "smart"


async def test_job_ids_without_errors(
    orchestrator, session, owner_id, make_job
):
    job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)

    result = await orchestrator.retry(session, owner_id, RetryOptions(job_ids=[job.id]))

    assert result.succeeded == 1
    assert result.results[0].category == "unknown"
    assert result.results[0].error_id is None


async def test_category_filter(
    orchestrator, session, owner_id, make_job, record_job_error
):
    network_job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    quota_job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    await record_job_error(owner_id, network_job, "Connection refused")
    await record_job_error(owner_id, quota_job, "Rate limit exceeded")

    result = await orchestrator.retry(
        session, owner_id, RetryOptions(retry_all=True, category="quota")
    )

    assert [r.job_id for r in result.results] == [quota_job.id]


async def test_eligibility_and_statistics(
    orchestrator, session, owner_id, make_job, record_job_error
):
    retryable_job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    auth_job = await make_job(owner_id, status=JobStatus.ERROR, attempts=1)
    network = await record_job_error(owner_id, retryable_job, "Connection refused")
    auth = await record_job_error(owner_id, auth_job, "invalid_grant")

    report = {
        r.error_id: r for r in await orchestrator.get_retry_eligibility(session, owner_id)
    }

    assert report[network.id].eligible is True
    assert report[auth.id].eligible is False
    assert report[auth.id].job_status == "error"

    await orchestrator.retry(session, owner_id, RetryOptions(retry_all=True))
    stats = await orchestrator.get_retry_statistics(session, owner_id)

    assert stats.total_errors == 2
    assert stats.retryable_errors == 1
    assert stats.retried_errors == 1
    assert stats.by_category["authentication"]["retried"] == 0
