import uuid

import pytest

from syncjobs.v1.core.exceptions import ValidationError
from syncjobs.v1.jobs.models import JobKind, JobStatus
from syncjobs.v1.jobs.schemas import JobCreate
from syncjobs.v1.jobs.service import JobService


@pytest.fixture
def job_service(test_settings):
    return JobService(test_settings)


async def test_enqueue_creates_queued_job(job_service, session, owner_id):
    response = await job_service.enqueue_job(
        session, owner_id, JobCreate(kind=JobKind.EMBED, payload={"item": 1})
    )

    job = await job_service.get_job(session, owner_id, response.job_id)
    assert response.deduplicated is False
    assert response.status == "queued"
    assert job.attempts == 0
    assert job.payload == {"item": 1}
    assert job.dedupe_key is None


async def test_same_batch_and_payload_returns_existing_job(
    job_service, session, owner_id
):
    job_create = JobCreate(
        kind=JobKind.SYNC_PROVIDER_A, payload={"since": "2024-06-01"}, batch_id="b-1"
    )

    first = await job_service.enqueue_job(session, owner_id, job_create)
    second = await job_service.enqueue_job(session, owner_id, job_create)

    assert second.deduplicated is True
    assert second.job_id == first.job_id
    _, total = await job_service.list_jobs(session, owner_id)
    assert total == 1


async def test_payload_key_order_does_not_matter(job_service, session, owner_id):
    first = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.NORMALIZE, payload={"a": 1, "b": 2}, batch_id="b-1"),
    )
    second = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.NORMALIZE, payload={"b": 2, "a": 1}, batch_id="b-1"),
    )

    assert second.job_id == first.job_id


async def test_different_payload_creates_new_job(job_service, session, owner_id):
    first = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.NORMALIZE, payload={"page": 1}, batch_id="b-1"),
    )
    second = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.NORMALIZE, payload={"page": 2}, batch_id="b-1"),
    )

    assert second.deduplicated is False
    assert second.job_id != first.job_id


async def test_dedupe_applies_to_finished_jobs(job_service, session, owner_id):
    job_create = JobCreate(kind=JobKind.EMBED, payload={}, batch_id="b-2")
    first = await job_service.enqueue_job(session, owner_id, job_create)
    await job_service.claim(session, owner_id, first.job_id, JobStatus.QUEUED)
    await job_service.mark_done(session, owner_id, first.job_id, {"ok": True})

    again = await job_service.enqueue_job(session, owner_id, job_create)

    assert again.deduplicated is True
    assert again.job_id == first.job_id
    assert again.status == "done"


async def test_no_batch_always_creates(job_service, session, owner_id):
    job_create = JobCreate(kind=JobKind.CLEANUP, payload={})

    first = await job_service.enqueue_job(session, owner_id, job_create)
    second = await job_service.enqueue_job(session, owner_id, job_create)

    assert first.job_id != second.job_id
    assert not second.deduplicated


async def test_dedupe_is_per_owner(job_service, session, owner_id):
    job_create = JobCreate(kind=JobKind.EMBED, payload={}, batch_id="b-3")
    mine = await job_service.enqueue_job(session, owner_id, job_create)
    theirs = await job_service.enqueue_job(session, uuid.uuid4(), job_create)

    assert theirs.deduplicated is False
    assert theirs.job_id != mine.job_id


async def test_explicit_dedupe_key(job_service, session, owner_id):
    first = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.INSIGHT, payload={"n": 1}, dedupe_key="weekly-2024-23"),
    )
    second = await job_service.enqueue_job(
        session,
        owner_id,
        JobCreate(kind=JobKind.INSIGHT, payload={"n": 2}, dedupe_key="weekly-2024-23"),
    )

    assert second.deduplicated is True
    assert second.job_id == first.job_id


def test_dedupe_key_is_deterministic(job_service):
    key = job_service.generate_dedupe_key("normalize", "b-1", {"x": 1, "y": [1, 2]})

    assert key == job_service.generate_dedupe_key("normalize", "b-1", {"y": [1, 2], "x": 1})
    assert key != job_service.generate_dedupe_key("embed", "b-1", {"x": 1, "y": [1, 2]})
    assert len(key) == 32


async def test_enqueue_batch(job_service, session, owner_id):
    payloads = [{"page": 1}, {"page": 2}, {"page": 1}]

    responses = await job_service.enqueue_batch(
        session, owner_id, JobKind.SYNC_PROVIDER_B, "b-4", payloads
    )

    assert [r.deduplicated for r in responses] == [False, False, True]
    assert responses[2].job_id == responses[0].job_id


async def test_enqueue_batch_requires_batch_id(job_service, session, owner_id):
    with pytest.raises(ValidationError):
        await job_service.enqueue_batch(session, owner_id, JobKind.EMBED, "", [{}])
