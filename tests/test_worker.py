import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from syncjobs.v1.jobs.models import JobKind, JobStatus
from syncjobs.v1.jobs.service import JobService
from syncjobs.v1.jobs.worker import JobWorker

from conftest import SucceedingHandler


@pytest.fixture
def worker(test_settings, session_factory):
    return JobWorker(test_settings, session_factory=session_factory)


async def test_poll_once_serves_every_owner(worker, session, make_job, use_handler):
    handler = use_handler(JobKind.EMBED.value, SucceedingHandler())
    first, second = uuid.uuid4(), uuid.uuid4()
    await make_job(first)
    await make_job(first)
    await make_job(second)

    processed = await worker.poll_once()

    assert processed == 3
    assert len(handler.calls) == 3
    stats = await JobService(worker.settings).get_job_stats(session)
    assert stats.by_status == {"done": 3}


async def test_poll_once_with_empty_queue(worker):
    assert await worker.poll_once() == 0


async def test_check_stuck_jobs_only_reports(worker, session, make_job, owner_id):
    old = datetime.now(UTC) - timedelta(hours=2)
    job = await make_job(owner_id, status=JobStatus.PROCESSING, attempts=1, updated_at=old)

    assert await worker.check_stuck_jobs() == 1

    stored = await JobService(worker.settings).get_job(session, owner_id, job.id)
    assert stored.status == "processing"
    assert stored.attempts == 1


async def test_start_and_stop(worker):
    task = asyncio.create_task(worker.start())
    await asyncio.sleep(0.05)
    assert worker.running is True

    await worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert worker.running is False


async def test_cannot_start_twice(worker):
    worker.running = True

    with pytest.raises(RuntimeError, match="already running"):
        await worker.start()
