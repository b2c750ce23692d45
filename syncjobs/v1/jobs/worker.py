"""
Long-running job worker.

Polls for owners with eligible work and runs each owner's queue through the
JobRunner. Claims are compare-and-set on job status, so any number of worker
processes can share one database. Stuck jobs are reported, never touched:
requeue and terminate stay operator actions.
"""

import asyncio
import os
import signal
import socket

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncjobs.config.logging import get_logger, setup_logging
from syncjobs.config.settings import Settings, get_settings
from syncjobs.infra.database import get_database
from syncjobs.v1.jobs.exceptions import JobStoreUnavailableError
from syncjobs.v1.jobs.registry_init import register_job_handlers
from syncjobs.v1.jobs.runner import JobRunner
from syncjobs.v1.jobs.service import JobService

logger = get_logger(__name__)

ERROR_BACKOFF_S = 5


class JobWorker:
    """Polling worker that serves owners oldest-waiting first."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        runner: JobRunner | None = None,
    ):
        self.settings = settings
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self._stopped = asyncio.Event()
        self._session_factory = session_factory
        self.jobs = JobService(settings)
        self.runner = runner or JobRunner(settings, session_factory=session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_database().SessionLocal
        return self._session_factory

    async def start(self) -> None:
        """Start the poll and stuck-job loops; returns after stop()."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stopped.clear()
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            poll_interval_ms=self.settings.worker_poll_interval_ms,
            owner_batch=self.settings.worker_owner_batch,
        )
        try:
            await asyncio.gather(self._worker_loop(), self._stuck_job_loop())
        finally:
            self.running = False

    async def stop(self) -> None:
        """Ask both loops to exit after their current iteration."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stopped.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early once stop() is called."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def poll_once(self) -> int:
        """Run one pass over owners with eligible jobs; returns jobs processed."""
        async with self.session_factory() as session:
            owners = await self.jobs.owners_with_eligible_jobs(
                session, self.settings.worker_owner_batch
            )

        processed = 0
        for owner_id in owners:
            result = await self.runner.run(owner_id)
            processed += result.processed
        return processed

    async def check_stuck_jobs(self) -> int:
        """Log processing jobs past the stuck threshold; returns how many."""
        async with self.session_factory() as session:
            stuck = await self.jobs.get_stuck_jobs(session, owner_id=None)
        if stuck:
            logger.warning(
                "Stuck jobs detected",
                stuck_job_count=len(stuck),
                threshold_minutes=self.settings.job_stuck_threshold_minutes,
                job_ids=[str(job.id) for job in stuck[:20]],
            )
        return len(stuck)

    async def _worker_loop(self) -> None:
        interval = self.settings.worker_poll_interval_ms / 1000
        while self.running:
            try:
                processed = await self.poll_once()
                if processed:
                    logger.debug("Worker pass finished", processed=processed)
                    continue
                await self._sleep(interval)
            except (JobStoreUnavailableError, SQLAlchemyError, OSError):
                logger.exception("Error in worker loop", worker_id=self.worker_id)
                await self._sleep(ERROR_BACKOFF_S)

    async def _stuck_job_loop(self) -> None:
        while self.running:
            try:
                await self.check_stuck_jobs()
            except (SQLAlchemyError, OSError):
                logger.exception("Error in stuck job scan", worker_id=self.worker_id)
            await self._sleep(self.settings.worker_stuck_check_interval_s)


# Worker instance management
_worker_instance: JobWorker | None = None


def get_worker(settings: Settings) -> JobWorker:
    """Get or create the global worker instance."""
    global _worker_instance
    if _worker_instance is None:
        _worker_instance = JobWorker(settings)
    return _worker_instance


async def _serve(settings: Settings) -> None:
    worker = get_worker(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
    try:
        await worker.start()
    finally:
        await get_database().close()


def main() -> None:
    """Entry point for the syncjobs-worker script."""
    settings = get_settings()
    setup_logging()
    register_job_handlers(settings)
    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
