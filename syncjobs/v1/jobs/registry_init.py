"""
Builds the kind -> handler dispatch table once at startup.
"""

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings, settings as default_settings
from syncjobs.v1.core.registries import job_registry
from syncjobs.v1.ingestion.normalize import register_normalizers
from syncjobs.v1.jobs.handlers import (
    CleanupHandler,
    DelegatedWorkHandler,
    NormalizeHandler,
    SyncIngestionHandler,
)
from syncjobs.v1.jobs.models import JobKind

logger = get_logger(__name__)


def register_job_handlers(settings: Settings | None = None) -> None:
    """Register a handler for every job kind; safe to call more than once."""
    settings = settings or default_settings
    register_normalizers()

    handlers = {
        JobKind.SYNC_PROVIDER_A: SyncIngestionHandler(settings, source="provider_a"),
        JobKind.SYNC_PROVIDER_B: SyncIngestionHandler(settings, source="provider_b"),
        JobKind.INGESTION_BATCH: SyncIngestionHandler(settings),
        JobKind.NORMALIZE: NormalizeHandler(settings),
        JobKind.EMBED: DelegatedWorkHandler(settings, JobKind.EMBED),
        JobKind.INSIGHT: DelegatedWorkHandler(settings, JobKind.INSIGHT),
        JobKind.CLEANUP: CleanupHandler(settings),
    }
    if job_registry.is_frozen():
        return

    for kind, handler in handlers.items():
        job_registry.register(kind.value, handler)

    logger.info("Job handlers registered", registered_handlers=job_registry.list())
