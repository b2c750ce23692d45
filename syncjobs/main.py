from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from syncjobs.config.logging import setup_logging
from syncjobs.config.settings import settings
from syncjobs.v1.core.exceptions import (
    RequestContextMiddleware,
    SyncJobsException,
    general_exception_handler,
    http_exception_handler,
    syncjobs_exception_handler,
)
from syncjobs.v1.core.registries import (
    credential_registry,
    executor_registry,
    job_registry,
    normalizer_registry,
)
from syncjobs.v1.errors.routes import router as errors_router
from syncjobs.v1.healthz import router as health_router
from syncjobs.v1.ingestion.routes import router as ingestion_router
from syncjobs.v1.jobs.registry_init import register_job_handlers
from syncjobs.v1.jobs.routes import router as jobs_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Background job processing and error recovery",
        version=settings.version,
        debug=settings.debug,
        # All endpoints live under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(SyncJobsException, syncjobs_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Build the kind -> handler dispatch table
    register_job_handlers(settings)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(errors_router, prefix="/v1")
    app.include_router(ingestion_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        executor_registry.freeze()
        credential_registry.freeze()
        normalizer_registry.freeze()

    return app


# Create the app instance
app = create_app()


def main() -> None:
    """Entry point for the syncjobs-api script."""
    import uvicorn

    uvicorn.run(
        "syncjobs.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )


if __name__ == "__main__":
    main()
