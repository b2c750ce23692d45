"""API Endpoint Wrappers - Typed API calls"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, SyncJobsError

__all__ = ["SyncJobsClient", "SyncJobsError"]


def _drop_none(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class SyncJobsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self, base_url: str | None = None, headers: dict[str, str] | None = None
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        self.api = APIClient(
            base_url=base_url or api_config.get("base_url", "http://localhost:8000"),
            timeout=int(api_config.get("timeout", 30)),
            headers=headers or api_config.get("headers") or {},
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    # Jobs Endpoints
    def enqueue_job(
        self,
        kind: str,
        payload: dict[str, Any] | None = None,
        batch_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> dict[str, Any]:
        data = _drop_none(
            {
                "kind": kind,
                "payload": payload or {},
                "batch_id": batch_id,
                "dedupe_key": dedupe_key,
            }
        )
        return self.api.post("/jobs", data)

    def list_jobs(
        self,
        status: list[str] | None = None,
        kind: str | None = None,
        batch_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        params = _drop_none(
            {
                "status": status or None,
                "kind": kind,
                "batch_id": batch_id,
                "limit": limit,
                "offset": offset,
            }
        )
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def run_jobs(
        self,
        max_jobs: int | None = None,
        kinds: list[str] | None = None,
        batch_id: str | None = None,
        include_retrying: bool = True,
        skip_stuck_jobs: bool = True,
    ) -> dict[str, Any]:
        data = _drop_none(
            {
                "max_jobs": max_jobs,
                "kinds": kinds or None,
                "batch_id": batch_id,
                "include_retrying": include_retrying,
                "skip_stuck_jobs": skip_stuck_jobs,
            }
        )
        return self.api.post("/jobs/run", data)

    def list_stuck_jobs(self, threshold_minutes: int | None = None) -> dict[str, Any]:
        return self.api.get(
            "/jobs/stuck", _drop_none({"threshold_minutes": threshold_minutes})
        )

    def requeue_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/requeue")

    def terminate_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/terminate")

    def get_job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    # Errors Endpoints
    def get_error_summary(
        self,
        time_range_hours: int = 24,
        include_resolved: bool = False,
        provider: str | None = None,
        stage: str | None = None,
        severity_filter: str | None = None,
        include_details: bool = True,
    ) -> dict[str, Any]:
        params = _drop_none(
            {
                "time_range_hours": time_range_hours,
                "include_resolved": include_resolved,
                "provider": provider,
                "stage": stage,
                "severity_filter": severity_filter,
                "include_details": include_details,
            }
        )
        return self.api.get("/errors/summary", params)

    def retry_errors(
        self,
        error_ids: list[str] | None = None,
        job_ids: list[str] | None = None,
        retry_all: bool = False,
        provider: str | None = None,
        category: str | None = None,
        max_retries: int | None = None,
        retry_strategy: str = "smart",
        delay_minutes: int | None = None,
        include_auth_refresh: bool = True,
    ) -> dict[str, Any]:
        data = _drop_none(
            {
                "error_ids": error_ids or None,
                "job_ids": job_ids or None,
                "retry_all": retry_all,
                "provider": provider,
                "category": category,
                "max_retries": max_retries,
                "retry_strategy": retry_strategy,
                "delay_minutes": delay_minutes,
                "include_auth_refresh": include_auth_refresh,
            }
        )
        return self.api.post("/errors/retry", data)

    def get_retry_eligibility(
        self, error_ids: list[str] | None = None
    ) -> dict[str, Any]:
        return self.api.get(
            "/errors/retry/eligibility", _drop_none({"error_ids": error_ids or None})
        )

    def get_retry_stats(self, time_range_hours: int = 168) -> dict[str, Any]:
        return self.api.get(
            "/errors/retry/stats", {"time_range_hours": time_range_hours}
        )

    def acknowledge_error(self, error_id: str) -> dict[str, Any]:
        return self.api.post(f"/errors/{error_id}/acknowledge")

    def resolve_error(self, error_id: str, method: str = "manual") -> dict[str, Any]:
        return self.api.post(f"/errors/{error_id}/resolve", params={"method": method})
