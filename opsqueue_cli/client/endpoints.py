"""API Endpoint Wrappers - Type-safe API calls"""

from typing import Any

from .base import APIClient, OpsQueueClientError
from ..utils.config_manager import config

__all__ = ["OpsQueueClient", "OpsQueueClientError"]


class OpsQueueClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})
        self.api = APIClient(
            base_url=final_base_url,
            timeout=float(api_config.get("timeout", 30)),
            headers=final_headers,
            bearer_token=api_config.get("cron_secret"),
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def enqueue_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        delay_seconds: float = 0,
    ) -> dict[str, Any]:
        """Enqueue a single job"""
        body: dict[str, Any] = {
            "type": type,
            "payload": payload or {},
            "delay_seconds": delay_seconds,
        }
        if priority is not None:
            body["priority"] = priority
        if max_attempts is not None:
            body["max_attempts"] = max_attempts
        return self.api.post("/jobs", body)

    def enqueue_preset(self, name: str) -> dict[str, Any]:
        """Enqueue a named batch of jobs"""
        return self.api.post(f"/jobs/presets/{name}")

    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def get_job_logs(self, job_id: str, limit: int = 200) -> dict[str, Any]:
        """Persisted pipeline log of one job"""
        return self.api.get(f"/jobs/{job_id}/logs", {"limit": limit})

    def get_failed_jobs(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent permanently failed jobs"""
        return self.api.get("/jobs/failed", {"limit": limit})

    def get_stats(self, window_hours: int | None = None) -> dict[str, Any]:
        """Queue statistics"""
        params = {"window_hours": window_hours} if window_hours else None
        return self.api.get("/jobs/stats/overview", params)

    def retry_job(self, job_id: str) -> dict[str, Any]:
        """Retry a failed job"""
        return self.api.post(f"/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a pending job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def cleanup_stuck_jobs(self, threshold_minutes: int | None = None) -> dict[str, Any]:
        """Fail jobs stuck in processing"""
        params = (
            {"threshold_minutes": threshold_minutes}
            if threshold_minutes is not None
            else None
        )
        return self.api.post("/jobs/cleanup", params=params)

    # Worker Endpoints
    def run_worker(self, timeout: float | None = None) -> dict[str, Any]:
        """Trigger one worker run and wait for its summary"""
        return self.api.post("/worker/run", timeout=timeout)
