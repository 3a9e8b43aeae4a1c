"""API Endpoint Wrappers - Type-safe API calls"""

from typing import Any

import httpx

from .base import APIClient, LeagueJobsError
from ..utils.config_manager import config


class LeagueJobsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
            transport=transport,
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

    # Job submission
    def submit_job(
        self,
        type: str,
        payload: dict[str, Any],
        priority: int | None = None,
        dedupe: bool = True,
        total: int | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        """Submit a job; returns job_id and whether an existing job was reused"""
        body: dict[str, Any] = {"type": type, "payload": payload, "dedupe": dedupe}
        if priority is not None:
            body["priority"] = priority
        if total is not None:
            body["total"] = total
        if label:
            body["label"] = label
        return self.api.post("/jobs", body)

    # Monitoring
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

    def list_job_items(
        self, job_id: str, status: str | None = None, limit: int = 500
    ) -> dict[str, Any]:
        """Per-item progress of a bulk job"""
        params: dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        return self.api.get(f"/jobs/{job_id}/items", params)

    def job_stats(self) -> dict[str, Any]:
        """Queue statistics"""
        return self.api.get("/jobs/stats")

    def artifact_link(self, job_id: str) -> dict[str, Any]:
        """Signed download URL for a completed job's artifact"""
        return self.api.get(f"/jobs/{job_id}/artifact")

    # Control
    def _action(self, action: str, job_ids: list[str]) -> dict[str, Any]:
        if not job_ids:
            raise LeagueJobsError("At least one job ID is required")
        return self.api.post(f"/jobs/{action}", {"job_ids": job_ids})

    def retry_jobs(self, job_ids: list[str]) -> dict[str, Any]:
        return self._action("retry", job_ids)

    def cancel_jobs(self, job_ids: list[str]) -> dict[str, Any]:
        return self._action("cancel", job_ids)

    def pause_jobs(self, job_ids: list[str]) -> dict[str, Any]:
        return self._action("pause", job_ids)

    def resume_jobs(self, job_ids: list[str]) -> dict[str, Any]:
        return self._action("resume", job_ids)

    def run_jobs(self) -> dict[str, Any]:
        """Trigger one runner invocation on the server"""
        return self.api.post("/jobs/run")
