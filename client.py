import requests
from typing import Optional


class EngineClient:
    """Simple REST client for the job control and goal endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        user_id: str = "admin",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-User-Role": "admin", "X-User-Id": user_id}
        if api_key:
            self.headers["X-API-Key"] = api_key

    def list_jobs(self) -> list[dict]:
        resp = requests.get(f"{self.base_url}/jobs", headers=self.headers)
        resp.raise_for_status()
        return resp.json()

    def trigger_job(self, name: str) -> dict:
        """Run ``name`` now; a failed run is returned, not raised."""
        resp = requests.post(f"{self.base_url}/jobs/{name}/trigger", headers=self.headers)
        if resp.status_code == 500:
            return resp.json()
        resp.raise_for_status()
        return resp.json()

    def stop_job(self, name: str) -> dict:
        resp = requests.post(f"{self.base_url}/jobs/{name}/stop", headers=self.headers)
        resp.raise_for_status()
        return resp.json()

    def start_job(self, name: str) -> dict:
        resp = requests.post(f"{self.base_url}/jobs/{name}/start", headers=self.headers)
        resp.raise_for_status()
        return resp.json()

    def recent_logs(self, limit: int = 50) -> list[dict]:
        resp = requests.get(
            f"{self.base_url}/jobs/logs", params={"limit": limit}, headers=self.headers
        )
        resp.raise_for_status()
        return resp.json()

    def job_logs(self, name: str, limit: int = 20) -> list[dict]:
        resp = requests.get(
            f"{self.base_url}/jobs/{name}/logs",
            params={"limit": limit},
            headers=self.headers,
        )
        resp.raise_for_status()
        return resp.json()

    def refresh_goal(self, goal_id: int) -> dict:
        resp = requests.post(
            f"{self.base_url}/goals/{goal_id}/refresh", headers=self.headers
        )
        resp.raise_for_status()
        return resp.json()
