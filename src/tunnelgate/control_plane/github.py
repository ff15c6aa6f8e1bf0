"""GitHub Actions REST calls used to dispatch, inspect and cancel workflow runs."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx
import structlog

from ..common.cache import TTLCache
from ..common.errors import ConfigurationError, RemoteServiceError
from ..common.settings import ControlPlaneSettings

LOGGER = structlog.get_logger("tunnelgate.github")

GITHUB_API_VERSION = "2022-11-28"

_ERROR_TYPES = {
    401: ("authentication", "GitHub rejected the configured credentials"),
    403: ("forbidden", "GitHub denied access to the repository"),
    404: ("not_found", "The requested workflow resource was not found"),
    409: ("conflict", "The workflow run cannot be changed in its current state"),
    422: ("validation", "GitHub rejected the request parameters"),
    429: ("rate_limited", "GitHub rate limit exceeded"),
}


def sanitize_error(status_code: int) -> dict[str, Any]:
    """Describe an upstream failure without echoing GitHub's response body."""
    if status_code in _ERROR_TYPES:
        error_type, message = _ERROR_TYPES[status_code]
    elif status_code >= 500:
        error_type, message = "upstream_unavailable", "GitHub is unavailable"
    else:
        error_type, message = "upstream_error", "GitHub request failed"
    return {"status": status_code, "type": error_type, "message": message}


def job_name_for(logical_username: str) -> str:
    return f"Run for {logical_username}"


class GitHubActionsClient:
    """Wraps the workflow endpoints of one repository.

    Read endpoints are served through a ``TTLCache`` keyed by the query; writes
    do not evict cached reads.
    """

    def __init__(
        self,
        settings: ControlPlaneSettings,
        http_client: httpx.AsyncClient,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self.cache = cache if cache is not None else TTLCache(settings.github_cache_ttl_seconds)

    def _repo_url(self, path: str) -> str:
        settings = self._settings
        if not settings.github_org or not settings.github_repo:
            raise ConfigurationError("GitHub repository is not configured")
        base = settings.github_api_base.rstrip("/")
        return f"{base}/repos/{settings.github_org}/{settings.github_repo}{path}"

    def _headers(self) -> dict[str, str]:
        token = self._settings.github_token_value
        if not token:
            raise ConfigurationError("GitHub token not configured")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._repo_url(path)
        headers = self._headers()
        try:
            return await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            LOGGER.error("GitHub request failed", method=method, path=path, error_type=type(exc).__name__)
            raise RemoteServiceError("Failed to reach GitHub", status_code=502) from exc

    @staticmethod
    def _check(response: httpx.Response, operation: str, accepted: tuple[int, ...] = ()) -> None:
        if response.is_success or response.status_code in accepted:
            return
        LOGGER.warning("GitHub returned an error", operation=operation, status=response.status_code)
        raise RemoteServiceError(
            f"GitHub {operation} failed",
            error=sanitize_error(response.status_code),
            status_code=response.status_code,
        )

    async def list_runs(self, per_page: int = 30, status: Optional[str] = None) -> list[dict]:
        """Workflow runs, newest first."""
        params: dict[str, Any] = {"per_page": per_page}
        if status:
            params["status"] = status

        async def load() -> list[dict]:
            response = await self._request("GET", "/actions/runs", params=params)
            self._check(response, "list runs")
            runs = response.json().get("workflow_runs", [])
            return sorted(runs, key=lambda run: run.get("created_at") or "", reverse=True)

        return await self.cache.get_or_load(("runs", per_page, status), load)

    async def get_run(self, run_id: int) -> dict:
        async def load() -> dict:
            response = await self._request("GET", f"/actions/runs/{run_id}")
            self._check(response, "get run")
            return response.json()

        return await self.cache.get_or_load(("run", run_id), load)

    async def list_jobs(self, run_id: int) -> list[dict]:
        async def load() -> list[dict]:
            response = await self._request("GET", f"/actions/runs/{run_id}/jobs")
            self._check(response, "list jobs")
            return response.json().get("jobs", [])

        return await self.cache.get_or_load(("jobs", run_id), load)

    async def dispatch(self, inputs: dict[str, Any], ref: Optional[str] = None) -> None:
        workflow = self._settings.github_workflow_file
        payload = {"ref": ref or self._settings.github_ref, "inputs": inputs}
        response = await self._request("POST", f"/actions/workflows/{workflow}/dispatches", json=payload)
        if response.status_code != 204:
            self._check(response, "workflow dispatch")
        LOGGER.info("Workflow dispatched", workflow=workflow, ref=payload["ref"])

    async def cancel(self, run_id: int) -> None:
        response = await self._request("POST", f"/actions/runs/{run_id}/cancel")
        self._check(response, "cancel run", accepted=(202,))
        LOGGER.info("Workflow run cancelled", run_id=run_id, status=response.status_code)

    async def _jobs_or_empty(self, run_id: int) -> list[dict]:
        try:
            return await self.list_jobs(run_id)
        except RemoteServiceError:
            LOGGER.warning("Skipping run whose jobs could not be fetched", run_id=run_id)
            return []

    async def find_latest_run_for_job(
        self,
        job_name: str,
        per_page: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ) -> Optional[tuple[dict, dict]]:
        """Return ``(run, job)`` for the newest run containing a job named ``job_name``.

        Runs are scanned newest first in chunks; each chunk's jobs are fetched
        concurrently and the first match in run order wins.
        """
        per_page = per_page or self._settings.run_search_per_page
        chunk_size = max(1, chunk_size or self._settings.run_search_chunk_size)
        runs = await self.list_runs(per_page=per_page)
        for start in range(0, len(runs), chunk_size):
            chunk = runs[start : start + chunk_size]
            results = await asyncio.gather(*(self._jobs_or_empty(run["id"]) for run in chunk))
            for run, jobs in zip(chunk, results):
                for job in jobs:
                    if job.get("name") == job_name:
                        return run, job
        return None
