"""
Daemon HTTP API adapter.

Responses are polled until the body is non-empty; a non-empty body is
decoded as JSON, an empty one (after the retry budget) as {}.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from snapcheck.errors import ApiError
from snapcheck.retry import DEFAULT_POLICY, RetryPolicy, poll
from snapcheck.taskspec import dig

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:8181"
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class ApiResponse:
    """Raw outcome of one HTTP GET."""

    url: str
    status_code: int
    text: str
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.text != ""


class SnapApiClient:
    """Read-only client for the daemon's /v1 API."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        *,
        policy: RetryPolicy = DEFAULT_POLICY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            follow_redirects=True,
        )

    def fetch(self, url: str) -> ApiResponse:
        """Single GET; transport failures come back as an empty response."""
        try:
            response = self._client.get(url)
            return ApiResponse(url=url, status_code=response.status_code, text=response.text)
        except httpx.HTTPError as e:
            logger.debug(f"HTTP error fetching {url}: {e}")
            return ApiResponse(url=url, status_code=0, text="", error=str(e))

    def get_json(self, url: str) -> Dict[str, Any]:
        """
        Poll url until it returns a body, then decode it.

        Returns:
            Decoded JSON, or {} if the body stayed empty

        Raises:
            ApiError: If the body is not valid JSON or not an object
        """
        url = self._absolute(url)
        response = poll(lambda: self.fetch(url), lambda r: r.succeeded, self.policy, description=f"GET {url}")
        if not response.text:
            logger.warning(
                f"Empty response from {url}" + (f": {response.error}" if response.error else ""),
                extra={"event": "api_empty_response", "metadata": {"url": url}},
            )
            return {}

        try:
            data = json.loads(response.text)
        except json.JSONDecodeError as e:
            raise ApiError(f"Invalid JSON from {url}: {e}", url=url, body=response.text) from e
        if not isinstance(data, dict):
            raise ApiError(f"Expected a JSON object from {url}", url=url, body=response.text)
        return data

    def list_tasks(self) -> List[Dict[str, Any]]:
        """Entries of body.ScheduledTasks from GET /v1/tasks."""
        url = f"{self.base_url}/v1/tasks"
        data = self.get_json(url)
        body = data.get("body") or {}
        tasks = body.get("ScheduledTasks") if isinstance(body, dict) else None
        if tasks is None:
            return []
        if not isinstance(tasks, list):
            raise ApiError("ScheduledTasks is not a list", url=url, body=json.dumps(data))
        return tasks

    def find_task(self, task_id: str) -> Dict[str, Any]:
        """
        Scheduled task entry whose id matches.

        Raises:
            ApiError: If no entry has that id
        """
        for task in self.list_tasks():
            if isinstance(task, dict) and task.get("id") == task_id:
                return task
        raise ApiError(f"Task {task_id} not found in {self.base_url}/v1/tasks")

    def task_metrics(self, task: Dict[str, Any]) -> List[str]:
        """Metric namespaces configured in a task's workflow, via its href."""
        href = task.get("href")
        if not href:
            raise ApiError(f"Task {task.get('id')} has no href")

        data = self.get_json(href)
        body = data.get("body")
        if not isinstance(body, dict):
            raise ApiError(f"Task detail from {href} has no body", url=href, body=json.dumps(data))

        metrics = dig(body, "workflow", "collect", "metrics")
        if metrics is None:
            return []
        if not isinstance(metrics, dict):
            raise ApiError(f"Task detail from {href} has malformed metrics", url=href, body=json.dumps(data))
        return list(metrics)

    def _absolute(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SnapApiClient":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
