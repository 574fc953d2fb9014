"""
HTTP task backend.

Talks to a remote task service:

    POST {base}/tasks               {"kind", "payload"} -> {"id"}
    GET  {base}/tasks/{id}          -> {"state", "result"?, "error"?}
    POST {base}/tasks/{id}/cancel

``requests`` is blocking, so every call runs in the shared I/O thread pool.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

import config
from graph_engine.dispatcher import TaskBackend
from graph_engine.errors import FailureKind, TaskBackendError
from utils.async_helpers import run_in_thread
from utils.logging_utils import compact_json

logger = logging.getLogger(__name__)


def _kind_for_status(status_code: int) -> FailureKind:
    if status_code == 429:
        return FailureKind.QUOTA
    if status_code in (401, 403):
        return FailureKind.CREDENTIAL
    if status_code == 408:
        return FailureKind.TIMEOUT
    if status_code >= 500:
        return FailureKind.UNAVAILABLE
    return FailureKind.INVALID_INPUT


class HttpTaskBackend(TaskBackend):
    name = "http"
    supports_cancel = True

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = config.HTTP_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        base_url = base_url or config.TASK_BACKEND_URL
        if not base_url:
            raise ValueError("HttpTaskBackend needs a base URL (set GRAPHRUN_TASK_BACKEND_URL)")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers['Authorization'] = f"Bearer {api_key}"

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise TaskBackendError(f"Request to {url} timed out: {e}", FailureKind.TIMEOUT)
        except requests.ConnectionError as e:
            raise TaskBackendError(f"Task backend unavailable: {e}", FailureKind.UNAVAILABLE)

        if response.status_code >= 400:
            detail = response.text[:500]
            raise TaskBackendError(
                f"{method} {path} failed with {response.status_code}: {detail}",
                _kind_for_status(response.status_code),
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise TaskBackendError(f"Task backend returned invalid JSON for {path}", FailureKind.BACKEND)

    async def submit(self, kind: str, payload: Dict[str, Any]) -> str:
        logger.debug("Submitting %s task: %s", kind, compact_json(payload))
        data = await run_in_thread(self._request, 'POST', '/tasks', {'kind': kind, 'payload': payload})
        task_id = data.get('id') or data.get('task_id')
        if not task_id:
            raise TaskBackendError(f"Task backend returned no task id: {data}", FailureKind.BACKEND)
        return str(task_id)

    async def status(self, task_id: str) -> Dict[str, Any]:
        return await run_in_thread(self._request, 'GET', f"/tasks/{task_id}")

    async def cancel(self, task_id: str) -> None:
        await run_in_thread(self._request, 'POST', f"/tasks/{task_id}/cancel")
