"""
In-process task backend.

Each submitted task runs as an asyncio task on the caller's event loop and is
routed to a handler registered for its kind. Blocking handler work goes
through the shared I/O thread pool.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import tempfile
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import config
from graph_engine.constants import TaskKind
from graph_engine.dispatcher import TaskBackend
from graph_engine.errors import FailureKind, TaskBackendError
from utils.async_helpers import run_in_thread
from utils.media_utils import fetch_media, probe_video_duration

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

# Cancelled task ids remembered so a late status check still reports "cancelled"
CANCELLED_ID_MEMORY = 1024

_MIME_EXTENSIONS = {
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
    'image/gif': '.gif',
}


def _write_media(media_dir: Path, filename: str, data: bytes) -> Path:
    media_dir.mkdir(parents=True, exist_ok=True)
    path = media_dir / filename
    path.write_bytes(data)
    return path


def make_store_handler(media_dir: Optional[Path] = None) -> TaskHandler:
    """``media.store``: decode the base64 content into ``media_dir`` and return a file URI."""
    target_dir = Path(media_dir or config.MEDIA_DIR)

    async def store_media(payload: Dict[str, Any]) -> Dict[str, str]:
        content = payload.get('content_base64')
        if not content:
            raise TaskBackendError("media.store payload has no content", FailureKind.INVALID_INPUT)
        try:
            data = base64.b64decode(content, validate=True)
        except ValueError as e:
            raise TaskBackendError(f"Invalid base64 content: {e}", FailureKind.INVALID_INPUT)

        suffix = Path(payload.get('filename') or '').suffix
        suffix = suffix or _MIME_EXTENSIONS.get(payload.get('mime_type', ''), '.bin')
        path = await run_in_thread(_write_media, target_dir, f"{uuid.uuid4().hex}{suffix}", data)
        logger.info("Stored %d bytes as %s", len(data), path.name)
        return {'media_ref': path.resolve().as_uri()}

    return store_media


async def probe_media(payload: Dict[str, Any]) -> Dict[str, float]:
    """``media.probe``: report the duration of a video in seconds."""
    source = payload.get('source_url')
    if not source:
        raise TaskBackendError("media.probe payload has no source_url", FailureKind.INVALID_INPUT)

    with tempfile.TemporaryDirectory(prefix="probe-") as tmp:
        path = Path(tmp) / "video"
        try:
            await run_in_thread(fetch_media, source, path)
            duration = await run_in_thread(probe_video_duration, path)
        except ValueError as e:
            raise TaskBackendError(str(e), FailureKind.INVALID_INPUT)
    return {'duration': duration}


class LocalTaskBackend(TaskBackend):
    """
    Runs tasks as asyncio tasks in the current process.

    Handlers are looked up by task kind; submitting a kind without a handler
    fails with an ``invalid_input`` TaskBackendError.
    """

    name = "local"
    supports_cancel = True

    def __init__(self, handlers: Optional[Dict[str, TaskHandler]] = None, media_dir: Optional[Path] = None):
        self.handlers: Dict[str, TaskHandler] = {
            TaskKind.STORE_MEDIA: make_store_handler(media_dir),
            TaskKind.PROBE_MEDIA: probe_media,
        }
        self.handlers.update(handlers or {})
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelled: "OrderedDict[str, None]" = OrderedDict()

    def register(self, kind: str, handler: TaskHandler) -> None:
        self.handlers[kind] = handler

    async def submit(self, kind: str, payload: Dict[str, Any]) -> str:
        handler = self.handlers.get(kind)
        if handler is None:
            raise TaskBackendError(f"No local handler for task kind {kind}", FailureKind.INVALID_INPUT)
        task_id = uuid.uuid4().hex
        self._tasks[task_id] = asyncio.create_task(handler(payload), name=f"{kind}-{task_id}")
        logger.debug("Started local %s task %s", kind, task_id)
        return task_id

    async def status(self, task_id: str) -> Dict[str, Any]:
        task = self._tasks.get(task_id)
        if task is None:
            if task_id in self._cancelled:
                del self._cancelled[task_id]
                return {'state': 'cancelled'}
            raise TaskBackendError(f"Unknown task {task_id}", FailureKind.BACKEND)
        if not task.done():
            return {'state': 'running'}

        self._tasks.pop(task_id, None)
        if task.cancelled():
            return {'state': 'cancelled'}
        error = task.exception()
        if isinstance(error, TaskBackendError):
            return {'state': 'failed', 'error': {'kind': error.kind.value, 'message': str(error)}}
        if error is not None:
            return {'state': 'failed', 'error': str(error)}
        return {'state': 'succeeded', 'result': task.result()}

    async def cancel(self, task_id: str) -> None:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return
        if task.done():
            _consume_outcome(task)
        else:
            task.cancel()
            task.add_done_callback(_consume_outcome)
        self._cancelled[task_id] = None
        while len(self._cancelled) > CANCELLED_ID_MEMORY:
            self._cancelled.popitem(last=False)


def _consume_outcome(task: asyncio.Task) -> None:
    """Retrieve a dropped task's exception so asyncio does not report it as unhandled."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Dropped task %s ended with %s", task.get_name(), task.exception())
