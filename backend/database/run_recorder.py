"""
RunRecorder that persists scheduler events to the run history database.

Database calls reuse the synchronous RunHistoryManager but run in a
background thread via utils.async_helpers.run_in_thread, so recording never
blocks the event loop driving the run.
"""

import logging
from typing import Any, Dict, Optional

from graph_engine.recorder import RunRecorder
from utils.async_helpers import run_in_thread
from .run_history import RunHistoryManager

logger = logging.getLogger(__name__)


class RunHistoryRecorder(RunRecorder):
    """Writes run and node lifecycle events to DuckDB."""

    def __init__(self, history: Optional[RunHistoryManager] = None, workflow_id: Optional[str] = None):
        self.history = history or RunHistoryManager()
        self.workflow_id = workflow_id

    async def on_run_start(self, run_id: str, scope: str, node_count: int) -> None:
        await run_in_thread(self.history.create_run, run_id, scope, node_count, self.workflow_id)

    async def on_node_start(self, run_id: str, node_id: str, kind: str) -> None:
        await run_in_thread(self.history.start_node_run, run_id, node_id, kind)

    async def on_node_finish(
        self,
        run_id: str,
        node_id: str,
        state: str,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> None:
        await run_in_thread(
            self.history.finish_node_run, run_id, node_id, state, output, error, duration_ms
        )

    async def on_run_finish(self, run_id: str, state: str, duration_ms: int) -> None:
        await run_in_thread(self.history.update_run, run_id, status=state, duration_ms=duration_ms)
