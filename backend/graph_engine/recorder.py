"""
Run lifecycle observers.

The scheduler reports every run and node transition to a RunRecorder. A
recorder is an observer only: it never influences scheduling.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RunRecorder:
    """Receives run and node lifecycle events. All hooks default to no-ops."""

    async def on_run_start(self, run_id: str, scope: str, node_count: int) -> None:
        pass

    async def on_node_start(self, run_id: str, node_id: str, kind: str) -> None:
        pass

    async def on_node_finish(
        self,
        run_id: str,
        node_id: str,
        state: str,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> None:
        pass

    async def on_run_finish(self, run_id: str, state: str, duration_ms: int) -> None:
        pass


class NullRunRecorder(RunRecorder):
    """Recorder that discards every event."""
