"""
Database package for workflow run history.

- RunHistoryManager: synchronous DuckDB persistence of runs and node executions
- RunHistoryRecorder: async RunRecorder that feeds scheduler events into it

Usage:
    from database import RunHistoryManager, RunHistoryRecorder

    history = RunHistoryManager()
    recorder = RunHistoryRecorder(history, workflow_id="wf-1")
    runs = history.list_runs(workflow_id="wf-1")
"""

from .run_history import RunHistoryManager
from .run_recorder import RunHistoryRecorder

__all__ = ['RunHistoryManager', 'RunHistoryRecorder']
