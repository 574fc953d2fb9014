"""
Execution state tracking for graph runs.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .errors import InvalidTransitionError


class NodeRunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeRunState.SUCCEEDED, NodeRunState.FAILED, NodeRunState.SKIPPED)


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunState.NOT_STARTED, RunState.RUNNING)


ALLOWED_TRANSITIONS = {
    NodeRunState.PENDING: {NodeRunState.RUNNING, NodeRunState.SKIPPED},
    NodeRunState.RUNNING: {NodeRunState.SUCCEEDED, NodeRunState.FAILED},
    NodeRunState.SUCCEEDED: set(),
    NodeRunState.FAILED: set(),
    NodeRunState.SKIPPED: set(),
}


def aggregate_run_state(
    node_states: Dict[str, NodeRunState],
    terminal_nodes: Iterable[str],
) -> RunState:
    """
    Completed iff every node succeeded; failed iff every terminal node ended
    failed or skipped; partial otherwise.
    """
    if all(state is NodeRunState.SUCCEEDED for state in node_states.values()):
        return RunState.COMPLETED
    terminal_states = [node_states[node_id] for node_id in terminal_nodes]
    if terminal_states and all(
        state in (NodeRunState.FAILED, NodeRunState.SKIPPED) for state in terminal_states
    ):
        return RunState.FAILED
    return RunState.PARTIALLY_COMPLETED


@dataclass
class RunResult:
    """Point-in-time snapshot of a run."""

    run_id: str
    scope: str
    state: RunState
    node_states: Dict[str, NodeRunState]
    node_errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    duration_ms: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'scope': self.scope,
            'state': self.state.value,
            'node_states': {node_id: state.value for node_id, state in self.node_states.items()},
            'node_errors': self.node_errors,
            'outputs': self.outputs,
            'duration_ms': self.duration_ms,
        }


class ExecutionState:
    """
    Per-run state tracker.

    Holds the run state, every node's NodeRunState, node errors and timings.
    Transitions are checked against ALLOWED_TRANSITIONS. A lock guards the
    maps so status snapshots can be taken from another thread.
    """

    def __init__(self, run_id: str, node_ids: Iterable[str]):
        self.run_id = run_id
        self.run_state = RunState.NOT_STARTED
        self.node_states: Dict[str, NodeRunState] = {
            node_id: NodeRunState.PENDING for node_id in node_ids
        }
        self.node_errors: Dict[str, Dict[str, Any]] = {}
        self.node_durations_ms: Dict[str, int] = {}
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self.run_state is not RunState.NOT_STARTED:
                raise InvalidTransitionError(f"Run {self.run_id} already started")
            self.run_state = RunState.RUNNING
            self.start_time = time.monotonic()

    def finish(self, state: RunState) -> None:
        with self._lock:
            if self.run_state is not RunState.RUNNING or not state.terminal:
                raise InvalidTransitionError(
                    f"Run {self.run_id} cannot move from {self.run_state.value} to {state.value}"
                )
            self.run_state = state
            self.end_time = time.monotonic()

    def get(self, node_id: str) -> NodeRunState:
        return self.node_states[node_id]

    def transition(self, node_id: str, new_state: NodeRunState) -> None:
        with self._lock:
            current = self.node_states[node_id]
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Node {node_id} cannot move from {current.value} to {new_state.value}"
                )
            self.node_states[node_id] = new_state

    def record_error(self, node_id: str, error: Dict[str, Any]) -> None:
        with self._lock:
            self.node_errors[node_id] = error

    def record_duration(self, node_id: str, duration_ms: int) -> None:
        with self._lock:
            self.node_durations_ms[node_id] = duration_ms

    @property
    def duration_ms(self) -> Optional[int]:
        if self.start_time is None:
            return None
        end = self.end_time if self.end_time is not None else time.monotonic()
        return int((end - self.start_time) * 1000)

    def snapshot(self, scope: str, outputs: Optional[Dict[str, Dict[str, Any]]] = None) -> RunResult:
        with self._lock:
            return RunResult(
                run_id=self.run_id,
                scope=scope,
                state=self.run_state,
                node_states=dict(self.node_states),
                node_errors=dict(self.node_errors),
                outputs=dict(outputs or {}),
                duration_ms=self.duration_ms,
            )
