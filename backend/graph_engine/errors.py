"""
Error types shared across the graph execution runtime.

Compile-time errors (graph shape, handle types, scope) are raised to the
caller before a run starts. Execution errors are raised by node executors and
recorded on the node; they never abort a run.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, List, Optional


class FailureKind(str, Enum):
    QUOTA = "quota"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    INVALID_INPUT = "invalid_input"
    CREDENTIAL = "credential"
    BACKEND = "backend"
    CANCELLED = "cancelled"

    @property
    def transient(self) -> bool:
        return self in TRANSIENT_FAILURES


TRANSIENT_FAILURES = frozenset({FailureKind.QUOTA, FailureKind.TIMEOUT, FailureKind.UNAVAILABLE})

# Checked in order; first match wins
_FAILURE_PATTERNS = [
    (FailureKind.QUOTA, re.compile(r"quota|rate.?limit|rate exceeded|\b429\b|resource_exhausted|too many requests", re.I)),
    (FailureKind.CREDENTIAL, re.compile(
        r"api.?key|authenticat|unauthori[sz]ed|permission denied|\b401\b|\b403\b|credential", re.I)),
    (FailureKind.TIMEOUT, re.compile(r"timed? ?out|timeout|deadline", re.I)),
    (FailureKind.UNAVAILABLE, re.compile(
        r"unavailable|\b50[234]\b|connection (?:reset|refused|aborted|error)|temporar", re.I)),
    (FailureKind.INVALID_INPUT, re.compile(r"invalid|malformed|\b400\b|unsupported", re.I)),
]


def classify_failure(message: str) -> FailureKind:
    """Map a raw backend failure message onto a FailureKind."""
    text = str(message or "")
    for kind, pattern in _FAILURE_PATTERNS:
        if pattern.search(text):
            return kind
    return FailureKind.BACKEND


# ============================================================================
# Compile-time errors
# ============================================================================

class GraphValidationError(ValueError):
    """Raised when a graph definition fails validation."""


class InvalidNodeError(GraphValidationError):
    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id


class DanglingEdgeError(GraphValidationError):
    def __init__(self, edge_id: str, message: str = ""):
        super().__init__(message or f"Edge {edge_id} references an unknown node or handle")
        self.edge_id = edge_id


class TypeMismatchError(GraphValidationError):
    def __init__(self, edge_id: str, message: str = ""):
        super().__init__(message or f"Edge {edge_id} connects incompatible handle types")
        self.edge_id = edge_id


class HandleOccupiedError(GraphValidationError):
    def __init__(self, edge_id: str, message: str = ""):
        super().__init__(message or f"Edge {edge_id} targets a handle that is already connected")
        self.edge_id = edge_id


class CycleError(GraphValidationError):
    def __init__(self, node_ids: Iterable[str]):
        self.node_ids: List[str] = sorted(node_ids)
        super().__init__(f"Graph contains a cycle through nodes: {', '.join(self.node_ids)}")


class InvalidScopeError(ValueError):
    """Raised when a run is requested with an unusable scope or selection."""


# ============================================================================
# Runtime errors
# ============================================================================

class TaskBackendError(Exception):
    """Raised by task backends; carries its own failure classification."""

    def __init__(self, message: str, kind: Optional[FailureKind] = None):
        super().__init__(message)
        self.kind = kind or classify_failure(message)


class NodeExecutionError(Exception):
    """A node executor could not produce its outputs."""

    def __init__(self, kind: FailureKind, detail: str, attempts: int = 0):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.attempts = attempts

    @property
    def transient(self) -> bool:
        return self.kind.transient

    def to_dict(self) -> dict:
        return {'kind': self.kind.value, 'detail': self.detail, 'attempts': self.attempts}


class ContextWriteError(RuntimeError):
    """Raised when a node's outputs are written to the context twice."""


class InvalidTransitionError(RuntimeError):
    """Raised on a node state transition outside the allowed table."""
