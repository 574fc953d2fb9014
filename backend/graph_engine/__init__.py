"""
Graph execution package
=======================

Provides the core building blocks for the workflow execution runtime:

- Declarative node schemas, typed node configs and graph validation
- Compilation of graphs into levelled execution plans
- Task dispatching with polling, timeouts and retry backoff
- Shared execution context/state containers
- Node executor registry for handling specific node behaviours
"""

from .constants import NodeKind, RunScope  # noqa: F401
from .context import CancellationToken, ExecutionContext, NodeOutput  # noqa: F401
from .dispatcher import RetryPolicy, TaskBackend, TaskDispatcher, TaskSpec  # noqa: F401
from .errors import (  # noqa: F401
    CycleError,
    DanglingEdgeError,
    FailureKind,
    GraphValidationError,
    InvalidScopeError,
    NodeExecutionError,
    TaskBackendError,
    TypeMismatchError,
)
from .node_executors import NodeExecutorRegistry  # noqa: F401
from .planner import ExecutionPlan, GraphCompiler, compile_graph  # noqa: F401
from .recorder import NullRunRecorder, RunRecorder  # noqa: F401
from .schema import DataType, GraphValidator  # noqa: F401
from .state import NodeRunState, RunResult, RunState  # noqa: F401
