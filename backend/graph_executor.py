"""
Graph Executor - level-by-level execution engine for node workflows.

Architecture:
- ExecutionScheduler: drives one compiled plan level by level, launching every
  ready node of a level concurrently behind a run-wide semaphore
- Node outputs flow to dependents through a write-once ExecutionContext
- A failed or skipped dependency skips its dependents without running them
- RunManager: starts runs in background threads and answers status/cancel
  requests from other threads
"""

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import config
from graph_engine.constants import RunScope
from graph_engine.context import CancellationToken, ExecutionContext, NodeOutput
from graph_engine.dispatcher import TaskBackend, TaskDispatcher
from graph_engine.errors import FailureKind, InvalidScopeError, NodeExecutionError
from graph_engine.node_executors import NodeExecutorRegistry
from graph_engine.planner import ExecutionPlan, GraphCompiler
from graph_engine.recorder import NullRunRecorder, RunRecorder
from graph_engine.schema import DataType, InputHandle, Node
from graph_engine.state import (
    ExecutionState,
    NodeRunState,
    RunResult,
    RunState,
    aggregate_run_state,
)
from utils.async_helpers import shutdown_thread_pools

logger = logging.getLogger(__name__)

CallerInputs = Mapping[str, Union[Any, Sequence[Any]]]
RecorderFactory = Callable[[Optional[str]], RunRecorder]

UPSTREAM_SKIPPED = 'upstream_skipped'


def _coerce_value(node: Node, handle: InputHandle, value: Any) -> NodeOutput:
    """Type one caller value for ``handle``; bare strings follow the handle's accepted types."""
    if isinstance(value, str) and DataType.TEXT not in handle.accepts:
        return NodeOutput.of_media(value)
    try:
        output = NodeOutput.from_value(value)
    except ValueError as exc:
        raise InvalidScopeError(f"Node {node.id}, input {handle.name}: {exc}") from exc
    if output.text is not None:
        accepted = DataType.TEXT in handle.accepts
    else:
        accepted = bool(handle.accepts - {DataType.TEXT})
    if not accepted:
        raise InvalidScopeError(
            f"Node {node.id}, input {handle.name} accepts "
            f"{sorted(t.value for t in handle.accepts)}, got {output.to_dict()!r}"
        )
    return output


def _coerce_inputs(inputs: Optional[CallerInputs], node: Optional[Node] = None) -> Dict[str, List[NodeOutput]]:
    """
    Normalise caller-supplied handle values to lists of NodeOutput.

    With ``node`` given, handles are checked against its input schema and
    mismatches raise InvalidScopeError.
    """
    if node is not None:
        unknown = set(inputs or {}) - set(node.schema.inputs)
        if unknown:
            raise InvalidScopeError(f"Node {node.id} has no input handles {sorted(unknown)}")

    resolved: Dict[str, List[NodeOutput]] = {}
    for handle, value in (inputs or {}).items():
        values = value if isinstance(value, (list, tuple)) else [value]
        if node is None:
            resolved[handle] = [NodeOutput.from_value(item) for item in values]
        else:
            schema = node.schema.inputs[handle]
            resolved[handle] = [_coerce_value(node, schema, item) for item in values]
    return resolved


class ExecutionScheduler:
    """
    Executes one compiled plan.

    Run lifecycle: not_started -> running -> completed | partial | failed |
    cancelled. Node errors are recorded on the node and never abort the run.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        dispatcher: TaskDispatcher,
        registry: Optional[NodeExecutorRegistry] = None,
        recorder: Optional[RunRecorder] = None,
        max_concurrency: int = config.MAX_CONCURRENCY,
        run_id: Optional[str] = None,
        inputs: Optional[CallerInputs] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.plan = plan
        self.dispatcher = dispatcher
        self.registry = registry or NodeExecutorRegistry()
        self.recorder = recorder or NullRunRecorder()
        self.max_concurrency = max_concurrency
        self.run_id = run_id or str(uuid.uuid4())
        self.state = ExecutionState(self.run_id, plan.node_ids)
        self.context = ExecutionContext()
        self.cancel_token = CancellationToken()
        single_node = plan.nodes[plan.node_ids[0]] if plan.scope is RunScope.SINGLE else None
        self._caller_inputs = _coerce_inputs(inputs, single_node)

    def cancel(self) -> None:
        """Stop starting new nodes; in-flight nodes finish normally."""
        if not self.cancel_token.cancelled:
            logger.info("Cancellation requested for run %s", self.run_id)
        self.cancel_token.cancel()

    def snapshot(self) -> RunResult:
        return self.state.snapshot(self.plan.scope.value, self.context.to_dict())

    async def run(self) -> RunResult:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        self.state.start()
        logger.info(
            "Run %s started: scope=%s, %d nodes in %d levels",
            self.run_id, self.plan.scope.value, self.plan.node_count, len(self.plan.levels)
        )
        await self._notify('on_run_start', self.run_id, self.plan.scope.value, self.plan.node_count)

        for index, level in enumerate(self.plan.levels):
            if self.cancel_token.cancelled:
                logger.info("Run %s cancelled before level %d", self.run_id, index)
                break

            launched = []
            for node_id in level:
                if self.state.get(node_id) is not NodeRunState.PENDING:
                    continue
                blocked_by = self._blocking_dependency(node_id)
                if blocked_by is not None:
                    await self._skip(node_id, blocked_by)
                    continue
                launched.append(asyncio.create_task(self._run_node(node_id, semaphore)))

            # Level barrier: dependents start only once every node here is terminal
            if launched:
                await asyncio.gather(*launched)

        if self.cancel_token.cancelled:
            final_state = RunState.CANCELLED
        else:
            final_state = aggregate_run_state(self.state.node_states, self.plan.terminal_nodes)
        self.state.finish(final_state)

        result = self.snapshot()
        logger.info("Run %s finished: %s in %dms", self.run_id, final_state.value, result.duration_ms or 0)
        await self._notify('on_run_finish', self.run_id, final_state.value, result.duration_ms or 0)
        return result

    def _blocking_dependency(self, node_id: str) -> Optional[str]:
        for dependency in self.plan.dependencies(node_id):
            if self.state.get(dependency) in (NodeRunState.FAILED, NodeRunState.SKIPPED):
                return dependency
        return None

    async def _skip(self, node_id: str, blocked_by: str) -> None:
        error = {
            'kind': UPSTREAM_SKIPPED,
            'detail': f"Dependency {blocked_by} ended {self.state.get(blocked_by).value}",
            'attempts': 0,
        }
        self.state.transition(node_id, NodeRunState.SKIPPED)
        self.state.record_error(node_id, error)
        logger.info("Node %s skipped: %s", node_id, error['detail'])
        await self._notify('on_node_finish', self.run_id, node_id, NodeRunState.SKIPPED.value, None, error, 0)

    def _resolve_inputs(self, node_id: str) -> Dict[str, List[NodeOutput]]:
        if self.plan.scope is RunScope.SINGLE:
            return {handle: list(values) for handle, values in self._caller_inputs.items()}

        inputs: Dict[str, List[NodeOutput]] = {}
        for edge in self.plan.upstream.get(node_id, []):
            output = self.context.get_output(edge.source_id, edge.source_handle)
            if output is not None:
                inputs.setdefault(edge.target_handle, []).append(output)
        return inputs

    async def _run_node(self, node_id: str, semaphore: asyncio.Semaphore) -> None:
        node = self.plan.nodes[node_id]
        error: Optional[Dict[str, Any]] = None
        outputs: Dict[str, NodeOutput] = {}

        async with semaphore:
            # Checked after the permit is granted so queued nodes also honour it
            if self.cancel_token.cancelled:
                logger.info("Node %s not started: run %s cancelled", node_id, self.run_id)
                return

            self.state.transition(node_id, NodeRunState.RUNNING)
            await self._notify('on_node_start', self.run_id, node_id, node.kind.value)
            started = time.monotonic()
            try:
                executor = self.registry.get(node.kind)
                produced = await executor.execute(
                    node, self._resolve_inputs(node_id), self.dispatcher, self.cancel_token
                )
                outputs = {handle: NodeOutput.from_value(value) for handle, value in produced.items()}
                self.context.set_outputs(node_id, outputs)
            except NodeExecutionError as e:
                error = e.to_dict()
            except Exception as e:
                logger.exception("Unexpected error executing node %s", node_id)
                error = {'kind': FailureKind.BACKEND.value, 'detail': str(e), 'attempts': 0}
            duration_ms = int((time.monotonic() - started) * 1000)

        self.state.record_duration(node_id, duration_ms)
        if error is None:
            self.state.transition(node_id, NodeRunState.SUCCEEDED)
            logger.info("Node %s (%s) succeeded in %dms", node_id, node.kind.value, duration_ms)
            output_dict = {handle: output.to_dict() for handle, output in outputs.items()}
            await self._notify(
                'on_node_finish', self.run_id, node_id, NodeRunState.SUCCEEDED.value,
                output_dict, None, duration_ms
            )
        else:
            self.state.transition(node_id, NodeRunState.FAILED)
            self.state.record_error(node_id, error)
            logger.error("Node %s (%s) failed [%s]: %s", node_id, node.kind.value, error['kind'], error['detail'])
            await self._notify(
                'on_node_finish', self.run_id, node_id, NodeRunState.FAILED.value,
                None, error, duration_ms
            )

    async def _notify(self, event: str, *args) -> None:
        try:
            await getattr(self.recorder, event)(*args)
        except Exception as e:
            logger.warning("Recorder %s failed for run %s: %s", event, self.run_id, e)


class RunManager:
    """
    Run invocation entry point.

    ``start_run`` compiles synchronously, so graph and scope errors reach the
    caller, then executes the run on a background thread with its own event
    loop. Status and cancel requests may come from any thread.
    """

    def __init__(
        self,
        backend: TaskBackend,
        registry: Optional[NodeExecutorRegistry] = None,
        recorder_factory: Optional[RecorderFactory] = None,
        max_concurrency: int = config.MAX_CONCURRENCY,
        poll_interval: float = config.POLL_INTERVAL,
        compiler: Optional[GraphCompiler] = None,
        max_retained_runs: int = config.MAX_RETAINED_RUNS,
    ):
        self.backend = backend
        self.registry = registry or NodeExecutorRegistry()
        self.recorder_factory = recorder_factory
        self.max_concurrency = max_concurrency
        self.poll_interval = poll_interval
        self.compiler = compiler or GraphCompiler()
        self.max_retained_runs = max_retained_runs

        # run_id -> scheduler in start order; the newest finished runs stay for status lookups
        self._runs: Dict[str, ExecutionScheduler] = {}
        # run_id -> thread, only while running
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start_run(
        self,
        graph: Any,
        scope: Union[RunScope, str] = RunScope.FULL,
        selection: Optional[Sequence[str]] = None,
        inputs: Optional[CallerInputs] = None,
        workflow_id: Optional[str] = None,
    ) -> str:
        """Compile ``graph`` and start executing it in the background. Returns the run id."""
        plan = self.compiler.compile(graph, scope, selection)
        if inputs and plan.scope is not RunScope.SINGLE:
            raise InvalidScopeError("Caller inputs are only accepted for single-node runs")
        if plan.scope is RunScope.SINGLE:
            _coerce_inputs(inputs, plan.nodes[plan.node_ids[0]])

        run_id = str(uuid.uuid4())
        recorder = self.recorder_factory(workflow_id) if self.recorder_factory else NullRunRecorder()
        scheduler = ExecutionScheduler(
            plan,
            TaskDispatcher(self.backend, self.poll_interval),
            registry=self.registry,
            recorder=recorder,
            max_concurrency=self.max_concurrency,
            run_id=run_id,
            inputs=inputs,
        )

        def run_scheduler():
            try:
                asyncio.run(scheduler.run())
            except Exception:
                logger.exception("Run %s aborted", run_id)
            finally:
                with self._lock:
                    self._threads.pop(run_id, None)
                    self._evict_finished_runs()

        thread = threading.Thread(target=run_scheduler, daemon=True, name=f"run-{run_id[:8]}")
        with self._lock:
            self._runs[run_id] = scheduler
            self._threads[run_id] = thread
        thread.start()

        logger.info("Started run %s in background (%s, %d nodes)", run_id, plan.scope.value, plan.node_count)
        return run_id

    def get_run_status(self, run_id: str) -> Optional[RunResult]:
        scheduler = self._runs.get(run_id)
        return scheduler.snapshot() if scheduler else None

    def cancel_run(self, run_id: str) -> bool:
        """Request cancellation. False for unknown or already finished runs."""
        scheduler = self._runs.get(run_id)
        if scheduler is None or scheduler.state.run_state.terminal:
            return False
        scheduler.cancel()
        return True

    def _evict_finished_runs(self) -> None:
        """Drop the oldest finished runs beyond ``max_retained_runs``. Caller holds the lock."""
        finished = [run_id for run_id in self._runs if run_id not in self._threads]
        for run_id in finished[:max(len(finished) - self.max_retained_runs, 0)]:
            del self._runs[run_id]
            logger.debug("Evicted finished run %s", run_id)

    def active_runs(self) -> List[str]:
        with self._lock:
            return list(self._threads)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunResult]:
        """Block until the run's thread exits (or ``timeout``) and return its snapshot."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run_status(run_id)

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        """Cancel active runs, wait for them, and release the shared I/O pool."""
        with self._lock:
            threads = dict(self._threads)
        for run_id in threads:
            self.cancel_run(run_id)
        for thread in threads.values():
            thread.join(timeout)
        shutdown_thread_pools()
