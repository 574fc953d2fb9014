import asyncio

import pytest

from fakes import ScriptedBackend, edge, fail, graph, node, ok
from graph_engine.errors import InvalidScopeError
from graph_engine.node_executors import NodeExecutorRegistry
from graph_engine.planner import compile_graph
from graph_engine.recorder import RunRecorder
from graph_engine.state import NodeRunState, RunState
from graph_executor import ExecutionScheduler


class EventRecorder(RunRecorder):
    def __init__(self):
        self.events = []

    async def on_run_start(self, run_id, scope, node_count):
        self.events.append(('run_start', scope, node_count))

    async def on_node_start(self, run_id, node_id, kind):
        self.events.append(('node_start', node_id, kind))

    async def on_node_finish(self, run_id, node_id, state, output=None, error=None, duration_ms=0):
        self.events.append(('node_finish', node_id, state, output, error))

    async def on_run_finish(self, run_id, state, duration_ms):
        self.events.append(('run_finish', state))

    def finished(self, node_id):
        return [event for event in self.events if event[0] == 'node_finish' and event[1] == node_id]


class CountingBackend(ScriptedBackend):
    """Tracks how many inference tasks are in flight at once."""

    def __init__(self):
        super().__init__({'inference': [ok('done')]}, running_polls=3)
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit(self, kind, payload):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return await super().submit(kind, payload)

    async def status(self, task_id):
        status = await super().status(task_id)
        if status['state'] != 'running':
            self.in_flight -= 1
        return status


def scheduler_for(g, backend, make_dispatcher, recorder=None, max_concurrency=4, scope='full',
                  selection=None, inputs=None, poll_interval=0.0):
    return ExecutionScheduler(
        compile_graph(g, scope, selection),
        make_dispatcher(backend, poll_interval=poll_interval),
        registry=NodeExecutorRegistry(credentials=[]),
        recorder=recorder,
        max_concurrency=max_concurrency,
        inputs=inputs,
    )


def failing_chain(extra_nodes=()):
    """t -> a(llm, fails) -> b(llm), plus any extra independent nodes."""
    return graph(
        [node('t', 'text', text='hi'), node('a', 'llm'), node('b', 'llm'), *extra_nodes],
        [edge('t', 'a', 'user_message'), edge('a', 'b', 'user_message')],
    )


@pytest.mark.asyncio
async def test_outputs_flow_along_edges(make_dispatcher):
    backend = ScriptedBackend({'inference': [lambda payload: ok(payload['parts'][-1]['text'].upper())]})
    g = graph(
        [node('t', 'text', text='shout'), node('llm', 'llm')],
        [edge('t', 'llm', 'user_message')],
    )
    recorder = EventRecorder()

    result = await scheduler_for(g, backend, make_dispatcher, recorder).run()

    assert result.state is RunState.COMPLETED
    assert result.succeeded
    assert result.outputs['llm'] == {'output': {'text': 'SHOUT'}}
    assert recorder.events[0] == ('run_start', 'full', 2)
    assert recorder.events[-1] == ('run_finish', 'completed')
    assert ('node_start', 'llm', 'llm') in recorder.events
    assert recorder.finished('llm')[0][3] == {'output': {'text': 'SHOUT'}}


@pytest.mark.asyncio
async def test_failed_dependency_skips_dependents_and_partial_run(make_dispatcher):
    backend = ScriptedBackend({'inference': [fail("bad request", kind='invalid_input')]})
    recorder = EventRecorder()
    scheduler = scheduler_for(
        failing_chain([node('c', 'text', text='independent')]), backend, make_dispatcher, recorder
    )

    result = await scheduler.run()

    assert result.node_states == {
        't': NodeRunState.SUCCEEDED,
        'a': NodeRunState.FAILED,
        'b': NodeRunState.SKIPPED,
        'c': NodeRunState.SUCCEEDED,
    }
    assert result.state is RunState.PARTIALLY_COMPLETED
    assert result.node_errors['a']['kind'] == 'invalid_input'
    assert result.node_errors['b']['kind'] == 'upstream_skipped'
    # the skipped node never reached its executor
    assert len(backend.submitted) == 1
    assert ('node_start', 'b', 'llm') not in recorder.events
    assert recorder.finished('b')[0][2] == 'skipped'


@pytest.mark.asyncio
async def test_only_terminal_skipped_means_failed_run(make_dispatcher):
    backend = ScriptedBackend({'inference': [fail("bad request", kind='invalid_input')]})
    result = await scheduler_for(failing_chain(), backend, make_dispatcher).run()

    assert result.node_states['b'] is NodeRunState.SKIPPED
    assert result.state is RunState.FAILED


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_tasks(make_dispatcher):
    backend = CountingBackend()
    g = graph([node(f"n{i}", 'llm', user_message=f"task {i}") for i in range(5)])

    result = await scheduler_for(g, backend, make_dispatcher, max_concurrency=2, poll_interval=0.01).run()

    assert result.state is RunState.COMPLETED
    assert len(backend.submitted) == 5
    assert backend.max_in_flight == 2


@pytest.mark.asyncio
async def test_cancel_after_first_level_starts_nothing_else(make_dispatcher):
    backend = ScriptedBackend({'inference': [ok('never')]})
    g = graph(
        [node('t', 'text', text='hi'), node('llm', 'llm'), node('llm2', 'llm')],
        [edge('t', 'llm', 'user_message'), edge('llm', 'llm2', 'user_message')],
    )

    class CancelAfterFirstNode(EventRecorder):
        async def on_node_finish(self, run_id, node_id, state, output=None, error=None, duration_ms=0):
            await super().on_node_finish(run_id, node_id, state, output, error, duration_ms)
            scheduler.cancel()

    recorder = CancelAfterFirstNode()
    scheduler = scheduler_for(g, backend, make_dispatcher, recorder)
    result = await scheduler.run()

    assert result.state is RunState.CANCELLED
    assert result.node_states == {
        't': NodeRunState.SUCCEEDED,
        'llm': NodeRunState.PENDING,
        'llm2': NodeRunState.PENDING,
    }
    assert backend.submitted == []
    assert recorder.events[-1] == ('run_finish', 'cancelled')


@pytest.mark.asyncio
async def test_queued_nodes_do_not_start_after_cancel(make_dispatcher):
    backend = ScriptedBackend({'inference': [ok('done')]}, running_polls=2)
    # no backend cancel, so the running node completes normally
    backend.supports_cancel = False
    g = graph([node(f"n{i}", 'llm', user_message='go') for i in range(3)])
    scheduler = scheduler_for(g, backend, make_dispatcher, max_concurrency=1, poll_interval=0.01)

    class CancelOnFirstStart(EventRecorder):
        async def on_node_start(self, run_id, node_id, kind):
            scheduler.cancel()

    scheduler.recorder = CancelOnFirstStart()
    result = await scheduler.run()

    # the running node finishes normally; the queued ones never start
    states = sorted(state.value for state in result.node_states.values())
    assert states == ['pending', 'pending', 'succeeded']
    assert len(backend.submitted) == 1
    assert result.state is RunState.CANCELLED


@pytest.mark.asyncio
async def test_single_scope_uses_caller_inputs(make_dispatcher):
    backend = ScriptedBackend({'inference': [lambda payload: ok(payload['parts'][0]['text'])]})
    g = graph(
        [node('t', 'text', text='from graph'), node('llm', 'llm')],
        [edge('t', 'llm', 'user_message')],
    )
    scheduler = scheduler_for(
        g, backend, make_dispatcher, scope='single', selection=['llm'],
        inputs={'user_message': 'from caller'},
    )

    result = await scheduler.run()

    assert result.state is RunState.COMPLETED
    assert list(result.node_states) == ['llm']
    assert result.outputs['llm']['output']['text'] == 'from caller'


@pytest.mark.asyncio
async def test_single_scope_types_bare_strings_by_target_handle(tmp_path, make_dispatcher):
    backend = ScriptedBackend({'media.crop': [ok({'media_ref': 'https://cdn.example/cropped.png'})]})
    g = graph([node('crop', 'crop_image', image_url='https://cdn.example/config.png', x=10)])
    cached = str(tmp_path / 'cached.png')
    scheduler = ExecutionScheduler(
        compile_graph(g, 'single', ['crop']),
        make_dispatcher(backend),
        registry=NodeExecutorRegistry(credentials=[], scratch_dir=tmp_path),
        inputs={'image': cached},
    )

    result = await scheduler.run()

    assert result.state is RunState.COMPLETED
    assert result.outputs['crop']['output'] == {'mediaRef': 'https://cdn.example/cropped.png'}
    assert backend.payloads('media.crop')[0]['source_url'] == cached


@pytest.mark.parametrize("inputs", [
    {'image': {'text': 'not an image'}},
    {'image': {'caption': 'x'}},
])
def test_single_scope_rejects_values_of_the_wrong_type(make_dispatcher, inputs):
    g = graph([node('crop', 'crop_image')])
    with pytest.raises(InvalidScopeError):
        scheduler_for(g, ScriptedBackend(), make_dispatcher, scope='single', selection=['crop'], inputs=inputs)


@pytest.mark.asyncio
async def test_recorder_errors_do_not_affect_the_run(make_dispatcher):
    class BrokenRecorder(RunRecorder):
        async def on_node_finish(self, *args, **kwargs):
            raise RuntimeError("disk full")

    g = graph([node('t', 'text', text='hi')])
    result = await scheduler_for(g, ScriptedBackend(), make_dispatcher, BrokenRecorder()).run()

    assert result.state is RunState.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_executor_errors_fail_the_node(make_dispatcher):
    class ExplodingExecutor:
        kind = None

        async def execute(self, node, inputs, dispatcher, cancel_token=None):
            raise RuntimeError("boom")

    g = graph([node('t', 'text', text='hi'), node('u', 'text', text='ok')])
    scheduler = scheduler_for(g, ScriptedBackend(), make_dispatcher)
    original_get = scheduler.registry.get
    scheduler.registry.get = _first_call_explodes(original_get, ExplodingExecutor())

    result = await scheduler.run()

    assert sorted(state.value for state in result.node_states.values()) == ['failed', 'succeeded']
    failed = [node_id for node_id, state in result.node_states.items() if state is NodeRunState.FAILED]
    assert result.node_errors[failed[0]] == {'kind': 'backend', 'detail': 'boom', 'attempts': 0}


def _first_call_explodes(get, exploding):
    calls = []

    def wrapped(kind):
        calls.append(kind)
        return exploding if len(calls) == 1 else get(kind)
    return wrapped


@pytest.mark.asyncio
async def test_snapshot_is_safe_while_running(make_dispatcher):
    backend = ScriptedBackend({'inference': [ok('x')]}, running_polls=10)
    g = graph([node('llm', 'llm', user_message='hi')])
    scheduler = scheduler_for(g, backend, make_dispatcher, poll_interval=0.01)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.01)
    assert scheduler.snapshot().state is RunState.RUNNING
    result = await task
    assert result.state is RunState.COMPLETED
