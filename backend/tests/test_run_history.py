import pytest

from database import RunHistoryManager, RunHistoryRecorder
from fakes import ScriptedBackend, edge, fail, graph, node
from graph_engine.node_executors import NodeExecutorRegistry
from graph_engine.planner import compile_graph
from graph_executor import ExecutionScheduler


@pytest.fixture
def history(tmp_path):
    return RunHistoryManager(tmp_path / 'history.duckdb')


def test_run_round_trip(history):
    assert history.create_run('run-1', 'full', 2, workflow_id='wf')
    history.start_node_run('run-1', 'a', 'text')
    history.finish_node_run('run-1', 'a', 'succeeded', output={'output': {'text': 'hi'}}, duration_ms=5)
    history.finish_node_run('run-1', 'b', 'skipped', error={'kind': 'upstream_skipped'})
    assert history.update_run('run-1', status='partial', duration_ms=12)

    run = history.get_run('run-1')
    assert run['status'] == 'partial'
    assert run['workflow_id'] == 'wf'
    assert run['duration_ms'] == 12
    assert run['finished_at'] is not None
    nodes = {n['node_id']: n for n in run['nodes']}
    assert nodes['a']['kind'] == 'text'
    assert nodes['a']['status'] == 'succeeded'
    assert nodes['a']['output'] == {'output': {'text': 'hi'}}
    assert nodes['b']['status'] == 'skipped'
    assert nodes['b']['error'] == {'kind': 'upstream_skipped'}
    assert nodes['b']['started_at'] is None


def test_update_without_fields_is_a_no_op(history):
    history.create_run('run-1', 'full', 1)
    assert history.update_run('run-1') is False
    assert history.get_run('run-1')['status'] == 'running'


def test_list_delete_and_clear(history):
    history.create_run('r1', 'full', 1, workflow_id='wf-a')
    history.create_run('r2', 'selected', 1, workflow_id='wf-a')
    history.create_run('r3', 'single', 1, workflow_id='wf-b')

    assert {run['run_id'] for run in history.list_runs('wf-a')} == {'r1', 'r2'}
    assert len(history.list_runs()) == 3
    assert len(history.list_runs(limit=1)) == 1

    assert history.delete_run('r1')
    assert history.get_run('r1') is None
    assert history.clear_workflow_history('wf-a') == 1
    assert [run['run_id'] for run in history.list_runs()] == ['r3']


def test_cleanup_keeps_recent_runs(history):
    history.create_run('r1', 'full', 1)
    history.update_run('r1', status='completed')
    assert history.cleanup_old_runs(days=7) == 0
    assert history.get_run('r1') is not None


@pytest.mark.asyncio
async def test_recorder_persists_a_scheduled_run(history, make_dispatcher):
    backend = ScriptedBackend({'inference': [fail("bad request", kind='invalid_input')]})
    g = graph(
        [node('t', 'text', text='hi'), node('a', 'llm'), node('b', 'llm'), node('c', 'text', text='ok')],
        [edge('t', 'a', 'user_message'), edge('a', 'b', 'user_message')],
    )
    scheduler = ExecutionScheduler(
        compile_graph(g),
        make_dispatcher(backend),
        registry=NodeExecutorRegistry(credentials=[]),
        recorder=RunHistoryRecorder(history, workflow_id='wf'),
    )

    result = await scheduler.run()

    run = history.get_run(result.run_id)
    assert run['status'] == 'partial'
    assert run['scope'] == 'full'
    assert run['node_count'] == 4
    statuses = {n['node_id']: n['status'] for n in run['nodes']}
    assert statuses == {'a': 'failed', 'b': 'skipped', 'c': 'succeeded', 't': 'succeeded'}
    failed = next(n for n in run['nodes'] if n['node_id'] == 'a')
    assert failed['error']['kind'] == 'invalid_input'
    assert failed['kind'] == 'llm'
    assert [r['run_id'] for r in history.list_runs('wf')] == [result.run_id]
