import pytest

from graph_engine.context import CancellationToken, ExecutionContext, NodeOutput
from graph_engine.errors import ContextWriteError, InvalidTransitionError
from graph_engine.state import ExecutionState, NodeRunState, RunState, aggregate_run_state


def test_node_output_holds_exactly_one_value():
    with pytest.raises(ValueError):
        NodeOutput()
    with pytest.raises(ValueError):
        NodeOutput(text='a', media_ref='b')


def test_node_output_from_value():
    assert NodeOutput.from_value('hi') == NodeOutput.of_text('hi')
    assert NodeOutput.from_value({'mediaRef': 'file:///a.png'}).media_ref == 'file:///a.png'
    assert NodeOutput.from_value({'text': 'x'}).to_dict() == {'text': 'x'}
    with pytest.raises(ValueError):
        NodeOutput.from_value({'other': 1})


def test_context_outputs_are_write_once():
    context = ExecutionContext()
    context.set_outputs('a', {'output': NodeOutput.of_text('first')})

    with pytest.raises(ContextWriteError):
        context.set_outputs('a', {'output': NodeOutput.of_text('second')})
    assert context.get_output('a', 'output').text == 'first'
    assert context.get_output('a', 'missing') is None
    assert context.to_dict() == {'a': {'output': {'text': 'first'}}}


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled


def test_node_transitions_are_checked():
    state = ExecutionState('run', ['a'])
    state.transition('a', NodeRunState.RUNNING)
    state.transition('a', NodeRunState.SUCCEEDED)
    with pytest.raises(InvalidTransitionError):
        state.transition('a', NodeRunState.RUNNING)

    state = ExecutionState('run', ['b'])
    with pytest.raises(InvalidTransitionError):
        state.transition('b', NodeRunState.SUCCEEDED)


def test_run_lifecycle():
    state = ExecutionState('run', ['a'])
    with pytest.raises(InvalidTransitionError):
        state.finish(RunState.COMPLETED)
    state.start()
    with pytest.raises(InvalidTransitionError):
        state.finish(RunState.RUNNING)
    state.finish(RunState.CANCELLED)
    assert state.snapshot('full').state is RunState.CANCELLED
    assert state.duration_ms is not None


@pytest.mark.parametrize("states, terminal, expected", [
    ({'a': NodeRunState.SUCCEEDED, 'b': NodeRunState.SUCCEEDED}, {'b'}, RunState.COMPLETED),
    ({'a': NodeRunState.FAILED, 'b': NodeRunState.SKIPPED}, {'b'}, RunState.FAILED),
    ({'a': NodeRunState.FAILED, 'b': NodeRunState.SKIPPED, 'c': NodeRunState.SUCCEEDED}, {'b', 'c'},
     RunState.PARTIALLY_COMPLETED),
    ({'a': NodeRunState.FAILED, 'b': NodeRunState.SUCCEEDED}, {'b'}, RunState.PARTIALLY_COMPLETED),
])
def test_aggregate_run_state(states, terminal, expected):
    assert aggregate_run_state(states, terminal) is expected
