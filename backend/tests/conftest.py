import pytest

from fakes import SleepRecorder
from graph_engine.dispatcher import TaskBackend, TaskDispatcher


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_dispatcher(sleeper):
    def _make(backend: TaskBackend, poll_interval: float = 0.0) -> TaskDispatcher:
        return TaskDispatcher(backend, poll_interval=poll_interval, sleep=sleeper)
    return _make
