import pytest

from fakes import ScriptedBackend, fail, ok
from graph_engine.context import CancellationToken
from graph_engine.dispatcher import RetryPolicy, TaskSpec
from graph_engine.errors import FailureKind, TaskBackendError


def spec(kind='inference', max_attempts=1, timeout=5.0, max_polls=100, **policy):
    return TaskSpec(
        kind=kind,
        payload={'prompt': 'hi'},
        timeout=timeout,
        retry_policy=RetryPolicy(max_attempts=max_attempts, **policy),
        max_polls=max_polls,
    )


def test_retry_delay_is_capped_exponential():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0, backoff_factor=2.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.parametrize("kwargs", [
    {'max_attempts': 0},
    {'base_delay': -1},
    {'backoff_factor': 0.5},
])
def test_retry_policy_validation(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_task_spec_uses_configured_defaults():
    built = TaskSpec.for_kind('media.extract_frame', {'source_url': 'x'})
    assert built.timeout == 300
    assert built.retry_policy.max_attempts == 3
    assert TaskSpec.for_kind('inference', {}, timeout=5).timeout == 5


@pytest.mark.asyncio
async def test_success_after_polling(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [ok({'output': 'done'})]}, running_polls=2)
    result = await make_dispatcher(backend).run(spec())

    assert result.ok
    assert result.value == {'output': 'done'}
    assert result.attempts == 1
    assert backend.status_calls == 3
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("503 Service Unavailable")]})
    result = await make_dispatcher(backend).run(
        spec(max_attempts=4, base_delay=1.0, max_delay=3.0, backoff_factor=2.0)
    )

    assert not result.ok
    assert result.kind is FailureKind.UNAVAILABLE
    assert "503" in result.detail
    assert result.attempts == 4
    assert len(backend.submitted) == 4
    assert sleeper.delays == [1.0, 2.0, 3.0]
    assert sleeper.delays == sorted(sleeper.delays)


@pytest.mark.asyncio
async def test_transient_failure_then_success(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("rate limit"), ok('fine')]})
    result = await make_dispatcher(backend).run(spec(max_attempts=3))

    assert result.ok and result.value == 'fine'
    assert result.attempts == 2
    assert sleeper.delays == [1.0]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("bad payload", kind='invalid_input')]})
    result = await make_dispatcher(backend).run(spec(max_attempts=3))

    assert result.kind is FailureKind.INVALID_INPUT
    assert result.attempts == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_submit_errors_become_failures(make_dispatcher):
    backend = ScriptedBackend({'inference': [TaskBackendError("nope", FailureKind.CREDENTIAL)]})
    result = await make_dispatcher(backend).run(spec(max_attempts=3))

    assert result.kind is FailureKind.CREDENTIAL
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_should_retry_hook_overrides_transient_check(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("quota exceeded")]})
    result = await make_dispatcher(backend).run(spec(max_attempts=3), should_retry=lambda failure: False)

    assert result.kind is FailureKind.QUOTA
    assert result.attempts == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_wait_times_out_and_requests_cancel(make_dispatcher):
    backend = ScriptedBackend({'inference': [ok('late')]}, running_polls=10_000)
    result = await make_dispatcher(backend, poll_interval=0.01).run(spec(timeout=0.05, max_polls=10_000))

    assert result.kind is FailureKind.TIMEOUT
    assert len(backend.cancelled) == 1


@pytest.mark.asyncio
async def test_poll_ceiling_bounds_a_stalled_backend(make_dispatcher):
    backend = ScriptedBackend({'inference': [ok('late')]}, running_polls=10_000)
    result = await make_dispatcher(backend).run(spec(timeout=60, max_polls=3))

    assert result.kind is FailureKind.TIMEOUT
    assert "3 status checks" in result.detail
    assert backend.status_calls == 3


@pytest.mark.asyncio
async def test_cancel_token_forwards_cancel_to_backend(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("503 unavailable")]}, running_polls=10_000)
    token = CancellationToken()
    token.cancel()
    result = await make_dispatcher(backend).run(spec(max_attempts=3), cancel_token=token)

    assert result.kind is FailureKind.CANCELLED
    assert len(backend.cancelled) == 1
    assert result.attempts == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_cancelled_run_is_not_retried(make_dispatcher, sleeper):
    backend = ScriptedBackend({'inference': [fail("503 unavailable")]})
    backend.supports_cancel = False
    token = CancellationToken()
    token.cancel()
    result = await make_dispatcher(backend).run(spec(max_attempts=3), cancel_token=token)

    assert result.kind is FailureKind.UNAVAILABLE
    assert result.attempts == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_unknown_backend_state_is_a_failure(make_dispatcher):
    backend = ScriptedBackend({'inference': [{'state': 'exploded'}]})
    result = await make_dispatcher(backend).run(spec())

    assert result.kind is FailureKind.BACKEND


class FlakyStatusBackend(ScriptedBackend):
    """Raises from the first ``failures`` status checks, then answers normally."""

    def __init__(self, script, error, failures=1, **kwargs):
        super().__init__(script, **kwargs)
        self.error = error
        self.failures = failures

    async def status(self, task_id):
        if self.failures > 0:
            self.failures -= 1
            self.status_calls += 1
            raise self.error
        return await super().status(task_id)


@pytest.mark.asyncio
async def test_transient_status_error_keeps_polling_the_same_task(make_dispatcher, sleeper):
    backend = FlakyStatusBackend(
        {'inference': [ok({'output': 'done'})]},
        TaskBackendError("connection reset by peer", FailureKind.UNAVAILABLE),
    )
    result = await make_dispatcher(backend).run(spec(max_attempts=3))

    assert result.ok
    assert result.value == {'output': 'done'}
    assert len(backend.submitted) == 1
    assert backend.cancelled == []
    assert backend.status_calls == 2
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_status_errors_until_poll_ceiling_cancel_before_retry(make_dispatcher, sleeper):
    backend = FlakyStatusBackend(
        {'inference': [ok('late')]}, ConnectionError("connection refused"), failures=2,
    )
    result = await make_dispatcher(backend).run(spec(max_attempts=2, max_polls=2))

    # first task gave up after two failed checks and was cancelled before the resubmit
    assert result.ok
    assert len(backend.submitted) == 2
    assert len(backend.cancelled) == 1
    assert sleeper.delays == [1.0]


@pytest.mark.asyncio
async def test_permanent_status_error_cancels_the_task(make_dispatcher, sleeper):
    backend = FlakyStatusBackend(
        {'inference': [ok('never read')]}, TaskBackendError("Unknown task", FailureKind.BACKEND),
    )
    result = await make_dispatcher(backend).run(spec(max_attempts=3))

    assert result.kind is FailureKind.BACKEND
    assert len(backend.submitted) == 1
    assert len(backend.cancelled) == 1
    assert sleeper.delays == []
