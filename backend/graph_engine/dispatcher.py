"""
Task dispatching against an asynchronous execution backend.

The dispatcher is backend-agnostic: a task is an opaque ``kind`` used for
routing plus an opaque ``payload``. It submits the task, suspends the caller
while polling for a terminal state, and retries transient failures with a
capped exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import config
from .context import CancellationToken
from .errors import FailureKind, TaskBackendError, classify_failure

logger = logging.getLogger(__name__)

ACTIVE_TASK_STATES = {'queued', 'running'}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_factor: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.backoff_factor < 1:
            raise ValueError("Retry delays must be non-negative and backoff_factor >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)

    @classmethod
    def for_kind(cls, kind: str) -> "RetryPolicy":
        return cls(**config.RETRY_POLICIES.get(kind, config.DEFAULT_RETRY_POLICY))


@dataclass(frozen=True)
class TaskSpec:
    kind: str
    payload: Dict[str, Any]
    timeout: float
    retry_policy: RetryPolicy
    max_polls: int = config.DEFAULT_MAX_POLLS

    @classmethod
    def for_kind(cls, kind: str, payload: Dict[str, Any], **overrides) -> "TaskSpec":
        """Build a spec with the configured defaults for ``kind``."""
        values = {
            'timeout': config.TASK_TIMEOUTS.get(kind, config.DEFAULT_TASK_TIMEOUT),
            'retry_policy': RetryPolicy.for_kind(kind),
            'max_polls': config.MAX_POLLS.get(kind, config.DEFAULT_MAX_POLLS),
        }
        values.update(overrides)
        return cls(kind=kind, payload=payload, **values)


@dataclass(frozen=True)
class TaskHandle:
    task_id: str
    backend: str
    kind: str
    attempt: int = 1


@dataclass(frozen=True)
class Success:
    value: Any
    attempts: int = 1

    ok = True


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    detail: str
    attempts: int = 1

    ok = False

    @property
    def transient(self) -> bool:
        return self.kind.transient


TaskResult = Union[Success, Failure]
RetryDecider = Callable[[Failure], bool]


class TaskBackend(ABC):
    """
    External task backend contract.

    ``status`` returns ``{'state': queued|running|succeeded|failed|cancelled,
    'result': ..., 'error': ...}`` where ``error`` is a message or a
    ``{'kind', 'message'}`` mapping.
    """

    name = "backend"
    supports_cancel = False

    @abstractmethod
    async def submit(self, kind: str, payload: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def status(self, task_id: str) -> Dict[str, Any]:
        ...

    async def cancel(self, task_id: str) -> None:
        raise NotImplementedError(f"{self.name} does not support cancellation")


class TaskDispatcher:
    """Submits tasks to a backend and awaits their terminal results."""

    def __init__(
        self,
        backend: TaskBackend,
        poll_interval: float = config.POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def submit(self, spec: TaskSpec, attempt: int = 1) -> TaskHandle:
        task_id = await self.backend.submit(spec.kind, spec.payload)
        logger.debug("Submitted %s task %s (attempt %d)", spec.kind, task_id, attempt)
        return TaskHandle(task_id=str(task_id), backend=self.backend.name, kind=spec.kind, attempt=attempt)

    async def wait(
        self,
        handle: TaskHandle,
        timeout: float,
        cancel_token: Optional[CancellationToken] = None,
        max_polls: int = config.DEFAULT_MAX_POLLS,
    ) -> TaskResult:
        """
        Suspend until the task is terminal, the timeout elapses, or the poll
        ceiling is reached.

        A transient error from a status check counts as a poll and polling
        continues. Whenever the handle is given up before the backend reports
        a terminal state, cancellation is requested so no task is left running.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        polls = 0
        cancel_requested = False

        while True:
            if cancel_token is not None and cancel_token.cancelled and not cancel_requested:
                cancel_requested = True
                await self._request_cancel(handle)

            try:
                status = await self.backend.status(handle.task_id)
            except Exception as exc:
                if isinstance(exc, TaskBackendError):
                    kind = exc.kind
                else:
                    kind = classify_failure(str(exc))
                logger.warning(
                    "Status check for %s task %s failed (%s): %s", handle.kind, handle.task_id, kind.value, exc
                )
                if not kind.transient:
                    await self._request_cancel(handle)
                    return Failure(kind, str(exc))
                status = {'state': 'running'}
            polls += 1

            state = status.get('state')
            if state == 'succeeded':
                return Success(status.get('result'))
            if state == 'failed':
                return self._failure_from_error(status.get('error'))
            if state == 'cancelled':
                return Failure(FailureKind.CANCELLED, f"Task {handle.task_id} was cancelled")
            if state not in ACTIVE_TASK_STATES:
                await self._request_cancel(handle)
                return Failure(FailureKind.BACKEND, f"Task {handle.task_id} reported unknown state {state!r}")

            remaining = deadline - loop.time()
            if remaining <= 0 or polls >= max_polls:
                await self._request_cancel(handle)
                reason = f"{timeout:g}s" if remaining <= 0 else f"{polls} status checks"
                return Failure(
                    FailureKind.TIMEOUT,
                    f"Task {handle.kind} ({handle.task_id}) did not finish within {reason}"
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def run(
        self,
        spec: TaskSpec,
        cancel_token: Optional[CancellationToken] = None,
        should_retry: Optional[RetryDecider] = None,
    ) -> TaskResult:
        """
        Submit and await a task, resubmitting transient failures.

        ``should_retry`` overrides the default transient check, letting a
        caller handle some failures itself before the retry ladder applies.
        """
        policy = spec.retry_policy
        attempt = 0
        while True:
            attempt += 1
            result = replace(await self._attempt(spec, attempt, cancel_token), attempts=attempt)
            if result.ok:
                return result

            retryable = should_retry(result) if should_retry is not None else result.transient
            if not retryable:
                return result
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s task failed after %d attempts: %s", spec.kind, attempt, result.detail
                )
                return result
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Not retrying %s task: run cancelled", spec.kind)
                return result

            delay = policy.delay_for(attempt)
            logger.warning(
                "%s task failed (attempt %d/%d, %s), retrying in %.1fs: %s",
                spec.kind, attempt, policy.max_attempts, result.kind.value, delay, result.detail
            )
            await self._sleep(delay)

    async def _attempt(
        self,
        spec: TaskSpec,
        attempt: int,
        cancel_token: Optional[CancellationToken],
    ) -> TaskResult:
        try:
            handle = await self.submit(spec, attempt)
        except TaskBackendError as exc:
            return Failure(exc.kind, str(exc))
        except Exception as exc:
            logger.warning("Submitting %s task failed: %s", spec.kind, exc)
            return Failure(classify_failure(str(exc)), str(exc))
        return await self.wait(handle, spec.timeout, cancel_token, spec.max_polls)

    async def _request_cancel(self, handle: TaskHandle) -> None:
        if not self.backend.supports_cancel:
            return
        try:
            await self.backend.cancel(handle.task_id)
            logger.info("Requested cancellation of %s task %s", handle.kind, handle.task_id)
        except Exception as exc:
            logger.warning("Cancel request for task %s failed: %s", handle.task_id, exc)

    @staticmethod
    def _failure_from_error(error: Any) -> Failure:
        if isinstance(error, dict):
            message = str(error.get('message') or error.get('detail') or 'Task failed')
            try:
                kind = FailureKind(error.get('kind'))
            except ValueError:
                kind = classify_failure(message)
            return Failure(kind, message)
        message = str(error or 'Task failed')
        return Failure(classify_failure(message), message)
