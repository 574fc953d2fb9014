import pytest

from graph_engine.errors import (
    CycleError,
    FailureKind,
    NodeExecutionError,
    TaskBackendError,
    classify_failure,
)


@pytest.mark.parametrize("message, expected", [
    ("429 Too Many Requests", FailureKind.QUOTA),
    ("RESOURCE_EXHAUSTED: Quota exceeded for model", FailureKind.QUOTA),
    ("Rate limit reached", FailureKind.QUOTA),
    ("Request rate exceeded for project", FailureKind.QUOTA),
    ("unsupported sample rate 11025", FailureKind.INVALID_INPUT),
    ("frame rate could not be read", FailureKind.BACKEND),
    ("API key not valid. Please pass a valid API key.", FailureKind.CREDENTIAL),
    ("401 Unauthorized", FailureKind.CREDENTIAL),
    ("Request timed out after 30s", FailureKind.TIMEOUT),
    ("Deadline exceeded", FailureKind.TIMEOUT),
    ("503 Service Unavailable", FailureKind.UNAVAILABLE),
    ("Connection refused", FailureKind.UNAVAILABLE),
    ("Invalid argument: malformed payload", FailureKind.INVALID_INPUT),
    ("something odd happened", FailureKind.BACKEND),
    ("", FailureKind.BACKEND),
])
def test_classify_failure(message, expected):
    assert classify_failure(message) is expected


def test_transient_kinds():
    assert {kind for kind in FailureKind if kind.transient} == {
        FailureKind.QUOTA, FailureKind.TIMEOUT, FailureKind.UNAVAILABLE,
    }


def test_backend_error_classifies_its_message():
    assert TaskBackendError("quota exceeded").kind is FailureKind.QUOTA
    assert TaskBackendError("quota exceeded", FailureKind.CREDENTIAL).kind is FailureKind.CREDENTIAL


def test_node_execution_error_to_dict():
    error = NodeExecutionError(FailureKind.TIMEOUT, "too slow", attempts=3)
    assert error.transient
    assert error.to_dict() == {'kind': 'timeout', 'detail': 'too slow', 'attempts': 3}


def test_cycle_error_sorts_node_ids():
    error = CycleError({'c', 'a', 'b'})
    assert error.node_ids == ['a', 'b', 'c']
    assert "a, b, c" in str(error)
