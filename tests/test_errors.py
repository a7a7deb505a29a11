"""Tests for converge error classes.

Tests cover:
- Error hierarchy
- Extra attributes on CycleError, LockHeldError, ReadyTimeoutError, ExecutionError
- classify_error() for converge, builtin and botocore exceptions
"""

import socket

import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from converge.errors import (
    ConfigError,
    ConvergeError,
    CycleError,
    ErrorKind,
    ExecutionError,
    LockHeldError,
    ParseError,
    PermanentError,
    PermanentProviderError,
    ReadyTimeoutError,
    TransientError,
    TransientProviderError,
    ValidationError,
    classify_error,
)
from converge.schemas import LockToken


class TestHierarchy:
    """All converge errors share ConvergeError as a base."""

    @pytest.mark.parametrize("cls", [
        ConfigError, ParseError, ValidationError, CycleError, LockHeldError,
        TransientProviderError, PermanentProviderError, ExecutionError,
    ])
    def test_is_converge_error(self, cls):
        assert issubclass(cls, ConvergeError)

    def test_cycle_is_validation_error(self):
        assert issubclass(CycleError, ValidationError)

    def test_provider_errors(self):
        assert issubclass(TransientProviderError, TransientError)
        assert issubclass(PermanentProviderError, PermanentError)
        assert not issubclass(TransientError, PermanentError)

    def test_ready_timeout_is_timeout_error(self):
        with pytest.raises(TimeoutError):
            raise ReadyTimeoutError("eks1", 30)


class TestAttributes:
    def test_cycle_path(self):
        error = CycleError("Dependency cycle: a -> b -> a", cycle=["a", "b", "a"])
        assert error.cycle == ["a", "b", "a"]
        assert str(error) == "Dependency cycle: a -> b -> a"

    def test_cycle_defaults_empty(self):
        assert CycleError("cycle").cycle == []

    def test_lock_holder(self):
        holder = LockToken(token_id="01ABC", owner="ci@runner", acquired_at=0.0, expires_at=60.0, ttl_seconds=60.0)
        error = LockHeldError("locked", holder=holder)
        assert error.holder is holder

    def test_ready_timeout_message(self):
        error = ReadyTimeoutError("eks1", 1800.0, last_state="CREATING")
        assert str(error) == "Resource 'eks1' not ready after 1800s (last state: CREATING)"
        assert error.resource == "eks1"
        assert error.timeout_s == 1800.0

    def test_ready_timeout_without_state(self):
        assert str(ReadyTimeoutError("net1", 2.5)) == "Resource 'net1' not ready after 2.5s"

    def test_execution_error_keeps_cause(self):
        cause = KeyError("id")
        error = ExecutionError("eks1", "unresolved reference", cause=cause)
        assert error.cause is cause
        assert str(error) == "Resource 'eks1' failed: unresolved reference"


# =============================================================================
# CLASSIFICATION
# =============================================================================


class TestClassifyError:
    """Tests for classify_error()."""

    @pytest.mark.parametrize("exc,expected", [
        (TransientProviderError("throttled"), ErrorKind.TRANSIENT),
        (PermanentProviderError("denied"), ErrorKind.PERMANENT),
        (ReadyTimeoutError("eks1", 10), ErrorKind.TIMEOUT),
        (ConnectionResetError("reset"), ErrorKind.TRANSIENT),
        (socket.timeout("timed out"), ErrorKind.TRANSIENT),
        (EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"), ErrorKind.TRANSIENT),
        (NoCredentialsError(), ErrorKind.PERMANENT),
        (ValueError("bad"), ErrorKind.PERMANENT),
        (ExecutionError("x", "no adapter"), ErrorKind.PERMANENT),
    ])
    def test_classification(self, exc, expected):
        assert classify_error(exc) == expected

    def test_kind_values(self):
        assert [k.value for k in ErrorKind] == ["transient", "permanent", "timeout"]
