"""
Error classes for converge.

These error types split into three groups:
- Document errors: ParseError, ValidationError, CycleError. Fatal, raised
  before anything touches live state.
- Coordination errors: LockHeldError. Another run holds the state lock;
  the caller retries or aborts.
- Provider errors: TransientProviderError (safe to retry), PermanentProviderError
  (do not retry), ReadyTimeoutError (resource never became ready, not retried).

Adapters raise provider errors. The executor catches at the op boundary and
calls classify_error() on anything that escapes to decide retry vs fail.
"""

import socket
from enum import Enum
from typing import TYPE_CHECKING, Optional

from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

if TYPE_CHECKING:
    from converge.schemas.lock import LockToken


class ConvergeError(Exception):
    """Base exception for converge."""
    pass


class ConfigError(ConvergeError):
    """Configuration validation error."""
    pass


class ParseError(ConvergeError):
    """The desired-state document is unreadable or malformed."""
    pass


class ValidationError(ConvergeError):
    """
    The desired-state document parsed but is not a valid graph.

    Raised for duplicate resource names, references to resources that
    do not exist, and dependency cycles.
    """
    pass


class CycleError(ValidationError):
    """A dependency cycle was found."""

    def __init__(self, message: str, cycle: Optional[list[str]] = None):
        self.cycle = list(cycle or [])
        super().__init__(message)


class LockHeldError(ConvergeError):
    """
    The state lock is held by another run.

    Not fatal to the system: the caller may wait and retry.
    """

    def __init__(self, message: str, holder: Optional["LockToken"] = None):
        self.holder = holder
        super().__init__(message)


class TransientError(ConvergeError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Service temporarily unavailable
    - Connection reset

    The executor will retry operations that raise TransientError
    according to the configured retry policy.
    """
    pass


class PermanentError(ConvergeError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid configuration rejected by the provider
    - Resource in a failed state
    - Authorization failed (403)
    - Required tool missing on the host

    The executor will immediately fail the op without retry
    when PermanentError is raised.
    """
    pass


class TransientProviderError(TransientError):
    """A provider call failed for a reason that may clear on retry."""
    pass


class PermanentProviderError(PermanentError):
    """The provider rejected the request."""
    pass


class ReadyTimeoutError(ConvergeError, TimeoutError):
    """A resource did not reach its ready condition within the bounded wait."""

    def __init__(self, resource: str, timeout_s: float, last_state: Optional[str] = None):
        self.resource = resource
        self.timeout_s = timeout_s
        self.last_state = last_state
        detail = f" (last state: {last_state})" if last_state else ""
        super().__init__(
            f"Resource '{resource}' not ready after {timeout_s:g}s{detail}"
        )


class InvalidTransitionError(ConvergeError):
    """Raised when the release state machine is asked for an illegal transition."""
    pass


class ExecutionError(ConvergeError):
    """Raised when an op cannot be executed at all (no adapter, bad reference)."""

    def __init__(self, resource: str, message: str, cause: Optional[Exception] = None):
        self.resource = resource
        self.cause = cause
        super().__init__(f"Resource '{resource}' failed: {message}")


class ErrorKind(str, Enum):
    """Classification used for retry decisions and failure reports."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"


_BOTOCORE_TRANSIENT = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised by an adapter.

    Args:
        exc: The exception that escaped the adapter call

    Returns:
        ErrorKind.TIMEOUT for ReadyTimeoutError, ErrorKind.TRANSIENT for
        retryable network/rate-limit failures, ErrorKind.PERMANENT otherwise.
    """
    if isinstance(exc, ReadyTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, TransientError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, PermanentError):
        return ErrorKind.PERMANENT
    if isinstance(exc, (ConnectionError, socket.timeout)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, _BOTOCORE_TRANSIENT):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT
