"""Exception hierarchy and user-facing error messages.

Error codes
-----------
Service adapters report failures as strings prefixed with a stable code so
retry policies can classify them by substring:

NETWORK_ERROR      Connection to the upstream service failed.
TIMEOUT            The call exceeded its deadline.
RATE_LIMIT         Upstream asked us to slow down.
UNAUTHORIZED       Credentials missing or rejected.
QUOTA_EXCEEDED     Billing or quota exhausted.
INVALID_REQUEST    Upstream rejected the request shape.
SERVER_ERROR       Upstream returned a 5xx.
"""

from __future__ import annotations

import enum


class FlowGeniusError(Exception):
    """Base class for every error raised by the workflow core."""


class StateValidationError(FlowGeniusError):
    """Session state is malformed or missing required fields."""


class PayloadParseError(FlowGeniusError):
    """A service reported success but its payload could not be parsed."""


class ServiceError(FlowGeniusError):
    """An external service call failed. The message carries the error code."""


class VoiceTranscriptionError(ServiceError):
    """Speech-to-text failed or produced no usable text."""


class WorkflowError(FlowGeniusError):
    """The graph executor could not finish an invocation."""


class WorkflowIterationError(WorkflowError):
    """The executor exceeded its maximum number of node iterations."""


class ErrorCode(enum.StrEnum):
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    UNAUTHORIZED = "UNAUTHORIZED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_REQUEST = "INVALID_REQUEST"
    SERVER_ERROR = "SERVER_ERROR"


def coded(code: ErrorCode, detail: str) -> str:
    """Format an adapter error string, e.g. ``TIMEOUT: chat completion exceeded 45s``."""
    return f"{code.value}: {detail}"


class ErrorCategory(enum.StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    QUOTA = "quota"
    VALIDATION = "validation"
    PARSE = "parse"
    WORKFLOW = "workflow"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "A network error occurred. Please check your connection and try again.",
    ErrorCategory.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorCategory.RATE_LIMIT: "Too many requests right now. Please wait a moment and try again.",
    ErrorCategory.AUTH: "The AI service rejected our credentials. Please check the API key settings.",
    ErrorCategory.QUOTA: "The AI service quota has been exhausted. Please check your plan or billing.",
    ErrorCategory.VALIDATION: "The session data looks inconsistent. Please start a new session.",
    ErrorCategory.PARSE: "The AI service returned a response I couldn't understand. Please try again.",
    ErrorCategory.WORKFLOW: "A step in the process failed. Please try again.",
    ErrorCategory.UNKNOWN: (
        "An unexpected error occurred. Please try again or contact support if the problem persists."
    ),
}

# Ordered: the first matching marker wins.
_MARKERS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.RATE_LIMIT, ("rate_limit", "rate limit", "too many requests")),
    (ErrorCategory.QUOTA, ("quota_exceeded", "quota", "billing")),
    (ErrorCategory.AUTH, ("unauthorized", "invalid api key", "authentication", "forbidden")),
    (ErrorCategory.NETWORK, ("network_error", "network", "connection", "econnrefused")),
]


def categorize(error: BaseException | str) -> ErrorCategory:
    """Map an exception (or adapter error string) to an ErrorCategory."""
    if isinstance(error, StateValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, PayloadParseError):
        return ErrorCategory.PARSE
    text = str(error).lower()
    for category, markers in _MARKERS:
        if any(marker in text for marker in markers):
            return category
    if isinstance(error, WorkflowError | ServiceError):
        return ErrorCategory.WORKFLOW
    return ErrorCategory.UNKNOWN


def describe_error(error: BaseException | str) -> str:
    """Return a message suitable for a non-technical user."""
    return _USER_MESSAGES[categorize(error)]
