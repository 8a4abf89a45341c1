"""
Structured error taxonomy for the inspection service.

Every error raised by a service carries an ErrorKind assigned where the error
is created. Retry classification and user-facing messages both read the kind;
neither re-parses the message text.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    CONTENT_REJECTED = "content_rejected"
    NOT_FOUND = "not_found"
    BUDGET_EXCEEDED = "budget_exceeded"
    UNKNOWN = "unknown"


TRANSIENT_KINDS: frozenset = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVICE_UNAVAILABLE,
})

_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network problem while contacting a remote service. Please check your connection and try again.",
    ErrorKind.TIMEOUT: "The remote service took too long to respond. Please try again.",
    ErrorKind.RATE_LIMITED: "Too many requests right now. Please wait a moment and try again.",
    ErrorKind.SERVICE_UNAVAILABLE: "The remote service is temporarily unavailable. Please try again shortly.",
    ErrorKind.AUTHENTICATION: "The service is not authorised to reach a required provider. Contact an administrator.",
    ErrorKind.INVALID_REQUEST: "The request could not be processed. Please check the submitted data.",
    ErrorKind.CONTENT_REJECTED: "The image was rejected by the analysis provider's content policy.",
    ErrorKind.NOT_FOUND: "The requested item could not be found.",
    ErrorKind.BUDGET_EXCEEDED: "The AI analysis budget has been reached. Please try again later.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


class InspectionServiceError(RuntimeError):
    """Base error: a human-readable message plus a structured kind."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={str(self)!r})"


class StorageError(InspectionServiceError):
    pass


class AIServiceError(InspectionServiceError):
    pass


class BudgetExceededError(AIServiceError):
    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.BUDGET_EXCEEDED)


class ImageDecodeError(InspectionServiceError):
    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.INVALID_REQUEST)


def kind_from_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code onto an ErrorKind."""
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if 400 <= status_code < 500:
        return ErrorKind.INVALID_REQUEST
    if status_code >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


def error_kind(error: BaseException) -> Optional[ErrorKind]:
    """Return the structured kind of an error, or None for foreign exceptions."""
    kind = getattr(error, "kind", None)
    return kind if isinstance(kind, ErrorKind) else None


def user_message(error: BaseException) -> str:
    """UI-facing sentence for an error, chosen by kind only."""
    kind = error_kind(error) or ErrorKind.UNKNOWN
    return _USER_MESSAGES[kind]
