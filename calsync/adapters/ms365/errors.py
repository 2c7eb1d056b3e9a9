"""
Error taxonomy for the MS365 calendar adapter.

Every failure surfaces as a CalendarError with a stable kind, a readable
message and redacted context. Raw provider payloads, tokens and full email
addresses never end up in the message or the logs.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, Iterable, Optional


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    RATE_LIMITED = "RateLimited"
    SERVER_ERROR = "ServerError"
    PERMISSION_DENIED = "PermissionDenied"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"
    NOT_FOUND = "NotFound"
    OTHER = "Other"


RETRYABLE_KINDS = {ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR}


class CalendarError(Exception):
    """
    Base exception for calendar adapter errors.

    Attributes:
        message: Human-readable description
        kind: ErrorKind classifying the failure
        retryable: True for rate limiting and 5xx responses
        context: Redacted diagnostic context (endpoint, counts, ids)
        cause: The underlying exception, if any
        status_code: HTTP status from Graph, if any
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.OTHER,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = kind in RETRYABLE_KINDS
        self.context = dict(context or {})
        self.cause = cause
        self.status_code = status_code
        self.attempts = attempts
        self.retry_after = retry_after
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, message: Optional[str] = None, **context) -> "CalendarError":
        """Copy of this error with a new message and extra context, chained to self."""
        return CalendarError(
            message or self.message,
            kind=self.kind,
            context={**self.context, **context},
            cause=self,
            status_code=self.status_code,
            attempts=self.attempts,
            retry_after=self.retry_after
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": redact_text(self.message),
            "retryable": self.retryable,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "context": redact_context(self.context)
        }

    def __str__(self) -> str:
        return self.message


class ValidationError(CalendarError):
    """Malformed caller input. Never retried."""

    def __init__(self, message: str, param: Optional[str] = None, **context):
        if param:
            context["param"] = param
        super().__init__(message, kind=ErrorKind.VALIDATION, context=context)


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if 500 <= status_code < 600:
        return ErrorKind.SERVER_ERROR
    if status_code == 403:
        return ErrorKind.PERMISSION_DENIED
    if status_code == 412:
        return ErrorKind.CONCURRENCY_CONFLICT
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    return ErrorKind.OTHER


def error_for_status(
    status_code: int,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    retry_after: Optional[float] = None
) -> CalendarError:
    """Build the CalendarError matching a non-2xx Graph response."""
    return CalendarError(
        message,
        kind=kind_for_status(status_code),
        context=context,
        status_code=status_code,
        retry_after=retry_after
    )


# Also matches the URL-encoded form used in /users/{id} paths
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+?)(@|%40)([A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+)")


def redact_email(address: Optional[str]) -> str:
    """jane.doe@contoso.com -> ja***@contoso.com"""
    if not address or "@" not in address:
        return "***"
    local, _, domain = address.partition("@")
    return f"{local[:2]}***@{domain}"


def redact_text(text: str) -> str:
    """Mask every email address embedded in free text or an endpoint path."""
    return _EMAIL_RE.sub(lambda m: f"{m.group(1)[:2]}***{m.group(2)}{m.group(3)}", text)


def redact_context(value: Any) -> Any:
    """Apply redact_text to every string inside a context structure."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: redact_context(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_context(v) for v in value]
    return value


def redact_id(value: Optional[str], keep: int = 8) -> str:
    """Graph ids are long opaque strings; keep a short prefix for correlation."""
    if not value:
        return ""
    return value if len(value) <= keep else f"{value[:keep]}..."


def summarize_emails(emails: Iterable[str]) -> Dict[str, Any]:
    emails = list(emails)
    return {"count": len(emails), "domains": sorted({e.partition("@")[2] for e in emails if "@" in e})}


def report_error(error: CalendarError, operation: str) -> None:
    """
    Report an error with structured, redacted context.

    Fire-and-forget: reporting never raises into the caller.
    """
    try:
        logger.error(
            "%s failed: %s",
            operation,
            redact_text(error.message),
            extra={
                "operation": operation,
                "error_kind": error.kind.value,
                "status_code": error.status_code,
                "attempts": error.attempts,
                "context": redact_context(error.context)
            }
        )
    except Exception:  # pragma: no cover
        logger.debug("Error reporting failed for %s", operation, exc_info=True)
