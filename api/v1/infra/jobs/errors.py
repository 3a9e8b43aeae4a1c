"""
Job error hierarchy and the classifier that turns any raised exception into a
retry decision.

Handlers raise ``JobError`` subclasses for failures they understand; anything
else (httpx transport errors, timeouts, unexpected bugs) is classified by type
so the runner can decide between ``retrying`` and ``failed``.
"""

import email.utils
import random
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import httpx
from pydantic import ValidationError as PydanticValidationError


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    VALIDATION = "validation"
    DATA = "data"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


RECOVERABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.UNKNOWN,
    }
)


class JobError(Exception):
    """Base class for failures raised deliberately by job handlers."""

    code = "job_error"
    category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        retry_after_s: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.retryable = (
            self.category in RECOVERABLE_CATEGORIES if retryable is None else retryable
        )
        self.retry_after_s = retry_after_s


class ValidationJobError(JobError):
    """Bad or missing input; never retried."""

    code = "invalid_payload"
    category = ErrorCategory.VALIDATION


class UnknownJobTypeError(JobError):
    """No handler exists for the job's type; a configuration error."""

    code = "unknown_type"
    category = ErrorCategory.CONFIGURATION


class NoPagesError(JobError):
    """A merge produced no pages at all."""

    code = "no_pages"
    category = ErrorCategory.DATA


class ArtifactEmptyError(JobError):
    """The artifact about to be uploaded has no content."""

    code = "artifact_empty"
    category = ErrorCategory.DATA


class JobCancelledError(JobError):
    """The job was cancelled; raised at the next phase boundary."""

    code = "cancelled"
    category = ErrorCategory.CONFIGURATION


class CollaboratorError(JobError):
    """An external collaborator answered with a failure."""

    code = "collaborator_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ):
        self.status_code = status_code
        self.category = _category_for_status(status_code)
        super().__init__(message, code=code, retry_after_s=retry_after_s)


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying an exception."""

    category: ErrorCategory
    recoverable: bool
    code: str
    retry_after_s: float | None = None


def _category_for_status(status_code: int | None) -> ErrorCategory:
    if status_code is None:
        return ErrorCategory.UNKNOWN
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code >= 500:
        return ErrorCategory.SERVER_ERROR
    if status_code in (408,):
        return ErrorCategory.TIMEOUT
    if 400 <= status_code < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def parse_retry_after(value: str | None) -> float | None:
    """Convert a Retry-After header value into a delay in seconds."""
    if not value:
        return None

    try:
        delay = float(int(value))
    except ValueError:
        try:
            dt = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        delay = (dt - datetime.now(UTC)).total_seconds()

    return max(0.0, delay)


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map a raised error to a category and a retry decision."""
    if isinstance(exc, JobError):
        return ErrorClassification(
            category=exc.category,
            recoverable=exc.retryable,
            code=exc.code,
            retry_after_s=exc.retry_after_s,
        )

    if isinstance(exc, httpx.HTTPStatusError):
        category = _category_for_status(exc.response.status_code)
        return ErrorClassification(
            category=category,
            recoverable=category in RECOVERABLE_CATEGORIES,
            code=f"http_{exc.response.status_code}",
            retry_after_s=parse_retry_after(exc.response.headers.get("Retry-After")),
        )

    # httpx timeouts subclass TransportError, so check them first
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return ErrorClassification(ErrorCategory.TIMEOUT, True, "timeout")

    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorClassification(ErrorCategory.NETWORK, True, "network_error")

    if isinstance(exc, (PydanticValidationError, ValueError)):
        return ErrorClassification(ErrorCategory.VALIDATION, False, "invalid_payload")

    return ErrorClassification(ErrorCategory.UNKNOWN, True, "handler_exception")


def compute_backoff_s(
    base_delay_s: float,
    attempt: int,
    *,
    max_delay_s: float,
    jitter: float = 0.25,
    retry_after_s: float | None = None,
) -> float:
    """
    Exponential backoff with jitter for the given attempt number.

    ``base * 2^(attempt-1)``, capped at ``max_delay_s``, varied by
    ``+/- jitter`` and never shorter than a server supplied Retry-After.
    """
    delay = min(max_delay_s, base_delay_s * (2 ** max(0, attempt - 1)))
    delay += delay * jitter * (2 * random.random() - 1)
    if retry_after_s is not None:
        delay = max(delay, min(retry_after_s, max_delay_s))
    return max(1.0, delay)
