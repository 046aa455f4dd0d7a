"""
Error taxonomy and retry helpers for incident operations.

Categories:
- ValidationError: malformed or missing input, never retried
- NotFoundError: referenced incident/workflow/step does not exist
- TransientStoreError: connection-like storage failure, retried with backoff
- DeliveryError: a notification channel failed
- UnexpectedError: anything not classified above

Storage and channel exceptions are classified once, at the boundary, so the
rest of the code only ever sees IncidentError subclasses.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, TypeVar

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class IncidentError(Exception):
    """Base exception for incident operations."""

    code = "INCIDENT_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        severity: str = "medium",
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.severity = severity
        self.context = context or {}


class ValidationError(IncidentError):
    """Input failed validation."""

    code = "VALIDATION_ERROR"


class NotFoundError(IncidentError):
    """Referenced incident, workflow or step does not exist."""

    code = "NOT_FOUND"


class ConcurrencyError(IncidentError):
    """Concurrent modification detected."""

    code = "CONCURRENT_MODIFICATION"


class TransientStoreError(IncidentError):
    """Storage failure that may succeed on retry."""

    code = "DATABASE_CONNECTION_ERROR"
    retryable = True


class DeliveryError(IncidentError):
    """Notification channel failed to deliver."""

    code = "DELIVERY_ERROR"
    retryable = True


class UnavailableError(IncidentError):
    """Facility directory could not provide the current context."""

    code = "CONTEXT_UNAVAILABLE"


class UnexpectedError(IncidentError):
    """Failure that does not fit any other category."""

    code = "UNEXPECTED_ERROR"


# =============================================================================
# CLASSIFICATION
# =============================================================================


_TRANSIENT_ERRORS = (
    OperationalError,
    DisconnectionError,
    InterfaceError,
    PoolTimeoutError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def classify_store_error(exc: BaseException, operation: str) -> IncidentError:
    """Map a storage exception onto the incident error taxonomy."""
    if isinstance(exc, IncidentError):
        return exc

    if isinstance(exc, StaleDataError):
        return ConcurrencyError(
            f"Record changed by another operator during {operation}",
            severity="high",
        )

    if isinstance(exc, IntegrityError):
        return ValidationError(
            f"Constraint violation during {operation}: {exc.orig}",
            code="DUPLICATE_RECORD_ERROR",
            severity="high",
        )

    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientStoreError(
            f"Database connection lost during {operation}: {exc.orig}",
            severity="critical",
        )

    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientStoreError(
            f"Database error during {operation}: {exc}",
            severity="critical",
        )

    return UnexpectedError(
        f"Unexpected error during {operation}: {exc}",
        severity="critical",
        context={"operation": operation, "type": type(exc).__name__},
    )


# =============================================================================
# RETRY
# =============================================================================


def backoff_delay(
    attempt: int,
    delay: float,
    backoff: Literal["linear", "exponential"],
) -> float:
    """Delay before the retry that follows `attempt` (1-indexed)."""
    if backoff == "exponential":
        return delay * (2 ** (attempt - 1))
    return delay * attempt


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: Literal["linear", "exponential"] = "linear",
    classify: Callable[[BaseException, str], IncidentError] = classify_store_error,
) -> T:
    """
    Run `operation`, retrying retryable failures.

    Every failure is classified first; non-retryable errors propagate on the
    first attempt. When the budget is exhausted the last classified error is
    raised.
    """
    last_error: IncidentError | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = classify(e, operation_name)

            if not last_error.retryable or attempt == attempts:
                if last_error.retryable:
                    logger.error(
                        f"{operation_name} failed after {attempt} attempts: {last_error}"
                    )
                if last_error is e:
                    raise
                raise last_error from e

            wait_time = backoff_delay(attempt, delay, backoff)
            logger.warning(
                f"{operation_name} failed ({last_error.code}), retrying in "
                f"{wait_time:.2f}s (attempt {attempt}/{attempts})"
            )
            await asyncio.sleep(wait_time)

    # attempts < 1
    raise last_error or UnexpectedError(
        f"Operation {operation_name} was not attempted",
        code="MAX_RETRIES_EXCEEDED",
    )
