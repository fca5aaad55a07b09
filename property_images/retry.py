"""
Retry Policy

Classifies AWS errors into the archive's error taxonomy and retries
transient failures with bounded exponential backoff (tenacity).
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, TypeVar

import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from property_images.config import Settings
from property_images.exceptions import CapacityError, StoreError, TransientIOError

log = structlog.get_logger()

T = TypeVar("T")

THROTTLING_CODES = frozenset({
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "Throttling",
    "RequestLimitExceeded",
    "SlowDown",
    "TooManyRequestsException",
})

TRANSIENT_CODES = frozenset({
    "InternalServerError",
    "InternalError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "RequestTimeout",
    "RequestTimeoutException",
    "TransactionInProgressException",
})

CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def classify_client_error(
    error: ClientError,
    operation: str,
    resource: str,
) -> TransientIOError | StoreError:
    """Map a botocore ClientError onto CapacityError, TransientIOError or StoreError."""
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0

    if code in THROTTLING_CODES:
        return CapacityError(operation, str(error), resource=resource, error_code=code)
    if code in TRANSIENT_CODES or status >= 500:
        return TransientIOError(operation, str(error), resource=resource, error_code=code)
    return StoreError(operation=operation, resource=resource, error_message=str(error))


@contextmanager
def aws_errors(operation: str, resource: str) -> Iterator[None]:
    """Translate botocore failures raised inside the block."""
    try:
        yield
    except ClientError as e:
        raise classify_client_error(e, operation, resource) from e
    except CONNECTION_ERRORS as e:
        raise TransientIOError(operation, str(e), resource=resource) from e


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "retrying_transient_failure",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_type=type(error).__name__,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry budget for a single store or network call."""

    attempts: int = 3
    max_wait_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            max_wait_seconds=settings.retry_max_wait_seconds,
        )

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.5, max=self.max_wait_seconds),
            retry=retry_if_exception_type(TransientIOError),
            before_sleep=_log_retry,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Invoke fn, retrying on TransientIOError.

        Raises:
            TransientIOError: If every attempt failed transiently
        """
        return self.retrying()(fn, *args, **kwargs)
