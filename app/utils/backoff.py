"""Backoff Executor - retries external calls that fail with transient errors."""

import random
import re
import time
from typing import Any, Callable, Optional, TypeVar

import requests

from app.utils.error_handler import (
    ConfigurationError,
    QualityRejectedError,
    TerminalPipelineError,
    TransientServiceError,
)

T = TypeVar("T")

TRANSIENT_NETWORK_PATTERN = re.compile(r"ECONNRESET|ETIMEDOUT|ENOTFOUND|EAI_AGAIN", re.IGNORECASE)


def get_status_code(error: BaseException) -> Optional[int]:
    """
    Read an HTTP-like status code off an exception, if it carries one.

    Understands requests.HTTPError (via .response), SDK errors exposing
    .status_code, and our own TransientServiceError/QualityRejectedError.
    """
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if status is None:
        return None
    try:
        return int(status)
    except (TypeError, ValueError):
        return None


def is_retriable(error: BaseException) -> bool:
    """
    Classify an error as transient (retry) or fatal (abort).

    Retriable: no status code, 429, any 5xx, or a transient network error name.
    Terminal pipeline errors and configuration errors are never retried.
    """
    if isinstance(error, (TerminalPipelineError, ConfigurationError)):
        return False
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    if TRANSIENT_NETWORK_PATTERN.search(str(error)):
        return True

    status = get_status_code(error)
    if status is None:
        return not isinstance(error, QualityRejectedError)
    return status == 429 or 500 <= status <= 599


class BackoffExecutor:
    """Runs an operation with bounded, exponentially spaced retries."""

    def __init__(
        self,
        logger: Any,
        max_attempts: int = 2,
        base_delay: float = 0.6,
        jitter: float = 0.15,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize backoff executor.

        Args:
            logger: Logger instance
            max_attempts: Default number of retries after the first attempt
            base_delay: Default base delay in seconds (doubled per attempt)
            jitter: Maximum random delay added to each wait, in seconds
            sleep: Sleep function (injected in tests)
            rand: Random source in [0, 1) (injected in tests)
        """
        self.logger = logger
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rand = rand

    def compute_delay(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Delay before retry number attempt+1: base * 2^attempt + jitter."""
        base = self.base_delay if base_delay is None else base_delay
        return base * (2 ** attempt) + self._rand() * self.jitter

    def execute(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        label: str = "operation",
    ) -> T:
        """
        Run operation up to max_attempts + 1 times.

        Args:
            operation: Zero-argument callable
            max_attempts: Retries after the first attempt (defaults to executor setting)
            base_delay: Base delay in seconds (defaults to executor setting)
            label: Name used in log lines

        Returns:
            The operation's return value

        Raises:
            The last error once retries are exhausted, or the first fatal error
        """
        retries = self.max_attempts if max_attempts is None else max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(retries + 1):
            try:
                return operation()
            except Exception as e:
                last_error = e
                if not is_retriable(e):
                    self.logger.debug(f"{label}: fatal error, not retrying: {e}")
                    raise
                if attempt >= retries:
                    break
                delay = self.compute_delay(attempt, base_delay)
                self.logger.warning(
                    f"{label}: attempt {attempt + 1}/{retries + 1} failed ({e}); retrying in {delay:.2f}s"
                )
                self._sleep(delay)

        self.logger.error(f"❌ {label}: giving up after {retries + 1} attempts")
        assert last_error is not None
        raise last_error


def raise_for_status(response: requests.Response, service: str) -> None:
    """
    Convert an HTTP error reply into the pipeline taxonomy.

    429 and 5xx become TransientServiceError; other 4xx become QualityRejectedError.
    """
    if response.status_code < 400:
        return
    body = (response.text or "")[:500]
    message = f"{service} returned status {response.status_code}: {body}"
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientServiceError(message, status_code=response.status_code)
    raise QualityRejectedError(message, status_code=response.status_code)
