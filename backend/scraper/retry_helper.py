"""
Retry-with-backoff for browser and network steps.

Every step of the portal workflow goes through execute_with_retry() so a
transient failure (element not rendered yet, slow navigation) is retried
on its own instead of restarting the whole export from scratch.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


class OperationCancelled(Exception):
    """Cooperative cancellation. Never retried and never reported as a failure."""


class ConfigurationCancelled(OperationCancelled):
    """A lookup that retrying cannot fix (e.g. an unmapped course code)."""


def cancellable_sleep(cancel_event: Optional[threading.Event]) -> Callable[[float], None]:
    """Return a sleep function that wakes up early and raises when cancelled."""
    def _sleep(seconds: float) -> None:
        if cancel_event is None:
            time.sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise OperationCancelled("Cancelled while waiting")
    return _sleep


def execute_with_retry(
    operation: Callable[[], T],
    operation_name: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run operation until it succeeds or max_attempts is exhausted.

    The delay doubles from initial_delay and is capped at max_delay (no
    jitter). Each failed attempt that will be retried is logged as a
    warning; exhaustion is logged as an error and the last exception is
    re-raised. OperationCancelled passes straight through.

    Args:
        operation: Zero-argument callable to run
        operation_name: Human readable name used in log lines
        max_attempts: Total attempts, including the first one
        initial_delay: Seconds to wait after the first failure
        max_delay: Upper bound for a single wait, in seconds
        cancel_event: Set to abort before the next attempt or during a wait
        sleep: Override for the wait function (tests)

    Returns:
        Whatever operation returns
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def attempt() -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{operation_name} cancelled")
        return operation()

    def log_retry(retry_state) -> None:
        error = retry_state.outcome.exception()
        delay_ms = int(retry_state.next_action.sleep * 1000)
        logger.warning(
            f"{operation_name} failed (attempt {retry_state.attempt_number}/{max_attempts}). "
            f"Retrying in {delay_ms}ms... Error: {error}"
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        retry=retry_if_not_exception_type(OperationCancelled),
        before_sleep=log_retry,
        sleep=sleep or cancellable_sleep(cancel_event),
        reraise=True,
    )

    try:
        return retrying(attempt)
    except OperationCancelled:
        raise
    except Exception as e:
        logger.error(f"{operation_name} failed after {max_attempts} attempts: {e}")
        raise
