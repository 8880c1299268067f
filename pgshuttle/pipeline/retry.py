"""
Bounded retry with fixed or exponential backoff.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import Retrying, RetryCallState, retry_if_exception, stop_after_attempt

from .process import PipelineCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often a step is attempted and how long to wait in between.

    A backoff_multiplier of 1 gives a fixed delay; anything above 1 grows
    the delay exponentially.
    """

    max_attempts: int = 3
    initial_delay: float = 5.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must not be negative, got {self.initial_delay}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be at least 1, got {self.backoff_multiplier}")

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the given 1-based attempt."""
        if attempt <= 1:
            return 0.0
        return self.initial_delay * self.backoff_multiplier ** (attempt - 2)


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0, backoff_multiplier=1.0)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, Exception) and not isinstance(error, PipelineCancelled)


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = 'operation',
    wait: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int], None]] = None
) -> T:
    """
    Call ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument callable to invoke
        policy: RetryPolicy to apply
        description: Human readable name used in log messages
        wait: Function used to sleep between attempts
        on_attempt: Called with the attempt number before each attempt

    Returns:
        Whatever ``operation`` returns on its first successful attempt

    Raises:
        Exception: The exception raised by the final attempt, unchanged
        PipelineCancelled: Immediately, without further attempts
    """
    def delay_for(retry_state: RetryCallState) -> float:
        return policy.delay_before(retry_state.attempt_number + 1)

    def before(retry_state: RetryCallState):
        if on_attempt:
            on_attempt(retry_state.attempt_number)

    def before_sleep(retry_state: RetryCallState):
        logger.warning(
            f"{description}: attempt {retry_state.attempt_number}/{policy.max_attempts} failed "
            f"({retry_state.outcome.exception()}). Retrying in {delay_for(retry_state):.1f}s..."
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=delay_for,
        retry=retry_if_exception(_is_retryable),
        before=before,
        before_sleep=before_sleep,
        sleep=wait,
        reraise=True
    )

    try:
        return retrying(operation)
    except PipelineCancelled:
        raise
    except Exception as e:
        if policy.max_attempts > 1:
            logger.error(f"{description} failed after {policy.max_attempts} attempts: {e}")
        raise
