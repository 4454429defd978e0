"""
Retry Policy.

Decides whether a failed attempt is retried, how long to back off before the
next attempt, and which failures are transient enough to be worth retrying.
"""

import asyncio
from typing import Optional, Tuple

from loguru import logger

from testpilot.executor.errors import FatalRunnerError, TransientRunnerError
from testpilot.executor.types import (
    ErrorKind,
    ExecutionOutcome,
    RetryClass,
    RetryConfig,
    RetryState,
)

# Lower-cased substrings that mark an error message as transient.
RETRIABLE_PATTERNS: Tuple[str, ...] = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "unavailable",
    "not responding",
    "busy",
    "offline",
    "flaky",
    "intermittent",
)


def error_kind_for(exc: BaseException) -> Optional[ErrorKind]:
    """
    Map an exception raised by a runner to its typed error kind.

    Args:
        exc: The exception raised during an attempt.

    Returns:
        The ErrorKind for typed runner errors and timeouts, None otherwise.
    """
    if isinstance(exc, TransientRunnerError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, FatalRunnerError):
        return ErrorKind.FATAL
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return None


class RetryPolicy:
    """
    Per-unit retry decisions with exponential backoff.

    The policy is conservative: failures that match no known transient
    pattern are fatal and attempted only once.

    Example:
        policy = RetryPolicy(RetryConfig(max_retries=3, initial_delay_ms=1000))
        if policy.should_retry(outcome, attempt):
            await asyncio.sleep(policy.next_delay(attempt) / 1000.0)
    """

    def __init__(self, config: Optional[RetryConfig] = None) -> None:
        """
        Initialize the retry policy.

        Args:
            config: Retry configuration. Uses defaults if not provided.
        """
        self.config = config or RetryConfig()

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        return cls(RetryConfig(max_retries=5, initial_delay_ms=200,
                               backoff_multiplier=1.5))

    @classmethod
    def moderate(cls) -> "RetryPolicy":
        return cls(RetryConfig(max_retries=3, initial_delay_ms=500,
                               backoff_multiplier=2.0))

    @classmethod
    def conservative(cls) -> "RetryPolicy":
        return cls(RetryConfig(max_retries=2, initial_delay_ms=1000,
                               backoff_multiplier=2.5))

    @classmethod
    def immediate(cls) -> "RetryPolicy":
        return cls(RetryConfig(max_retries=3, initial_delay_ms=100,
                               backoff_multiplier=1.0))

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    def classify(self, error_message: Optional[str]) -> RetryClass:
        """
        Classify an error message as retriable or fatal.

        Args:
            error_message: The failure text, may be None.

        Returns:
            RETRIABLE if the text matches a transient pattern, FATAL otherwise.
        """
        if not error_message:
            return RetryClass.FATAL

        lowered = error_message.lower()
        if any(pattern in lowered for pattern in RETRIABLE_PATTERNS):
            return RetryClass.RETRIABLE
        return RetryClass.FATAL

    def classify_outcome(self, outcome: ExecutionOutcome) -> RetryClass:
        """Classify using the typed error kind, falling back to message matching."""
        if outcome.error_kind == ErrorKind.TRANSIENT:
            return RetryClass.RETRIABLE
        if outcome.error_kind == ErrorKind.FATAL:
            return RetryClass.FATAL
        return self.classify(outcome.error_message)

    def should_retry(self, outcome: ExecutionOutcome, attempt: int) -> bool:
        """
        Decide whether another attempt should follow.

        Args:
            outcome: Outcome of the attempt that just finished.
            attempt: 1-based number of that attempt.

        Returns:
            True if the unit should be attempted again.
        """
        if outcome.passed:
            return False
        if attempt >= self.config.max_retries:
            return False
        return self.classify_outcome(outcome) == RetryClass.RETRIABLE

    def next_delay(self, attempt: int) -> int:
        """
        Backoff delay before the retry numbered ``attempt``.

        Attempt 1 is the first retry (the second overall attempt).

        Args:
            attempt: 1-based retry number.

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be at least 1, got {attempt}")

        cfg = self.config
        delay = cfg.initial_delay_ms * (cfg.backoff_multiplier ** (attempt - 1))
        return int(min(delay, cfg.max_delay_ms))

    def begin_retry(
        self, state: Optional[RetryState], attempt: int
    ) -> RetryState:
        """Create or advance the retry state after a retriable failure."""
        delay_ms = self.next_delay(attempt)
        if state is None:
            logger.debug(f"Creating retry state (delay {delay_ms}ms)")
            return RetryState(attempt=attempt, next_delay_ms=delay_ms)
        state.attempt = attempt
        state.next_delay_ms = delay_ms
        return state
