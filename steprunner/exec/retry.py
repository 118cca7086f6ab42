"""
Retry policy helpers for step execution.
Only process outcomes (non-zero exit, timeout) are retried; spawn, render and
configuration errors fail immediately.
"""

import time
from dataclasses import dataclass
from typing import Optional

from ..exceptions import ExitError, StepTimeoutError


@dataclass
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        delay_ms: Delay between retries in milliseconds
    """
    max_retries: int = 0
    delay_ms: int = 1000

    RETRYABLE = (ExitError, StepTimeoutError)

    @classmethod
    def for_step(cls, retry: Optional[int], delay_ms: int = 1000) -> 'RetryPolicy':
        """Steps only retry when their retry field is set."""
        if not retry:
            return cls(max_retries=0, delay_ms=delay_ms)
        return cls(max_retries=retry, delay_ms=delay_ms)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if a retry should be attempted.

        Args:
            error: Failure raised by the last attempt
            attempt: Current attempt number (0-based)

        Returns:
            True if should retry, False otherwise
        """
        # Check if we have retries left
        if attempt >= self.max_retries:
            return False

        return isinstance(error, self.RETRYABLE)

    def wait(self):
        """Wait for the configured delay between retries."""
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)
