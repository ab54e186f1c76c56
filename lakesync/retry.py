"""
Retry Policy
============

Bounded exponential backoff for transient network failures inside the
connector and uploader.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from .cancellation import CancellationToken
from .errors import SyncCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 0.2
    factor: float = 2.0
    max_attempts: int = 5
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.factor < 1:
            raise ValueError("base_delay must be >= 0 and factor >= 1")

    def delays(self) -> List[float]:
        """Sleep before each retry (one entry fewer than max_attempts)."""
        return [
            min(self.base_delay * (self.factor ** i), self.max_delay)
            for i in range(self.max_attempts - 1)
        ]

    def call(
        self,
        fn: Callable[[], T],
        is_transient: Callable[[BaseException], bool],
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], None] = time.sleep,
        description: str = "operation",
    ) -> T:
        """
        Run ``fn`` retrying transient failures.

        Args:
            fn: Zero-argument callable
            is_transient: Classifies an exception as retryable
            on_retry: Called with (attempt, error, delay) before each retry
            cancel_token: Aborts the wait between attempts
            sleep: Sleep function (injected by tests)
            description: Used in log messages

        Returns:
            Whatever ``fn`` returns

        Raises:
            The last error once attempts are exhausted, any non-transient
            error immediately, SyncCancelledError if cancelled while waiting.
        """
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                if not is_transient(e) or attempt >= self.max_attempts:
                    raise
                delay = delays[attempt - 1]
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e!r}. "
                    f"Retrying in {delay:.2f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                if cancel_token is not None and sleep is time.sleep:
                    cancelled = cancel_token.wait(delay)
                else:
                    sleep(delay)
                    cancelled = cancel_token is not None and cancel_token.cancelled
                if cancelled:
                    raise SyncCancelledError(f"{description} cancelled during retry backoff") from e
