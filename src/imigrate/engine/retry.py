# src/imigrate/engine/retry.py
"""RetryManager: transient-failure retry with tenacity.

Backoff is exponential without jitter: with the defaults a call is tried
once and retried after 0.5 s, 1.0 s and 2.0 s. The sleep function is
injectable so tests can observe the delays without waiting for them.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from imigrate.core.config import RetrySettings

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    max_retries counts retries, not tries: max_retries=3 means up to four
    calls in total.
    """

    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_retries=0)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
        )


def is_transient(error: BaseException) -> bool:
    """True for errors that may succeed if simply tried again."""
    return bool(getattr(error, "retryable", False))


class RetryManager:
    """Runs an operation, retrying transient failures with backoff.

    When retries are exhausted the last error is raised unchanged, so
    callers see the same exception types whether or not retries happened.

    Example:
        manager = RetryManager(RetryConfig(), sleep=recorded_delays.append)
        response = manager.execute_with_retry(
            lambda: client.get(url),
            is_retryable=is_transient,
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            is_retryable: Function to check if error is retryable
            on_retry: Optional callback before each retry (attempt, error)

        Returns:
            Result of operation

        Raises:
            Exception: The last error once retries are exhausted, or any
                non-retryable error immediately
        """
        last_error: BaseException | None = None
        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(
                multiplier=self._config.base_delay,
                exp_base=self._config.exponential_base,
                max=self._config.max_delay,
            ),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            reraise=False,
        )

        try:
            for attempt_state in retrying:
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return operation()
                    except Exception as e:
                        last_error = e
                        if on_retry is not None and is_retryable(e) and attempt < self._config.max_attempts:
                            on_retry(attempt, e)
                        raise
        except RetryError as e:
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise final_error from None

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
