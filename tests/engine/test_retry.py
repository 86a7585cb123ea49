# tests/engine/test_retry.py
"""Tests for RetryManager."""

import pytest

from imigrate.contracts import ImisRequestError, ImisResponseError
from imigrate.engine.retry import RetryConfig, RetryManager, is_transient


class TestRetryConfig:
    def test_defaults(self) -> None:
        config = RetryConfig()

        assert config.max_attempts == 4
        assert (config.base_delay, config.max_delay, config.exponential_base) == (0.5, 2.0, 2.0)

    def test_no_retry(self) -> None:
        assert RetryConfig.no_retry().max_attempts == 1

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            RetryConfig(max_retries=-1)


class TestIsTransient:
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_statuses(self, status: int) -> None:
        assert is_transient(ImisResponseError(status, ""))

    @pytest.mark.parametrize("status", [400, 403, 404, 409])
    def test_client_errors_final(self, status: int) -> None:
        assert not is_transient(ImisResponseError(status, ""))

    def test_transport_errors_retryable(self) -> None:
        assert is_transient(ImisRequestError("connection refused"))

    def test_foreign_exceptions_final(self) -> None:
        assert not is_transient(ValueError("boom"))


class TestRetryManager:
    """Retry logic with tenacity."""

    def test_retry_on_retryable_error(self) -> None:
        delays: list[float] = []
        manager = RetryManager(RetryConfig(), sleep=delays.append)

        call_count = 0

        def flaky_operation() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ImisResponseError(503, "busy")
            return "success"

        result = manager.execute_with_retry(flaky_operation)

        assert result == "success"
        assert call_count == 3
        assert delays == [0.5, 1.0]

    def test_no_retry_on_non_retryable(self) -> None:
        delays: list[float] = []
        manager = RetryManager(RetryConfig(), sleep=delays.append)

        call_count = 0

        def failing_operation() -> None:
            nonlocal call_count
            call_count += 1
            raise ImisResponseError(400, "bad request")

        with pytest.raises(ImisResponseError):
            manager.execute_with_retry(failing_operation)

        assert call_count == 1
        assert delays == []

    def test_exhausted_raises_last_error_unchanged(self) -> None:
        delays: list[float] = []
        manager = RetryManager(RetryConfig(), sleep=delays.append)
        errors = [ImisResponseError(503, f"attempt {n}") for n in range(1, 5)]
        remaining = iter(errors)

        def always_fails() -> None:
            raise next(remaining)

        with pytest.raises(ImisResponseError) as exc_info:
            manager.execute_with_retry(always_fails)

        assert exc_info.value is errors[-1]
        assert delays == [0.5, 1.0, 2.0]

    def test_delay_capped_at_max(self) -> None:
        delays: list[float] = []
        manager = RetryManager(RetryConfig(max_retries=5), sleep=delays.append)

        def always_fails() -> None:
            raise ImisRequestError("down")

        with pytest.raises(ImisRequestError):
            manager.execute_with_retry(always_fails)

        assert delays == [0.5, 1.0, 2.0, 2.0, 2.0]

    def test_on_retry_called_before_each_retry(self) -> None:
        manager = RetryManager(RetryConfig(max_retries=2), sleep=lambda _: None)
        retries: list[tuple[int, str]] = []

        def always_fails() -> None:
            raise ImisRequestError("timeout")

        with pytest.raises(ImisRequestError):
            manager.execute_with_retry(always_fails, on_retry=lambda attempt, e: retries.append((attempt, str(e))))

        # No callback after the final attempt
        assert retries == [(1, "timeout"), (2, "timeout")]

    def test_custom_predicate(self) -> None:
        manager = RetryManager(RetryConfig(max_retries=1), sleep=lambda _: None)
        calls = 0

        def operation() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise KeyError("once")
            return calls

        assert manager.execute_with_retry(operation, is_retryable=lambda e: isinstance(e, KeyError)) == 2
