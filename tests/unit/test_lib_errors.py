"""
Unit tests for the error taxonomy and retry logic.
"""

import pytest
from unittest.mock import AsyncMock, patch

from speedbot.lib.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    ErrorTracker,
    NotificationError,
    PersistenceError,
    RateLimitError,
    RetryConfig,
    SpeedbotError,
    TransportError,
    create_retry_config,
    retry_with_backoff,
)


class TestErrorHierarchy:

    def test_categories_and_severities(self):
        assert TransportError("x").category == ErrorCategory.TRANSPORT
        assert NotificationError("x").category == ErrorCategory.NOTIFICATION
        assert PersistenceError("x").severity == ErrorSeverity.CRITICAL
        assert ConfigurationError("x").category == ErrorCategory.CONFIGURATION

    def test_rate_limit_is_transport(self):
        error = RateLimitError("slow down", retry_after=12.5)

        assert isinstance(error, TransportError)
        assert error.status == 429
        assert error.retry_after == 12.5
        assert error.category == ErrorCategory.RATE_LIMIT

    def test_authentication_is_transport(self):
        error = AuthenticationError("bad token", status=401)

        assert isinstance(error, TransportError)
        assert error.status == 401
        assert error.category == ErrorCategory.AUTHENTICATION

    def test_context_and_cause(self):
        cause = OSError("refused")
        error = PersistenceError(
            "write failed",
            context=ErrorContext(operation="upsert", external_user_id="1", additional_data={"attempt": 2}),
            cause=cause,
        )

        assert error.cause is cause
        data = error.context.to_dict()
        assert data["operation"] == "upsert"
        assert data["external_user_id"] == "1"
        assert data["attempt"] == 2
        assert str(error) == "write failed"

    def test_severity_decides_fatality(self):
        assert PersistenceError("x").is_fatal
        assert ConfigurationError("x").is_fatal
        assert not TransportError("x").is_fatal

    def test_to_dict_for_logging(self):
        error = TransportError("bad gateway", status=502, context=ErrorContext(operation="get_streams"))

        assert error.to_dict() == {
            "error_type": "TransportError",
            "error_category": "transport",
            "error_severity": "high",
            "operation": "get_streams",
            "response_status": 502,
        }


class TestRetryConfig:

    def test_exponential_delay(self):
        config = RetryConfig(base_delay=1.0, backoff_multiplier=2.0, max_delay=5.0, jitter=False)

        assert [config.calculate_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_default_retries_transport_only(self):
        config = RetryConfig()

        assert config.should_retry(RateLimitError("x"), 1)
        assert not config.should_retry(ValueError("x"), 1)

    def test_jitter_stays_within_ten_percent(self):
        config = RetryConfig(base_delay=10.0, jitter=True)

        for _ in range(20):
            assert 9.0 <= config.calculate_delay(1) <= 11.0

    def test_should_retry(self):
        config = create_retry_config(ErrorCategory.TRANSPORT)

        assert config.should_retry(TransportError("x"), 1)
        assert config.should_retry(RateLimitError("x"), 1)
        assert not config.should_retry(AuthenticationError("x"), 1)
        assert not config.should_retry(PersistenceError("x"), 1)
        assert not config.should_retry(TransportError("x"), config.max_attempts)

    def test_overrides_replace_preset_values(self):
        config = create_retry_config(ErrorCategory.NOTIFICATION, max_attempts=5)

        assert config.max_attempts == 5
        assert config.retry_on == (NotificationError,)
        assert config.max_delay == 10.0



class TestRetryWithBackoff:

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self):
        calls = AsyncMock(side_effect=[TransportError("a"), TransportError("b"), "ok"])

        @retry_with_backoff(RetryConfig(max_attempts=3, base_delay=0.5, jitter=False, retry_on=(TransportError,)))
        async def fetch():
            return await calls()

        with patch("speedbot.lib.errors.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await fetch() == "ok"

        assert calls.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_and_reraises_last_error(self):
        @retry_with_backoff(RetryConfig(max_attempts=2, base_delay=0, jitter=False))
        async def fetch():
            raise TransportError("still down")

        with patch("speedbot.lib.errors.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransportError, match="still down"):
                await fetch()

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        calls = AsyncMock(side_effect=AuthenticationError("denied"))

        @retry_with_backoff(create_retry_config(ErrorCategory.TRANSPORT))
        async def fetch():
            return await calls()

        with pytest.raises(AuthenticationError):
            await fetch()
        assert calls.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after_honoured(self):
        calls = AsyncMock(side_effect=[RateLimitError("slow", retry_after=20), "ok"])

        @retry_with_backoff(RetryConfig(max_attempts=2, base_delay=1, max_delay=60, jitter=False))
        async def fetch():
            return await calls()

        with patch("speedbot.lib.errors.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await fetch() == "ok"

        sleep.assert_awaited_once_with(20)

    @pytest.mark.asyncio
    async def test_notification_retry_after_honoured(self):
        calls = AsyncMock(side_effect=[NotificationError("rate limited", retry_after=4), "ok"])

        @retry_with_backoff(create_retry_config(ErrorCategory.NOTIFICATION, jitter=False))
        async def send():
            return await calls()

        with patch("speedbot.lib.errors.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await send() == "ok"

        sleep.assert_awaited_once_with(4)



class TestErrorTracker:

    def test_counts_by_category_and_type(self):
        tracker = ErrorTracker()
        tracker.record_error(TransportError("a"))
        tracker.record_error(TransportError("b"))
        tracker.record_error(RateLimitError("c"))

        stats = tracker.get_error_stats()

        assert stats["total_errors"] == 3
        assert stats["errors_last_hour"] == 3
        assert stats["error_counts_by_type"] == {
            "transport:TransportError": 2,
            "rate_limit:RateLimitError": 1,
        }

    def test_history_bounded(self):
        tracker = ErrorTracker(max_history=2)
        for n in range(5):
            tracker.record_error(SpeedbotError(str(n)))

        assert tracker.get_error_stats()["total_errors"] == 2

    def test_clear(self):
        tracker = ErrorTracker()
        tracker.record_error(NotificationError("x"))
        tracker.clear_history()

        assert tracker.get_error_stats()["total_errors"] == 0
