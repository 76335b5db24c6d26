"""
Error taxonomy and retry logic with exponential backoff.

Every speedbot error carries a category and a severity. The severity tells
the scheduler what to do with it: HIGH aborts the current cycle, CRITICAL
stops the process. Transport calls to Twitch, Discord and speedrun.com are
wrapped in retry_with_backoff; the reconciliation engine never retries.
"""

import asyncio
import logging
import random
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorSeverity(str, Enum):
    """How far an error reaches."""
    LOW = "low"
    MEDIUM = "medium"     # one stream or one tick
    HIGH = "high"         # the whole cycle
    CRITICAL = "critical" # the process


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    TRANSPORT = "transport"
    NOTIFICATION = "notification"
    PERSISTENCE = "persistence"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Where an error happened, for logs and the health endpoint."""
    operation: Optional[str] = None
    external_user_id: Optional[str] = None
    game_id: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            name: value for name, value in (
                ('operation', self.operation),
                ('external_user_id', self.external_user_id),
                ('game_id', self.game_id),
            ) if value is not None
        }
        data.update(self.additional_data)
        return data


class SpeedbotError(Exception):
    """Base exception for all speedbot errors."""

    category = ErrorCategory.INTERNAL
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    @property
    def is_fatal(self) -> bool:
        return self.severity == ErrorSeverity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        """Structured fields attached to JSON log records."""
        return {
            'error_type': type(self).__name__,
            'error_category': self.category.value,
            'error_severity': self.severity.value,
            **self.context.to_dict(),
        }


class TransportError(SpeedbotError):
    """Network or API failure while talking to an upstream service."""

    category = ErrorCategory.TRANSPORT
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.status is not None:
            data['response_status'] = self.status
        return data


class RateLimitError(TransportError):
    """API refused the request because of rate limiting."""

    category = ErrorCategory.RATE_LIMIT
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault('status', 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthenticationError(TransportError):
    """Access token could not be obtained or was rejected."""

    category = ErrorCategory.AUTHENTICATION


class NotificationError(SpeedbotError):
    """Downstream delivery of a notification failed."""

    category = ErrorCategory.NOTIFICATION

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class PersistenceError(SpeedbotError):
    """Registry read or write failed. Fatal for the process."""

    category = ErrorCategory.PERSISTENCE
    severity = ErrorSeverity.CRITICAL


class ConfigurationError(SpeedbotError):
    """Invalid or missing configuration detected at startup."""

    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


@dataclass
class RetryConfig:
    """Exponential backoff settings for one kind of call."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[Exception], ...] = (TransportError,)
    dont_retry_on: Tuple[Type[Exception], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the attempt after `attempt`, capped and jittered by 10%."""
        delay = min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += random.uniform(-0.1 * delay, 0.1 * delay)
        return max(0.0, delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts or isinstance(exception, self.dont_retry_on):
            return False
        return isinstance(exception, self.retry_on)


_RETRY_PRESETS: Dict[ErrorCategory, Dict[str, Any]] = {
    ErrorCategory.TRANSPORT: dict(
        max_attempts=3, base_delay=2.0, max_delay=30.0,
        retry_on=(TransportError,), dont_retry_on=(AuthenticationError,),
    ),
    ErrorCategory.NOTIFICATION: dict(
        max_attempts=3, base_delay=1.0, max_delay=10.0,
        retry_on=(NotificationError,),
    ),
}


def create_retry_config(category: ErrorCategory, **overrides: Any) -> RetryConfig:
    """Retry settings for the given kind of call; defaults for anything else.

    Keyword overrides replace preset values, e.g. a configured max_attempts.
    """
    return RetryConfig(**{**_RETRY_PRESETS.get(category, {}), **overrides})


def retry_with_backoff(config: Optional[RetryConfig] = None):
    """Retry an async call on the exceptions config allows, sleeping between attempts.

    An error carrying retry_after (rate limits) stretches the delay, up to max_delay.
    The last exception is re-raised once attempts are exhausted.
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        raise

                    delay = config.calculate_delay(attempt)
                    retry_after = getattr(e, 'retry_after', None)
                    if retry_after:
                        delay = max(delay, min(retry_after, config.max_delay))

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{config.max_attempts}: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info(f"{func.__name__} succeeded on attempt {attempt}")
                return result

        return wrapper
    return decorator


class ErrorTracker:
    """Counts recent errors by category and type for the health endpoint."""

    def __init__(self, max_history: int = 1000):
        self._history: Deque[SpeedbotError] = deque(maxlen=max_history)
        self._counts: Counter = Counter()
        self._last_seen: Dict[str, datetime] = {}

    def record_error(self, error: SpeedbotError) -> None:
        key = f"{error.category.value}:{type(error).__name__}"
        self._history.append(error)
        self._counts[key] += 1
        self._last_seen[key] = error.timestamp

    def get_error_stats(self) -> Dict[str, Any]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
        return {
            'total_errors': len(self._history),
            'errors_last_hour': sum(1 for e in self._history if e.timestamp >= cutoff),
            'error_counts_by_type': dict(self._counts),
            'last_occurred': {key: seen.isoformat() for key, seen in self._last_seen.items()},
        }

    def clear_history(self) -> None:
        self._history.clear()
        self._counts.clear()
        self._last_seen.clear()
