"""
Retry policy for provider syncs.

At most MAX_ATTEMPTS attempts per sync. Rate-limited attempts wait on a
long schedule (1 minute, 5 minutes, 1 hour), stretched to the provider's
Retry-After when that is longer; other retryable failures back off
exponentially from BASE_DELAY_SECONDS. Non-retryable errors never retry.
"""

from integrations.core.errors import RateLimitError, is_retryable_error

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0
RATE_LIMIT_DELAYS_SECONDS = [60, 300, 3600]


class RetryPolicy:
    """Strategy: (attempt, error) -> seconds to wait before the next attempt."""

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
        rate_limit_delays: list[int] = RATE_LIMIT_DELAYS_SECONDS,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_delays = list(rate_limit_delays)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """`attempt` is the 1-based number of the attempt that just failed."""
        return attempt < self.max_attempts and is_retryable_error(error)

    def get_delay(self, attempt: int, error: BaseException) -> float:
        index = max(0, attempt - 1)
        if isinstance(error, RateLimitError):
            scheduled = self.rate_limit_delays[min(index, len(self.rate_limit_delays) - 1)]
            return max(scheduled, error.retry_after or 0)
        return self.base_delay * (2 ** index)


DEFAULT_RETRY_POLICY = RetryPolicy()
