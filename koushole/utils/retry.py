"""
Bounded retry and per-document time budgets.

Provider calls (vision OCR, chapter extraction, embeddings) share one
policy: a fixed pause between attempts, a small attempt cap, and a hard
stop when the caller's deadline would be overrun by the next pause.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_fixed,
)

from koushole.utils.errors import (
    DeadlineExceeded,
    ProviderUnavailableError,
    RateLimitError,
)
from koushole.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def is_rate_limit_error(error: Exception) -> bool:
    """Check whether an SDK error message looks like a rate-limit/quota error."""
    error_str = str(error).lower()
    rate_limit_indicators = [
        "429",
        "rate limit",
        "rate_limit",
        "quota exceeded",
        "resource exhausted",
        "resource_exhausted",
        "too many requests",
    ]
    return any(indicator in error_str for indicator in rate_limit_indicators)


@dataclass
class Deadline:
    """
    Wall-clock budget for one unit of work.

    Example:
        deadline = Deadline(55)
        client.call(timeout=deadline.clamp(120))
    """

    seconds: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self):
        self._started = self.clock()

    def remaining(self) -> float:
        return max(0.0, self.seconds - (self.clock() - self._started))

    def expired(self) -> bool:
        return self.remaining() <= 0

    def clamp(self, timeout: float) -> float:
        """
        Return a request timeout that does not outlive the budget.

        Raises:
            DeadlineExceeded: If the budget is already spent
        """
        self.check()
        return min(timeout, self.remaining())

    def check(self, stage: str = "") -> None:
        if self.expired():
            where = f" during {stage}" if stage else ""
            raise DeadlineExceeded(f"Time budget of {self.seconds:.0f}s exhausted{where}")


@dataclass
class RetryPolicy:
    """
    Fixed-delay retry for transient provider errors.

    Only RateLimitError and ProviderUnavailableError are retried; anything
    else propagates on the first attempt. When attempts run out, the last
    error is re-raised unchanged.

    Attributes:
        max_attempts: Total attempts including the first
        delay_seconds: Pause between attempts
        sleep: Injected for tests
    """

    max_attempts: int = 3
    delay_seconds: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def call(
        self,
        fn: Callable[[], T],
        deadline: Deadline | None = None,
        operation: str = "provider_call",
    ) -> T:
        stop = stop_after_attempt(self.max_attempts)
        if deadline is not None:
            stop = stop_any(stop, self._deadline_stop(deadline))

        retrying = Retrying(
            stop=stop,
            wait=wait_fixed(self.delay_seconds),
            retry=retry_if_exception_type((RateLimitError, ProviderUnavailableError)),
            sleep=self.sleep,
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "provider_retry",
                operation=operation,
                attempt=state.attempt_number,
                delay_seconds=self.delay_seconds,
                error=str(state.outcome.exception()),
            ),
        )

        def attempt() -> T:
            if deadline is not None:
                deadline.check(operation)
            return fn()

        return retrying(attempt)

    def _deadline_stop(self, deadline: Deadline):
        # Give up rather than sleep past the budget
        def stop(retry_state) -> bool:
            return deadline.remaining() <= self.delay_seconds

        return stop
