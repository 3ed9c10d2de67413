"""
Retry policy shared by validation, rename, move and delete.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Type, TypeVar

T = TypeVar("T")

Backoff = Callable[[int], float]


def fixed(seconds: float) -> Backoff:
    """Backoff that always waits ``seconds``."""
    return lambda _attempt: seconds


def exponential(base: float, factor: float = 2.0) -> Backoff:
    """Backoff of ``base * factor ** (attempt - 1)``: base, 2*base, 4*base..."""
    return lambda attempt: base * (factor ** max(0, attempt - 1))


def retry_on(*types: Type[BaseException]) -> Callable[[BaseException], bool]:
    """Build a retryable-error predicate from exception types."""
    return lambda exc: isinstance(exc, types)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with a backoff function.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        backoff: Maps the number of the attempt that just failed (1-based)
            to the delay before the next one.
        retryable: Predicate deciding whether an exception is worth retrying.
            Non-retryable exceptions propagate immediately.
        sleep: Sleep function, replaceable in tests.
    """

    max_attempts: int = 3
    backoff: Backoff = field(default=fixed(0.0))
    retryable: Callable[[BaseException], bool] = field(default=retry_on(OSError))
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))

    def wait(self, attempt: int) -> None:
        """Sleep for the delay that follows failed attempt ``attempt``."""
        seconds = self.delay(attempt)
        if seconds > 0:
            self.sleep(seconds)

    def call(
        self,
        fn: Callable[..., T],
        *args,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs,
    ) -> T:
        """
        Call ``fn`` until it succeeds or the attempts are exhausted.

        Args:
            fn: Callable to run.
            on_retry: Optional hook called with (attempt, error) before each wait.

        Returns:
            The value returned by ``fn``.

        Raises:
            The last exception raised by ``fn`` once attempts are exhausted, or
            the first non-retryable one.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                if not self.retryable(e) or attempt >= attempts:
                    raise
                if on_retry is not None:
                    on_retry(attempt, e)
                self.wait(attempt)
        raise AssertionError("unreachable")


