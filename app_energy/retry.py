"""Deadline tracking and bounded retries around provider calls."""

from __future__ import annotations

from typing import Any, Callable, Optional
import logging
import time

from .errors import DeadlineExceededError, ProviderTransientError

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget shared by every provider call of one request.

    A deadline constructed with `timeout_s=None` never expires.
    """

    def __init__(self, timeout_s: Optional[float], clock=time.monotonic):
        self._clock = clock
        self.timeout_s = timeout_s
        self._start = clock()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline."""
        if self.timeout_s is None:
            return None
        return self.timeout_s - (self._clock() - self._start)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, step: str) -> None:
        """Raise DeadlineExceededError if the budget is spent.

        Args:
            step (str): Name of the step about to run, used in the message.
        """
        if self.expired():
            raise DeadlineExceededError(
                f"Processing timed out before '{step}' "
                f"(limit {self.timeout_s:g}s). Please try a smaller area."
            )


def call_with_retry(
    func: Callable[..., Any],
    *args,
    deadline: Deadline,
    step: str,
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Any:
    """Call `func` and retry transient provider failures with backoff.

    The delay before attempt k+1 is `base_delay_s * 2**(k-1)`, shortened so it
    never sleeps past the deadline. Non-retryable errors propagate at once.

    Args:
        func (Callable): Provider operation to run.
        *args: Positional arguments for `func`.
        deadline (Deadline): Request budget, checked before every attempt.
        step (str): Label for logs and timeout messages.
        max_attempts (int): Total attempts including the first one.
        base_delay_s (float): Delay before the first retry.
        sleep (Callable): Sleep function, injectable for tests.
        **kwargs: Keyword arguments for `func`.

    Returns:
        Any: Whatever `func` returns.

    Raises:
        DeadlineExceededError: If the budget runs out between attempts.
        ProviderTransientError: If every attempt failed transiently.
    """
    attempt = 1
    while True:
        deadline.check(step)
        try:
            return func(*args, **kwargs)
        except ProviderTransientError as e:
            if not e.retryable:
                raise
            if attempt >= max_attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s", step, attempt, e
                )
                raise ProviderTransientError(
                    f"{step} failed: {e.message}. "
                    "Reduce the area or retry later."
                ) from e
            delay = base_delay_s * (2 ** (attempt - 1))
            remaining = deadline.remaining()
            if remaining is not None:
                delay = min(delay, max(remaining, 0.0))
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                step,
                attempt,
                max_attempts,
                e,
                delay,
            )
            sleep(delay)
            attempt += 1
