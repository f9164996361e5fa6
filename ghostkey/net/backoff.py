"""
ghostkey/net/backoff.py

Purpose:
    Capped exponential backoff shared by every remote call the core makes.

Semantics:
    - Attempts are strictly sequential: attempt N+1 starts only after attempt
      N has failed and its backoff sleep has finished.
    - delay(n) = min(base_delay * 2**n, max_delay), where n is the 1-based
      number of the attempt that just failed.
    - No sleep after the final attempt.
    - A CancellationToken is checked before every attempt and every sleep.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ghostkey.base.config import RetryConfig
from ghostkey.errors import Cancelled

log = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "BackoffPolicy":
        return cls(
            max_attempts=max(1, int(cfg.max_attempts)),
            base_delay=max(0.0, float(cfg.base_delay)),
            max_delay=max(0.0, float(cfg.max_delay)),
        )

    def delay_for(self, attempt: int) -> float:
        """Sleep (seconds) after the given 1-based attempt failed."""
        return min(self.base_delay * (2 ** max(0, attempt)), self.max_delay)


@dataclass(frozen=True)
class RetryEvent:
    """Emitted before each backoff sleep so callers can surface progress."""
    label: str
    attempt: int
    max_attempts: int
    delay: float
    error: BaseException


class CancellationToken:
    """
    Cooperative cancellation flag.

    Retry loops check it before each attempt; once cancelled they raise
    Cancelled without issuing another request.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, label: str = "") -> None:
        if self._event.is_set():
            raise Cancelled(
                f"{label or 'operation'} cancelled",
                details={"reason": self.reason},
            )


async def run_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    is_retryable: Callable[[BaseException], bool],
    on_exhausted: Callable[[BaseException, int], BaseException],
    label: str = "request",
    sleep: SleepFn = asyncio.sleep,
    cancel: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[RetryEvent], None]] = None,
) -> T:
    """
    Run operation(attempt) until it returns, fails fatally, or the attempt
    budget is spent.

    Args:
        operation: coroutine factory, called with the 1-based attempt number.
        policy: attempt budget and delay schedule.
        is_retryable: True for errors worth another attempt. Anything else
            propagates immediately, unchanged.
        on_exhausted: builds the exception raised once the budget is spent,
            from the last retryable error and the number of attempts made.
        sleep: awaitable sleep, injectable so tests can record delays.
        cancel: optional token checked before every attempt and sleep.
        on_retry: optional observer called before each backoff sleep.
    """
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None:
            cancel.raise_if_cancelled(label)
        try:
            return await operation(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= policy.max_attempts:
                log.warning(f"{label}: giving up after {attempt} attempt(s): {exc}")
                raise on_exhausted(exc, attempt) from exc

            delay = policy.delay_for(attempt)
            log.info(
                f"{label}: attempt {attempt}/{policy.max_attempts} failed ({exc}), "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(RetryEvent(label, attempt, policy.max_attempts, delay, exc))
            if cancel is not None:
                cancel.raise_if_cancelled(label)
            await sleep(delay)
