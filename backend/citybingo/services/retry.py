"""Retry with exponential backoff and an optional verification predicate.

One helper shared by the durable writer (write → re-read → compare) and the
OpenAI client (retry on 429/5xx and connection errors).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class BackoffPolicy:
    """``max_attempts`` tries; the delay after attempt *n* is base * multiplier**(n-1)."""
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the 1-based *attempt* failed."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def schedule(self) -> list[float]:
        return [self.delay_for(n) for n in range(1, self.max_attempts + 1)]


@dataclass
class RetryState:
    """Bookkeeping for one retry run (mirrors what the caller may want to log)."""
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: BaseException | None = None

    @property
    def total_wait_seconds(self) -> float:
        return sum(self.delays)


class RetryExhausted(Exception):
    """All attempts failed or never passed verification."""

    def __init__(self, message: str, state: RetryState):
        super().__init__(message)
        self.state = state


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    verify: Callable[[T], Awaitable[bool] | bool] | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
    should_retry: Callable[[BaseException], bool] | None = None,
    settle: Callable[[], Awaitable[T | None]] | None = None,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
    state: RetryState | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds and passes *verify*.

    - Exceptions in *retry_on* (and accepted by *should_retry*) count as a
      failed attempt; anything else propagates immediately.
    - Without *settle*, no delay follows the final attempt.
    - With *settle*, the final attempt is also followed by its delay and then
      ``settle()`` is awaited once; a non-None result is returned as success.
      This lets eventually-consistent stores converge before giving up.
    """
    state = state if state is not None else RetryState()

    for attempt in range(1, policy.max_attempts + 1):
        state.attempts = attempt
        try:
            result = await operation(attempt)
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            state.last_error = exc
            logger.warning(
                "%s failed (attempt %d/%d): %s: %s",
                label, attempt, policy.max_attempts, type(exc).__name__, exc,
            )
        else:
            if verify is None:
                return result
            verified = verify(result)
            if asyncio.iscoroutine(verified):
                verified = await verified
            if verified:
                return result
            logger.warning(
                "%s not verified (attempt %d/%d)", label, attempt, policy.max_attempts,
            )

        is_last = attempt >= policy.max_attempts
        if is_last and settle is None:
            break

        delay = policy.delay_for(attempt)
        state.delays.append(delay)
        await sleep(delay)

    if settle is not None:
        settled = await settle()
        if settled is not None:
            logger.info("%s converged after %d attempts", label, state.attempts)
            return settled

    raise RetryExhausted(
        f"{label} failed after {state.attempts} attempts "
        f"(waited {state.total_wait_seconds:.1f}s)",
        state,
    )
