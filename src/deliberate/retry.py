"""Single-retry helper with turn budgets and cancellable backoff.

A remote call is attempted at most twice. The second attempt only happens
when the failure is transient, the outer turn still has enough time left
after the backoff, and nobody aborted the turn while we slept.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from deliberate.errors import AnalysisError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy: one retry after a jittered fixed backoff."""

    max_attempts: int = 2
    backoff_s: float = 0.8
    #: Backoff varies by up to this fraction either side of ``backoff_s``.
    jitter_ratio: float = 0.25
    #: Skip the retry when less than this would remain after the backoff.
    min_remaining_budget_s: float = 2.0

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if not 1 <= self.max_attempts <= 2:
            raise ValueError("RetryPolicy.max_attempts must be 1 or 2")
        if self.backoff_s < 0:
            raise ValueError("RetryPolicy.backoff_s must be >= 0")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("RetryPolicy.jitter_ratio must be in [0, 1)")
        if self.min_remaining_budget_s < 0:
            raise ValueError("RetryPolicy.min_remaining_budget_s must be >= 0")


@dataclass(frozen=True)
class TurnBudget:
    """Deadline for one turn: a monotonic start time plus a duration."""

    started_at: float
    budget_s: float

    @classmethod
    def start(cls, budget_s: float) -> TurnBudget:
        return cls(started_at=time.monotonic(), budget_s=budget_s)

    def elapsed_s(self) -> float:
        return time.monotonic() - self.started_at

    def remaining_s(self) -> float:
        return self.budget_s - self.elapsed_s()


def compute_backoff_delay(policy: RetryPolicy) -> float:
    """Return the backoff for the single retry, jittered around ``backoff_s``."""
    base = policy.backoff_s
    if base <= 0 or policy.jitter_ratio == 0:
        return max(0.0, base)
    spread = base * policy.jitter_ratio
    return random.uniform(base - spread, base + spread)  # noqa: S311


async def cancellable_sleep(delay_s: float, abort: asyncio.Event | None) -> bool:
    """Sleep for *delay_s* unless *abort* fires first.

    Returns True when the full delay elapsed, False when aborted.
    """
    if abort is None:
        await asyncio.sleep(delay_s)
        return True
    if abort.is_set():
        return False
    try:
        await asyncio.wait_for(abort.wait(), timeout=delay_s)
    except asyncio.TimeoutError:
        return True
    return False


def should_retry_analysis(exc: BaseException) -> bool:
    """Return True when an analysis call failure is transient.

    Contract:
    - Cancellation is never retried.
    - AnalysisError is retried only when the client marked it retryable
      (timeouts, connection failures, 5xx statuses).
    - Anything else, payload errors included, is not retried.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, AnalysisError):
        return exc.retryable
    return False


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    budget: TurnBudget | None = None,
    abort: asyncio.Event | None = None,
    should_retry: Callable[[BaseException], bool] = should_retry_analysis,
    label: str = "call",
) -> T:
    """Run an async factory, retrying once when allowed.

    The original error is re-raised when the retry is skipped for budget or
    abort reasons.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            delay = compute_backoff_delay(policy)
            if budget is not None:
                remaining = budget.remaining_s()
                if remaining - delay < policy.min_remaining_budget_s:
                    logger.info(
                        "Skipping %s retry: %.2fs left in turn budget, backoff %.2fs",
                        label,
                        remaining,
                        delay,
                    )
                    raise
            logger.debug("Retrying %s in %.2fs after %s", label, delay, exc)
            if not await cancellable_sleep(delay, abort):
                logger.info("Abandoning %s retry: turn aborted during backoff", label)
                raise

    # Unreachable: every iteration returns or raises.
    raise RuntimeError("retry_async exhausted without a result")  # pragma: no cover
