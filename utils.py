#!/usr/bin/env python3
"""
Utility classes and functions for the analysis pipeline.

This module contains the concurrency primitives shared by the orchestrator,
the fetcher and the classification client (bounded worker pool, cancellation
token, retry helper) along with small date and string helpers.
"""

from asyncio import CancelledError, Event, FIRST_COMPLETED, ensure_future, gather, sleep, wait
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from dateutil.relativedelta import relativedelta

from config import get_logger
from errors import OperationCancelledError

logger = get_logger("utils")

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation shared by every awaitable in one run.

    Workers check the token at safe points with `raise_if_cancelled()` and
    route network awaits through `wrap()` so that in-flight requests fail fast
    once `cancel()` is called.
    """

    def __init__(self) -> None:
        self._event = Event()
        self._reason: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[BaseException]:
        return self._reason

    def cancel(self, reason: Any = None) -> None:
        """Request cancellation. Only the first call's reason is kept.

        Args:
            reason: An exception instance to raise, a message string, or None
                    for a default `OperationCancelledError`.
        """
        if self._reason is not None:
            return
        if isinstance(reason, BaseException):
            self._reason = reason
        elif isinstance(reason, str) and reason:
            self._reason = OperationCancelledError(reason)
        else:
            self._reason = OperationCancelledError()
        logger.debug("Cancellation requested: %s", self._reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self._reason

    async def wait(self) -> None:
        await self._event.wait()

    async def wrap(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it as soon as the token is cancelled."""
        task = ensure_future(awaitable)
        if self._reason is not None:
            task.cancel()
            raise self._reason
        waiter = ensure_future(self._event.wait())
        try:
            done, _ = await wait({task, waiter}, return_when=FIRST_COMPLETED)
        except CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise self._reason


async def async_pool(
    items: Sequence[T],
    worker: Callable[[T, int, Optional[CancellationToken]], Awaitable[R]],
    concurrency: int,
    token: Optional[CancellationToken] = None,
) -> List[R]:
    """Run `worker` over `items` with at most `concurrency` calls in flight.

    Runners pull the next unclaimed index from a shared cursor, so fast items
    free a slot for the next one instead of waiting on a fixed partition.
    Results come back in input order regardless of completion order.

    Raises:
        ValueError: if `concurrency` is not a positive integer.
        The token's reason: if cancellation was requested before or during the run.
    """
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency <= 0:
        raise ValueError("concurrency must be a positive integer")

    total = len(items)
    if total == 0:
        return []

    if token is not None:
        token.raise_if_cancelled()

    results: List[Any] = [None] * total
    next_index = 0

    async def runner() -> None:
        nonlocal next_index
        while True:
            if token is not None:
                token.raise_if_cancelled()
            current = next_index
            if current >= total:
                return
            next_index = current + 1
            results[current] = await worker(items[current], current, token)

    outcomes = await gather(*(runner() for _ in range(min(concurrency, total))), return_exceptions=True)

    if token is not None:
        token.raise_if_cancelled()
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results


def subtract_months(reference: datetime, months: int) -> datetime:
    """Subtract whole calendar months, clamping the day to the target month's length.

    March 31 minus one month is February 28 (29 in leap years).
    """
    return reference - relativedelta(months=max(0, months))


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given (0-based) retry attempt."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int, token: Optional[CancellationToken] = None):
        """Sleep for the calculated delay, waking early if `token` is cancelled."""
        delay = self.calculate_delay(attempt)
        if delay <= 0:
            return
        logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
        if token is None:
            await sleep(delay)
        else:
            await token.wrap(sleep(delay))
