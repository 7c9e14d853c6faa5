"""
Rate Limiter and Retry Executor

Every external call made during ingestion (catalog pages, enrichment
lookups, embeddings, store reads and writes) goes through a single
``RetryExecutor``. It provides:

- Minimum spacing between call *starts* of the same call class
  (pyrate-limiter buckets, one per class)
- Bounded retries of transient failures with linear backoff
  (``base_delay * attempt``)
- Optional per-attempt timeout, treated as a transient failure
- Immediate propagation of non-retryable failures

Retries are driven by Tenacity; classification lives in
``catalog_ingest.core.errors.is_transient``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from pyrate_limiter import AbstractClock, Limiter, Rate
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from .errors import RetryExhaustedError, is_transient

logger = logging.getLogger("ingest.retry")

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------
# Rate Limiter
# ---------------------------------------------------------------------

class _MonotonicClock(AbstractClock):
    """Millisecond clock for pyrate-limiter buckets, backed by an injectable source."""

    def __init__(self, source: Callable[[], float]) -> None:
        self._source = source

    def now(self) -> int:
        return int(self._source() * 1000)


class RateLimiter:
    """
    Enforces a minimum interval between the starts of calls in the same class.

    Each throttled class gets its own pyrate-limiter ``Limiter`` holding a
    single ``Rate(1, interval)`` bucket: at most one start per interval.
    Acquisition never blocks the event loop; a caller that finds the bucket
    full yields with an async sleep and tries again.
    """

    def __init__(
        self,
        intervals: Optional[Mapping[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        poll_interval: float = 0.005,
    ) -> None:
        """
        Parameters
        ----------
        intervals : Optional[Mapping[str, float]]
            Minimum seconds between call starts, keyed by call class.
            Classes not listed are not throttled.
        clock : Callable[[], float]
            Monotonic clock in seconds, injectable for tests.
        sleep : Callable[[float], Awaitable[None]]
            Async sleep, injectable for tests.
        poll_interval : float
            Seconds to wait between attempts while a bucket is full.
        """
        self._intervals: Dict[str, float] = dict(intervals or {})
        self._clock = _MonotonicClock(clock)
        self._sleep = sleep
        self.poll_interval = poll_interval
        self._limiters: Dict[str, Limiter] = {}

    def interval_for(self, call_class: Optional[str]) -> float:
        if call_class is None:
            return 0.0
        return self._intervals.get(call_class, 0.0)

    def _limiter_for(self, call_class: str, interval: float) -> Limiter:
        limiter = self._limiters.get(call_class)
        if limiter is None:
            # One extra millisecond covers the truncation of bucket timestamps.
            interval_ms = math.ceil(interval * 1000) + 1
            limiter = Limiter(
                [Rate(1, interval_ms)],
                clock=self._clock,
                raise_when_fail=False,
                max_delay=None,
            )
            self._limiters[call_class] = limiter
        return limiter

    async def acquire(self, call_class: Optional[str]) -> None:
        """
        Wait until a call of *call_class* may start, then record its start.
        """
        interval = self.interval_for(call_class)
        if interval <= 0:
            return

        limiter = self._limiter_for(call_class, interval)
        while not limiter.try_acquire(call_class):
            await self._sleep(min(self.poll_interval, interval))


# ---------------------------------------------------------------------
# Retry Executor
# ---------------------------------------------------------------------

class RetryExecutor:
    """
    Runs external operations under rate limiting and bounded retries.

    The executor is stateless apart from its rate limiter and is safe to share
    across concurrently running item pipelines.
    """

    def __init__(
        self,
        retry_limit: int,
        base_delay: float,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """
        Parameters
        ----------
        retry_limit : int
            Number of retries after the first attempt.
        base_delay : float
            Backoff unit in seconds; retry *n* waits ``base_delay * n``.
        rate_limiter : Optional[RateLimiter]
            Shared limiter. A no-op limiter is used when omitted.
        sleep : Callable[[float], Awaitable[None]]
            Async sleep used between retries.
        """
        self.retry_limit = retry_limit
        self.base_delay = base_delay
        self.rate_limiter = rate_limiter or RateLimiter()
        self._sleep = sleep

    async def execute(
        self,
        operation: Operation[T],
        context: str,
        *,
        call_class: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run *operation* until it succeeds, fails permanently, or runs out of retries.

        Parameters
        ----------
        operation : Callable[[], Awaitable[T]]
            Zero-argument coroutine factory; called once per attempt.
        context : str
            Human-readable description used in logs and in the final error.
        call_class : Optional[str]
            Rate-limit class for this call (e.g. ``"catalog"``).
        timeout : Optional[float]
            Per-attempt timeout in seconds.

        Returns
        -------
        T
            The operation's result.

        Raises
        ------
        RetryExhaustedError
            If every attempt failed transiently.
        Exception
            Any non-transient failure, unchanged, on the attempt it occurred.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_limit + 1),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry(context),
            sleep=self._sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await self.rate_limiter.acquire(call_class)
                    if timeout is None:
                        return await operation()
                    return await asyncio.wait_for(operation(), timeout=timeout)
        except RetryError as exc:
            last = exc.last_attempt
            cause = last.exception()
            logger.error(
                "Final attempt failed for %s (%s): %s",
                context,
                type(cause).__name__,
                cause,
            )
            raise RetryExhaustedError(context, last.attempt_number) from cause

        # AsyncRetrying either returns from inside the loop or raises.
        raise AssertionError("unreachable")

    def _log_retry(self, context: str) -> Callable[[RetryCallState], None]:
        retry_limit = self.retry_limit

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "Retry %d/%d for %s in %.2fs (%s: %s)",
                state.attempt_number,
                retry_limit,
                context,
                delay,
                type(exc).__name__,
                exc,
            )

        return _before_sleep
