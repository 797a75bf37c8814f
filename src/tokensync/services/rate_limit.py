"""Outbound RPC rate governance.

``RateGovernor`` hands out permits per key using one of three strategies
(sliding window, fixed window, token bucket). ``RequestQueue`` serializes
coroutine calls through a governor: it waits out local rate limits, retries
generic failures with a linearly growing delay and resolves each caller's
future with the final result or error.
"""

import asyncio
import itertools
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

import structlog

from tokensync.services.exceptions import (
    PermanentError,
    ProviderRangeTooLargeError,
    ProviderRateLimitError,
    QueueClosedError,
    QueueFullError,
    RateLimitedError,
)

logger = structlog.get_logger()

T = TypeVar("T")

Strategy = Literal["sliding", "fixed", "token_bucket"]


@dataclass(frozen=True)
class RateLimitInfo:
    """Outcome of a permit request, identical in shape for every strategy.

    ``reset_time`` is expressed on the governor's clock (seconds).
    ``retry_after`` is None when the permit was granted.
    """

    limit: int
    remaining: int
    reset_time: float
    retry_after: float | None = None

    @property
    def allowed(self) -> bool:
        return self.retry_after is None


class SlidingWindow:
    """Counts permits granted within the trailing window."""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._hits: dict[str, deque[float]] = {}

    def hit(self, key: str, now: float) -> RateLimitInfo:
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - self.window:
            hits.popleft()

        if len(hits) >= self.limit:
            oldest = hits[0]
            return RateLimitInfo(
                limit=self.limit,
                remaining=0,
                reset_time=oldest + self.window,
                retry_after=max(oldest + self.window - now, 0.0),
            )

        hits.append(now)
        return RateLimitInfo(
            limit=self.limit,
            remaining=self.limit - len(hits),
            reset_time=hits[0] + self.window,
        )

    def cleanup(self, now: float) -> int:
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self.window]
        for key in stale:
            del self._hits[key]
        return len(stale)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


class FixedWindow:
    """Counts permits per aligned window ``floor(now / window)``."""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._counts: dict[str, tuple[int, int]] = {}

    def hit(self, key: str, now: float) -> RateLimitInfo:
        window_index = math.floor(now / self.window)
        reset_time = (window_index + 1) * self.window

        current_index, count = self._counts.get(key, (window_index, 0))
        if current_index != window_index:
            count = 0

        if count >= self.limit:
            return RateLimitInfo(
                limit=self.limit,
                remaining=0,
                reset_time=reset_time,
                retry_after=max(reset_time - now, 0.0),
            )

        self._counts[key] = (window_index, count + 1)
        return RateLimitInfo(
            limit=self.limit, remaining=self.limit - count - 1, reset_time=reset_time
        )

    def cleanup(self, now: float) -> int:
        window_index = math.floor(now / self.window)
        stale = [k for k, (index, _) in self._counts.items() if index < window_index]
        for key in stale:
            del self._counts[key]
        return len(stale)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._counts.clear()
        else:
            self._counts.pop(key, None)


class TokenBucket:
    """Bucket of ``limit`` tokens refilled continuously at ``limit / window``."""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._buckets: dict[str, tuple[float, float]] = {}

    @property
    def _seconds_per_token(self) -> float:
        return self.window / self.limit

    def hit(self, key: str, now: float) -> RateLimitInfo:
        tokens, last_refill = self._buckets.get(key, (float(self.limit), now))
        elapsed = max(now - last_refill, 0.0)
        tokens = min(float(self.limit), tokens + elapsed / self.window * self.limit)

        if tokens < 1:
            self._buckets[key] = (tokens, now)
            retry_after = (1 - tokens) * self._seconds_per_token
            return RateLimitInfo(
                limit=self.limit,
                remaining=0,
                reset_time=now + retry_after,
                retry_after=retry_after,
            )

        tokens -= 1
        self._buckets[key] = (tokens, now)
        return RateLimitInfo(
            limit=self.limit,
            remaining=math.floor(tokens),
            reset_time=now + (self.limit - tokens) * self._seconds_per_token,
        )

    def cleanup(self, now: float) -> int:
        # A bucket idle for a full window is full again, identical to a fresh one
        stale = [k for k, (_, last) in self._buckets.items() if now - last >= self.window]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)


_STRATEGIES = {
    "sliding": SlidingWindow,
    "fixed": FixedWindow,
    "token_bucket": TokenBucket,
}


class RateGovernor:
    """Per-key permit issuer.

    Example:
        governor = RateGovernor(limit=5, window_ms=1000, strategy="token_bucket")
        info = governor.acquire("rpc")  # raises RateLimitedError when exhausted
    """

    def __init__(
        self,
        limit: int,
        window_ms: int,
        strategy: Strategy = "sliding",
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if strategy not in _STRATEGIES:
            raise ValueError(f"Unknown rate limit strategy: {strategy}")

        self.limit = limit
        self.window_ms = window_ms
        self.strategy = strategy
        self._clock = clock
        self._impl = _STRATEGIES[strategy](limit, window_ms / 1000)

    def check(self, key: str = "global") -> RateLimitInfo:
        """Consume a permit if one is available; never raises."""
        return self._impl.hit(key, self._clock())

    def acquire(self, key: str = "global") -> RateLimitInfo:
        """Consume a permit.

        Raises:
            RateLimitedError: No permit available; ``retry_after`` says when to retry
        """
        info = self.check(key)
        if info.retry_after is not None:
            logger.debug("rate_limit.limited", key=key, retry_after=round(info.retry_after, 3))
            raise RateLimitedError(info.retry_after)
        return info

    def cleanup(self) -> int:
        """Drop idle per-key state; returns the number of keys removed."""
        return self._impl.cleanup(self._clock())

    def reset(self, key: str | None = None) -> None:
        self._impl.reset(key)


@dataclass
class _QueueItem:
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    added_at: float
    id: int
    attempts: int = field(default=0)


class RequestQueue:
    """FIFO executor that runs one call at a time under a RateGovernor.

    - Local rate limit: the item goes back to the head of the queue and the
      worker sleeps ``retry_after`` seconds.
    - Provider rate limit (429): the item goes back to the head of the queue
      without using up an attempt; the worker sleeps ``retry_delay`` seconds.
    - Any other exception: retried after ``retry_delay * attempts`` seconds
      until ``retry_attempts`` attempts were made, then raised to the caller.
    - Exceptions listed in ``fatal_errors`` are raised to the caller at once.
    """

    def __init__(
        self,
        governor: RateGovernor,
        key: str = "rpc",
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        max_size: int = 1000,
        max_wait: float | None = None,
        cleanup_interval: float | None = None,
        fatal_errors: tuple[type[BaseException], ...] = (
            PermanentError,
            ProviderRangeTooLargeError,
        ),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.governor = governor
        self.key = key
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.max_size = max_size
        self.max_wait = max_wait
        self.cleanup_interval = cleanup_interval
        self.fatal_errors = fatal_errors
        self._sleep = sleep
        self._clock = clock

        self._items: deque[_QueueItem] = deque()
        self._wakeup = asyncio.Event()
        self._ids = itertools.count(1)
        self._worker: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._inflight: _QueueItem | None = None
        self._closed = False
        self.processing = False

    @property
    def size(self) -> int:
        return len(self._items)

    def start(self) -> None:
        """Start the worker (and cleanup timer) on the running loop; idempotent."""
        if self._closed:
            raise QueueClosedError("Request queue is closed")
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"request-queue-{self.key}")
        if self.cleanup_interval and (self._cleanup_task is None or self._cleanup_task.done()):
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue ``fn`` and wait for its result.

        Raises:
            QueueFullError: ``max_size`` items are already pending
            QueueClosedError: The queue was closed before ``fn`` completed
        """
        if self._closed:
            raise QueueClosedError("Request queue is closed")
        if len(self._items) >= self.max_size:
            raise QueueFullError(f"Request queue is full ({self.max_size} pending)")

        future = asyncio.get_running_loop().create_future()
        self._items.append(
            _QueueItem(fn=fn, future=future, added_at=self._clock(), id=next(self._ids))
        )
        self._wakeup.set()
        self.start()
        return await future

    async def close(self) -> None:
        """Stop the worker and fail every pending call with QueueClosedError."""
        self._closed = True
        for task in (self._worker, self._cleanup_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        pending = list(self._items)
        if self._inflight is not None:
            pending.append(self._inflight)
        self._items.clear()
        self._inflight = None
        for item in pending:
            if not item.future.done():
                item.future.set_exception(QueueClosedError("Request queue was closed"))

        logger.info("request_queue.closed", key=self.key)

    async def _run(self) -> None:
        while True:
            if not self._items:
                self.processing = False
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            self.processing = True
            item = self._items.popleft()
            self._inflight = item
            if item.future.done():
                # Caller went away (cancelled)
                continue

            if self.max_wait is not None and self._clock() - item.added_at > self.max_wait:
                item.future.set_exception(TimeoutError("Queue wait time exceeded"))
                logger.warning("request_queue.item_expired", item_id=item.id)
                continue

            try:
                self.governor.acquire(self.key)
            except RateLimitedError as e:
                self._items.appendleft(item)
                self._inflight = None
                await self._sleep(e.retry_after)
                continue

            try:
                result = await item.fn()
            except self.fatal_errors as e:
                if not item.future.done():
                    item.future.set_exception(e)
            except ProviderRateLimitError as e:
                # Provider throttling does not count against the item's attempts
                logger.warning(
                    "request_queue.provider_rate_limited",
                    item_id=item.id,
                    retry_after=self.retry_delay,
                    error=str(e),
                )
                self._items.appendleft(item)
                self._inflight = None
                await self._sleep(self.retry_delay)
            except Exception as e:
                item.attempts += 1
                if item.attempts < self.retry_attempts:
                    logger.warning(
                        "request_queue.item_retry",
                        item_id=item.id,
                        attempts=item.attempts,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await self._sleep(self.retry_delay * item.attempts)
                    self._items.appendleft(item)
                    self._inflight = None
                else:
                    logger.error(
                        "request_queue.item_failed",
                        item_id=item.id,
                        attempts=item.attempts,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    if not item.future.done():
                        item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)
            finally:
                if self._inflight is item and item.future.done():
                    self._inflight = None

    async def _cleanup_loop(self) -> None:
        assert self.cleanup_interval
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.governor.cleanup()
            if removed:
                logger.debug("rate_limit.cleanup", removed_keys=removed)
