"""Async rate limiter with token bucket algorithm and retry logic.

Gates requests to the content source: a semaphore bounds concurrency, a token
bucket bounds the request rate, and HTTP 429 responses are retried with
backoff (or the server's ``Retry-After`` value).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from Pick_Sync.utils.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE_REQUESTS_PER_MINUTE: float = 20.0
SOURCE_MAX_CONCURRENT: int = 1
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_BACKOFF_DELAYS: list[float] = [2.0, 4.0, 8.0]


class RateLimiter:
    """Async rate limiter combining concurrency control and token bucket.

    Usage::

        limiter = RateLimiter(requests_per_second=20 / 60)

        # execute() takes a factory so that each retry issues a fresh request
        response = await limiter.execute(
            lambda: client.get(url),
            source="reddit",
        )
    """

    def __init__(
        self,
        max_concurrent: int = SOURCE_MAX_CONCURRENT,
        requests_per_second: float = SOURCE_REQUESTS_PER_MINUTE / 60.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_delays: list[float] | None = None,
    ) -> None:
        if requests_per_second <= 0:
            msg = f"requests_per_second must be positive, got {requests_per_second}."
            raise ValueError(msg)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._requests_per_second = requests_per_second
        self._max_retries = max_retries
        self._backoff_delays = (
            backoff_delays if backoff_delays is not None else list(DEFAULT_BACKOFF_DELAYS)
        )

        # Token bucket state
        self._token_interval = 1.0 / requests_per_second
        self._tokens = float(max_concurrent)
        self._max_tokens = float(max_concurrent)
        self._last_refill_time = time.monotonic()
        self._bucket_lock = asyncio.Lock()

        logger.info(
            "RateLimiter initialized: max_concurrent=%d, rate=%.2f req/s, max_retries=%d",
            max_concurrent,
            requests_per_second,
            max_retries,
        )

    async def acquire(self) -> None:
        """Block until both concurrency and rate limits allow a request."""
        await self._semaphore.acquire()
        await self._wait_for_token()

    def release(self) -> None:
        """Release a concurrency slot back to the semaphore."""
        self._semaphore.release()

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        source: str,
    ) -> T:
        """Run ``call()`` under the limits, retrying on rate-limit responses.

        Args:
            call: Zero-argument factory returning a fresh awaitable per attempt.
            source: Source name for log context.

        Returns:
            The result of the awaitable.

        Raises:
            RateLimitExceededError: After exhausting all retries.
        """
        attempt = 0
        while True:
            await self.acquire()
            try:
                return await call()
            except RateLimitExceededError as exc:
                if attempt >= self._max_retries:
                    logger.error(
                        "Rate limit exceeded on %s after %d retries",
                        source,
                        self._max_retries,
                    )
                    raise
                delay = self._get_retry_delay(exc, attempt)
                logger.warning(
                    "Rate limited on %s (attempt %d/%d), retrying in %.1fs",
                    source,
                    attempt + 1,
                    self._max_retries,
                    delay,
                )
            finally:
                self.release()
            await asyncio.sleep(delay)
            attempt += 1

    # ------------------------------------------------------------------
    # Token bucket internals
    # ------------------------------------------------------------------

    async def _wait_for_token(self) -> None:
        """Wait until a token is available in the bucket."""
        while True:
            async with self._bucket_lock:
                self._refill_tokens()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return

            # No token available: sleep for one interval and retry
            await asyncio.sleep(self._token_interval)

    def _refill_tokens(self) -> None:
        """Add tokens based on elapsed time since the last refill."""
        now = time.monotonic()
        elapsed = now - self._last_refill_time
        new_tokens = elapsed * self._requests_per_second
        self._tokens = min(self._max_tokens, self._tokens + new_tokens)
        self._last_refill_time = now

    def _get_retry_delay(self, exc: RateLimitExceededError, attempt: int) -> float:
        """Prefer the server's ``Retry-After``, else the backoff schedule."""
        if exc.retry_after is not None and exc.retry_after > 0:
            return exc.retry_after
        if attempt < len(self._backoff_delays):
            return self._backoff_delays[attempt]
        return self._backoff_delays[-1]
