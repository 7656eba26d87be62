import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from gateway_app.errors import RateLimited

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Per-key sliding-window counters held in process memory.

    Windows are lost on restart and are not shared between processes, so
    N gateway instances allow N times the configured rate. Bursts up to the
    limit inside one window are allowed; this is a counter, not a leaky bucket.
    """

    def __init__(
        self,
        *,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window_seconds
        self._clock = clock
        self._requests: Dict[int, Deque[float]] = {}
        self._tokens: Dict[int, Deque[Tuple[float, int]]] = {}
        self._sweeper_task: asyncio.Task[None] | None = None

    def _evict_requests(self, entry: Deque[float], now: float) -> None:
        cutoff = now - self._window
        while entry and entry[0] < cutoff:
            entry.popleft()

    def _evict_tokens(self, entry: Deque[Tuple[float, int]], now: float) -> None:
        cutoff = now - self._window
        while entry and entry[0][0] < cutoff:
            entry.popleft()

    def check_rpm(self, key_id: int, limit: int) -> None:
        """Admits and records one request, or raises RateLimited.

        A limit of zero or less disables the check.
        """
        if limit <= 0:
            return
        now = self._clock()
        entry = self._requests.setdefault(key_id, deque())
        self._evict_requests(entry, now)

        if len(entry) >= limit:
            raise RateLimited(f"Rate limit exceeded: {limit} requests per minute")

        entry.append(now)

    def request_count(self, key_id: int) -> int:
        entry = self._requests.get(key_id)
        if not entry:
            return 0
        self._evict_requests(entry, self._clock())
        return len(entry)

    def tokens_in_window(self, key_id: int) -> int:
        entry = self._tokens.get(key_id)
        if not entry:
            return 0
        self._evict_tokens(entry, self._clock())
        return sum(tokens for _, tokens in entry)

    def check_tpm(self, key_id: int, limit: int) -> None:
        """Rejects once the tokens recorded in the window reach the limit.

        Tokens are only known after a request completes, so this can only
        block the request after the one that crossed the limit.
        """
        if limit <= 0:
            return
        if self.tokens_in_window(key_id) >= limit:
            raise RateLimited(f"Token rate limit exceeded: {limit} tokens per minute")

    def record_tokens(self, key_id: int, tokens: int) -> None:
        if tokens <= 0:
            return
        entry = self._tokens.setdefault(key_id, deque())
        entry.append((self._clock(), tokens))

    def sweep(self) -> int:
        """Drops expired timestamps and empty windows. Returns windows removed."""
        now = self._clock()
        removed = 0
        for key_id in list(self._requests):
            entry = self._requests[key_id]
            self._evict_requests(entry, now)
            if not entry:
                del self._requests[key_id]
                removed += 1
        for key_id in list(self._tokens):
            entry = self._tokens[key_id]
            self._evict_tokens(entry, now)
            if not entry:
                del self._tokens[key_id]
                removed += 1
        return removed

    @property
    def tracked_keys(self) -> int:
        return len(set(self._requests) | set(self._tokens))

    async def _run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Rate limiter sweep removed %d idle windows", removed)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper_task and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.create_task(
            self._run_sweeper(interval_seconds), name="rate-limit-sweeper"
        )

    async def stop_sweeper(self) -> None:
        if not self._sweeper_task:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None
