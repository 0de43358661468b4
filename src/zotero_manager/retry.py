"""Rate-limit pause gate and retry loop for outbound Zotero API calls.

One :class:`RetryController` lives per client. Its :class:`RateLimitState`
is the only process-wide mutable state besides the cache: when the remote
signals rate limiting, every operation started afterwards waits for the
pause to expire before touching the network.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from zotero_manager.errors import ErrorKind, ZoteroError, classify, parse_wait_hint

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_BASE_DELAY = 5.0
TRANSIENT_BASE_DELAY = 1.0
RATE_WINDOW_SECONDS = 60.0


@dataclass
class RateLimitState:
    request_count: int = 0
    window_start: float = 0.0
    backoff_until: float | None = None


@dataclass(frozen=True)
class RetryEvent:
    attempt: int
    kind: ErrorKind
    delay: float
    error: ZoteroError


class RetryController:
    """Runs operations through the pause gate with bounded retries.

    ``sleep`` and ``clock`` are injectable so tests can run the schedule
    without waiting.
    """

    def __init__(
        self,
        max_retries: int = 3,
        timeout: float | None = 30.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_retry: Callable[[RetryEvent], None] | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._on_retry = on_retry
        self.state = RateLimitState(window_start=clock())

    def paused_until(self) -> float | None:
        until = self.state.backoff_until
        if until is not None and self._clock() >= until:
            return None
        return until

    def pause_remaining(self) -> float:
        until = self.paused_until()
        return max(0.0, until - self._clock()) if until is not None else 0.0

    def pause_for(self, seconds: float) -> None:
        until = self._clock() + seconds
        # Never shorten a pause another operation already set
        if self.state.backoff_until is None or until > self.state.backoff_until:
            self.state.backoff_until = until

    def note_backoff(self, headers: Mapping[str, str] | None) -> None:
        """Honor a ``Backoff`` hint sent on a successful response."""
        if not headers:
            return
        raw = headers.get("Backoff")
        if raw is None:
            return
        seconds = parse_wait_hint({"Backoff": raw})
        if seconds:
            logger.warning(f"remote requested backoff of {seconds:g}s")
            self.pause_for(seconds)

    async def _wait_for_pause(self) -> None:
        # Re-read after every sleep: the pause may have been extended meanwhile
        while self.state.backoff_until is not None:
            wait = self.state.backoff_until - self._clock()
            if wait <= 0:
                self.state.backoff_until = None
                return
            logger.warning(f"rate limit: waiting {wait:.1f}s before request")
            await self._sleep(wait)

    def _count_request(self) -> None:
        now = self._clock()
        if now - self.state.window_start >= RATE_WINDOW_SECONDS:
            self.state.window_start = now
            self.state.request_count = 0
        self.state.request_count += 1

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.timeout and self.timeout > 0:
            return await asyncio.wait_for(operation(), self.timeout)
        return await operation()

    async def run(self, operation: Callable[[], Awaitable[T]], retries: int | None = None) -> T:
        """Call ``operation`` until it succeeds or the error is not retryable.

        ``operation`` is invoked once per attempt, so each attempt gets its own
        coroutine and its own timeout.
        """
        retries_left = self.max_retries if retries is None else retries
        while True:
            await self._wait_for_pause()
            self._count_request()
            try:
                return await self._attempt(operation)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                error = classify(exc)
                if error is not exc:
                    error.__cause__ = exc
                delay = self._schedule(error, retries_left)
                if delay is None:
                    raise error
                attempt = self.max_retries - retries_left + 1
                logger.warning(
                    f"{error.kind.value} error (status={error.status_code}); "
                    f"retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                if self._on_retry is not None:
                    self._on_retry(RetryEvent(attempt=attempt, kind=error.kind, delay=delay, error=error))
                if error.kind is not ErrorKind.RATE_LIMIT and delay > 0:
                    await self._sleep(delay)
                retries_left -= 1

    def _schedule(self, error: ZoteroError, retries_left: int) -> float | None:
        """Update pause state for ``error``; return the retry delay or None to give up."""
        n = self.max_retries - retries_left
        if error.retry_after:
            self.pause_for(error.retry_after)
        if error.kind is ErrorKind.RATE_LIMIT:
            if not error.retry_after:
                self.pause_for(RATE_LIMIT_BASE_DELAY * (2 ** n))
            if retries_left <= 0:
                return None
            # The pause gate does the waiting on the next attempt
            until = self.state.backoff_until or self._clock()
            return max(0.0, until - self._clock())
        if error.kind in (ErrorKind.TRANSIENT, ErrorKind.PRECONDITION):
            if retries_left <= 0:
                return None
            return TRANSIENT_BASE_DELAY * (n + 1)
        return None
