"""Throttling and quota back-off for generative-model calls."""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt

from studyguide.config import settings
from studyguide.errors import ContentBlockedError, QuotaExceededError, RateLimitedError
from studyguide.models import GenerationResult

logger = logging.getLogger(__name__)


class RateLimiter:
    """Serialize generative calls to at most one start per ``min_interval``.

    One instance is shared by every slide pipeline of the application, so
    concurrent pipelines queue behind the same last-call timestamp.  Clock
    and sleep are injectable for tests.

    Quota responses (``RateLimitedError``) are retried with the delay the
    server suggested, or ``default_retry_delay`` when it gave none, up to
    ``max_attempts`` attempts in total.
    """

    def __init__(
        self,
        min_interval: float | None = None,
        *,
        max_attempts: int | None = None,
        default_retry_delay: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = settings.min_call_interval_seconds if min_interval is None else min_interval
        self.max_attempts = max_attempts or settings.max_generation_attempts
        self.default_retry_delay = (
            settings.default_retry_delay_seconds if default_retry_delay is None else default_retry_delay
        )
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    async def wait_turn(self) -> None:
        """Sleep off whatever remains of the minimum spacing, then claim the slot."""
        async with self._lock:
            if self._last_call is not None:
                remaining = self.min_interval - (self._clock() - self._last_call)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call = self._clock()

    def _retry_delay(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return exc.retry_after
        return self.default_retry_delay

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Generative call rate limited (attempt %d), retrying in %.1fs",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    async def call(
        self,
        fn: Callable[..., Awaitable[GenerationResult]],
        *args,
        **kwargs,
    ) -> GenerationResult:
        """Run ``fn(*args, **kwargs)`` under the limiter.

        Raises ``QuotaExceededError`` once the retry budget is spent and
        ``ContentBlockedError`` straight away on a safety block.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._retry_delay,
            retry=retry_if_exception_type(RateLimitedError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.wait_turn()
                    result = await fn(*args, **kwargs)
                    if result.block_reason:
                        raise ContentBlockedError(
                            f"Content blocked by the model: {result.block_reason}",
                            reason=result.block_reason,
                        )
        except RetryError as exc:
            last = exc.last_attempt.exception()
            quota = getattr(last, "quota", None)
            message = f"Generative quota exceeded after {self.max_attempts} attempts"
            if quota:
                message += f" (quota {quota})"
            raise QuotaExceededError(message, quota=quota) from last
        return result
