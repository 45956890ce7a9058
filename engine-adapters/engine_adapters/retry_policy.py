import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from engine_adapters.errors import TerminalError
from engine_adapters.redaction import redact_text


API_CALL_ATTEMPTS = 2
API_CALL_DELAY_SECONDS = 3

# Delays before attempts 1..6. Long enough to ride out a hosted release server's
# two hour maintenance window.
RECONCILE_ATTEMPTS = 6
RECONCILE_DELAYS_SECONDS = (0, 60, 300, 600, 900, 1800)
RECONCILE_OVERFLOW_DELAY_SECONDS = 3600

_logger = logging.getLogger("octoargosync.retry")


class RetrySchedule:
    """A named retry schedule that never retries a ``TerminalError``.

    ``delays[n]`` is the wait before attempt ``n + 1``; the first entry is ignored
    because the first attempt always runs immediately. Attempts beyond the table
    wait ``overflow_delay`` seconds.
    """

    def __init__(
        self,
        name: str,
        attempts: int,
        delays: Sequence[float],
        overflow_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.name = name
        self.attempts = attempts
        self.delays = tuple(delays)
        self.overflow_delay = overflow_delay if overflow_delay is not None else (self.delays[-1] if self.delays else 0)
        self.sleep = sleep
        self.before_sleep = before_sleep or self._log_retry

    def delay_before(self, attempt_number: int) -> float:
        index = attempt_number - 1
        if index < len(self.delays):
            return self.delays[index]
        return self.overflow_delay

    def _wait(self, retry_state: RetryCallState) -> float:
        # tenacity asks for the wait after attempt N failed, i.e. before attempt N + 1
        return self.delay_before(retry_state.attempt_number + 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        _logger.warning(
            "retry.scheduled schedule=%s attempt=%s next_delay_s=%s error=%s",
            self.name,
            retry_state.attempt_number,
            self._wait(retry_state),
            redact_text(str(error)) if error else "",
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait,
            retry=retry_if_not_exception_type(TerminalError),
            sleep=self.sleep,
            before_sleep=self.before_sleep,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable], *args, **kwargs):
        return await self.retrying()(fn, *args, **kwargs)

    def with_before_sleep(self, before_sleep: Callable[[RetryCallState], None]) -> "RetrySchedule":
        return RetrySchedule(self.name, self.attempts, self.delays, self.overflow_delay, self.sleep, before_sleep)


def api_call_schedule(sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> RetrySchedule:
    return RetrySchedule(
        "api-call",
        API_CALL_ATTEMPTS,
        (0, API_CALL_DELAY_SECONDS),
        sleep=sleep,
    )


def reconcile_schedule(
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    before_sleep: Optional[Callable[[RetryCallState], None]] = None,
) -> RetrySchedule:
    return RetrySchedule(
        "reconcile",
        RECONCILE_ATTEMPTS,
        RECONCILE_DELAYS_SECONDS,
        overflow_delay=RECONCILE_OVERFLOW_DELAY_SECONDS,
        sleep=sleep,
        before_sleep=before_sleep,
    )
