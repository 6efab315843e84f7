"""
Exponential backoff for completion requests, built on ``tenacity``.

Only ``NetworkTransient`` is retried.  Anything else, ``NetworkFatal``
included, propagates on the first attempt.  Retrying stops once the next
sleep would push the total elapsed time past ``max_elapsed``; the last
transient error is then re-raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    wait_exponential,
    wait_random,
)
from tenacity.stop import stop_base

from codeloop.errors import NetworkTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class stop_after_elapsed(stop_base):
    """
    Stop when the upcoming sleep would carry the total past *max_elapsed*.

    Elapsed time is the larger of the wall time since the first attempt and
    the time spent sleeping so far.
    """

    def __init__(self, max_elapsed: float) -> None:
        self.max_elapsed = max_elapsed

    def __call__(self, retry_state: RetryCallState) -> bool:
        elapsed = max(retry_state.seconds_since_start or 0.0, retry_state.idle_for)
        if elapsed + retry_state.upcoming_sleep <= self.max_elapsed:
            return False
        logger.warning(
            "Giving up after %d attempts (%.1fs)",
            retry_state.attempt_number,
            elapsed,
        )
        return True


@dataclass
class RetryPolicy:
    """
    Backoff settings.

    The n-th retry waits ``initial_delay * multiplier ** (n - 1)`` seconds,
    capped at ``max_delay``, plus up to ``jitter`` seconds of random spread.
    """

    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    max_elapsed: float = 60.0
    jitter: float = 0.1

    def retrying(self, *, sleep: Sleep = asyncio.sleep) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            sleep=sleep,
            stop=stop_after_elapsed(self.max_elapsed),
            wait=wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.multiplier,
                max=self.max_delay,
            )
            + wait_random(0, self.jitter),
            retry=retry_if_exception_type(NetworkTransient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Await ``func()`` until it succeeds, retrying transient network errors.

    Parameters
    ----------
    func:
        Zero-argument coroutine factory; called once per attempt.
    policy:
        Backoff settings.  Defaults to ``RetryPolicy()``.
    sleep:
        Injectable for tests.
    """
    retrying = (policy or RetryPolicy()).retrying(sleep=sleep)
    return await retrying(func)
