"""
Bounded retry and polling primitives.

`call_with_backoff` retries transient failures with exponential backoff
(tenacity); `poll_until` re-reads external state until a predicate holds or a
deadline passes and reports a typed outcome instead of raising.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import TransientError

logger = logging.getLogger(__name__)


async def call_with_backoff(
    fn: Callable[..., Awaitable[Any]],
    *args,
    attempts: int = 5,
    multiplier: float = 1.0,
    max_wait: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    **kwargs
) -> Any:
    """Await `fn` retrying `retry_on` errors; the last error is re-raised"""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=multiplier, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    result = None
    async for attempt in retrying:
        with attempt:
            result = await fn(*args, **kwargs)
    return result


class PollStatus(Enum):
    """Outcome of a polling loop"""
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass
class PollResult:
    """Result of `poll_until`"""
    status: PollStatus
    value: Any = None
    attempts: int = 0
    elapsed_seconds: float = 0.0
    last_error: Optional[str] = None

    @property
    def satisfied(self) -> bool:
        return self.status == PollStatus.SATISFIED


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    predicate: Callable[[Any], bool],
    timeout: float,
    interval: float,
    abort: Optional[Callable[[Any], bool]] = None,
    description: str = "condition"
) -> PollResult:
    """
    Poll `fetch` until `predicate(value)` holds, `abort(value)` holds, or
    `timeout` seconds elapse. Transient fetch errors count as a failed poll.

    Args:
        fetch: Coroutine function returning a fresh snapshot
        predicate: Success test applied to each snapshot
        timeout: Deadline in seconds from now
        interval: Delay between polls in seconds
        abort: Early-failure test applied to each snapshot
        description: Used in log messages

    Returns:
        PollResult with the last snapshot seen
    """
    start = time.monotonic()
    deadline = start + timeout
    attempts = 0
    value = None
    last_error = None

    while True:
        attempts += 1
        try:
            value = await fetch()
            last_error = None
        except TransientError as e:
            last_error = str(e)
            logger.warning(f"Polling {description}: transient error: {e}")
        else:
            if predicate(value):
                return PollResult(
                    PollStatus.SATISFIED, value, attempts, time.monotonic() - start
                )
            if abort is not None and abort(value):
                logger.error(f"Polling {description}: aborted after {attempts} attempts")
                return PollResult(
                    PollStatus.ABORTED, value, attempts, time.monotonic() - start
                )

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            elapsed = time.monotonic() - start
            logger.warning(f"Polling {description}: timed out after {elapsed:.1f}s")
            return PollResult(PollStatus.TIMED_OUT, value, attempts, elapsed, last_error)

        await asyncio.sleep(min(interval, remaining))
