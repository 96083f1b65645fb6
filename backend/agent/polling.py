"""
Bounded polling for eventually-consistent remote state (e.g. assistant runs).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional


@dataclass
class PollOutcome:
    value: Any
    satisfied: bool
    attempts: int


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    is_done: Callable[[Any], bool],
    max_attempts: int = 30,
    interval: float = 1.0,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    max_duration: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """
    Call `fetch` until `is_done(value)` holds, the attempt budget runs out or
    `max_duration` seconds have elapsed.

    backoff=1.0 keeps a fixed spacing; >1.0 grows the delay geometrically,
    capped at max_interval. Exceptions raised by `fetch` propagate.

    Returns:
        PollOutcome with the last fetched value and whether the predicate held
    """
    started = time.monotonic()
    delay = interval
    value = None

    for attempt in range(1, max_attempts + 1):
        value = await fetch()
        if is_done(value):
            return PollOutcome(value, True, attempt)

        if attempt == max_attempts:
            break
        if max_duration is not None and time.monotonic() - started + delay > max_duration:
            break

        await sleep(delay)
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)

    return PollOutcome(value, False, attempt)
