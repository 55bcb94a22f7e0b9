"""
Deadline-bounded polling utilities.

This module provides:
- wait_until: async retry-until-true for event-loop code
- wait_until_sync: the same contract for threads
- retry_with_delay: request/predicate polling used for cluster probes

A probe that raises is treated exactly like a probe whose value does not
satisfy the condition yet. Only an expired deadline ends the wait.
"""

import asyncio
import time
from typing import Any, Callable, Union

from .deadline import Deadline
from .errors import Timeout

DeadlineLike = Union[Deadline, float, int]


def as_deadline(deadline: DeadlineLike) -> Deadline:
    """Accept either a Deadline or a timeout in seconds."""
    if isinstance(deadline, Deadline):
        return deadline
    return Deadline.from_now(float(deadline))


async def wait_until(probe: Callable[[], Any],
                     deadline: DeadlineLike = 30.0,
                     interval: float = 0.5,
                     description: str = "condition",
                     condition: Callable[[Any], bool] = bool) -> Any:
    """
    Wait for a condition over a probe's value to hold, bounded by a deadline.

    Args:
        probe: Zero-argument callable, sync or returning a coroutine
        deadline: Deadline, or timeout in seconds
        interval: Time between probes in seconds
        description: Stage name used in the Timeout message
        condition: Predicate over the probe's value

    Returns:
        The first probe value satisfying ``condition``

    Raises:
        Timeout: If the condition does not hold before the deadline
    """
    deadline = as_deadline(deadline)
    started = time.monotonic()
    last_result = None

    while True:
        try:
            result = probe()
            if asyncio.iscoroutine(result):
                result = await result
            if condition(result):
                return result
            last_result = result
        except Exception as e:
            last_result = e

        if deadline.is_overdue():
            break
        await asyncio.sleep(deadline.cap(interval))

    raise Timeout(description, last_result, waited=time.monotonic() - started)


def wait_until_sync(probe: Callable[[], Any],
                    deadline: DeadlineLike = 30.0,
                    interval: float = 0.5,
                    description: str = "condition",
                    condition: Callable[[Any], bool] = bool) -> Any:
    """
    Synchronous version of wait_until for the driver and workload threads.

    Only reads through ``probe``; safe to run next to the code under test.
    """
    deadline = as_deadline(deadline)
    started = time.monotonic()
    last_result = None

    while True:
        try:
            result = probe()
            if condition(result):
                return result
            last_result = result
        except Exception as e:
            last_result = e

        if deadline.is_overdue():
            break
        time.sleep(deadline.cap(interval))

    raise Timeout(description, last_result, waited=time.monotonic() - started)


def retry_with_delay(operation: Callable[[], Any],
                     condition: Callable[[Any], bool],
                     delay: float,
                     deadline: DeadlineLike,
                     description: str = "operation") -> Any:
    """Retry ``operation`` every ``delay`` seconds until ``condition`` accepts its result."""
    return wait_until_sync(
        operation,
        deadline=deadline,
        interval=delay,
        description=description,
        condition=condition,
    )
