"""Resilience patterns for store connections and deployment probes.

Implements:
- Retry with Exponential Backoff: Handle transient failures at startup
- Bounded polling: Wait for a condition with a retry budget and a wall-clock deadline
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: tuple = (Exception,),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before the retry following ``attempt`` (0-indexed).

    Args:
        attempt: Number of the attempt that just failed, starting at 0
        config: Retry configuration

    Returns:
        Delay in seconds, capped at ``config.max_delay``
    """
    delay = min(
        config.base_delay * (config.exponential_base**attempt),
        config.max_delay,
    )

    # Jitter spreads retries from several runners hitting the same store
    if config.jitter:
        delay = delay * (0.5 + random.random())

    return delay


async def async_retry(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func`` until it succeeds or the retry budget is spent.

    Example:
        await async_retry(engine_probe, RetryConfig(max_attempts=5), "store connect")

    Args:
        func: Zero-argument coroutine factory
        config: Retry configuration
        description: Human-readable name used in log lines
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        The value returned by the first successful attempt

    Raises:
        The last exception raised by ``func`` once all attempts are exhausted.
        Exceptions outside ``retryable_exceptions`` propagate immediately.
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return await func()
        except config.retryable_exceptions as e:
            attempt += 1
            if attempt >= config.max_attempts:
                logger.error(f"{description} failed after {config.max_attempts} attempt(s): {e}")
                raise

            delay = calculate_backoff(attempt - 1, config)
            logger.warning(
                f"Retry {attempt}/{config.max_attempts} for {description} "
                f"after {delay:.2f}s delay. Error: {e}"
            )
            await sleep(delay)


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    config: RetryConfig,
    timeout_seconds: float,
    description: str = "condition",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[bool, int]:
    """Poll ``check`` with exponential backoff until it returns True.

    Polling stops when the check succeeds, when ``config.max_attempts`` checks
    have been made, or when the next sleep would cross the wall-clock deadline.

    Args:
        check: Coroutine factory returning True once the condition holds
        config: Backoff configuration (``max_attempts`` is the retry budget)
        timeout_seconds: Maximum wall-clock time to spend polling
        description: Human-readable name used in log lines
        sleep: Sleep coroutine (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        Tuple of (condition_met, attempts_made)
    """
    deadline = clock() + timeout_seconds

    for attempt in range(config.max_attempts):
        if await check():
            return True, attempt + 1

        if attempt == config.max_attempts - 1:
            break

        delay = calculate_backoff(attempt, config)
        remaining = deadline - clock()
        if remaining <= 0:
            break

        logger.debug(
            f"Waiting {min(delay, remaining):.2f}s before polling {description} again "
            f"({attempt + 1}/{config.max_attempts})"
        )
        await sleep(min(delay, remaining))

        if clock() >= deadline:
            # One last look at the deadline before giving up
            return await check(), attempt + 2

    return False, attempt + 1
