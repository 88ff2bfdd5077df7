# site_diff/retry.py
"""
Bounded retry with exponential backoff for every network operation.

Usage::

    html = await with_retry(lambda: fetch(url), RetryOptions(retries=2), label=f"fetch({url})")
"""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from site_diff.logger import get_logger

__all__ = ("RetryOptions", "with_retry", "compute_delay", "error_message")

T = TypeVar("T")

log = get_logger("retry")


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """Retry budget and backoff shape. Delays are in seconds."""

    retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def from_config(cls, config: Any) -> RetryOptions:
        return cls(
            retries=config.retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            multiplier=config.retry_multiplier,
            jitter=config.retry_jitter,
        )


def compute_delay(attempt: int, options: RetryOptions, rng: Optional[random.Random] = None) -> float:
    """Delay before retry number *attempt* (1-based)."""
    delay = min(options.max_delay, options.base_delay * options.multiplier ** (attempt - 1))
    if options.jitter:
        delay *= (rng or random).uniform(0.8, 1.2)
    return delay


def error_message(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions,
    label: str = "operation",
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds or the retry budget is spent.

    The last error is re-raised unchanged. Cancellation is never retried.
    """
    total = options.retries + 1
    started = time.monotonic()
    attempt = 1
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except options.retry_on as exc:
            if attempt >= total:
                raise
            delay = compute_delay(attempt, options)
            log.warning(
                "%s failed (attempt %d/%d, %.1fs elapsed): %s; retrying in %.2fs",
                label,
                attempt,
                total,
                time.monotonic() - started,
                error_message(exc),
                delay,
            )
            await sleep(delay)
            attempt += 1
