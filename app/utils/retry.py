"""
Backoff helpers for outbound HTTP (task API and alert relays).

Only transient failures are retried: timeouts, dropped connections, 429 and
5xx. Anything else propagates on the first attempt so a probe records the
real error instead of waiting out a backoff.
"""
import asyncio
import random
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

import aiohttp

from app.utils.logger import log

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True
) -> float:
    """
    Exponential delay before the next attempt.

    Args:
        attempt: attempt that just failed (1-indexed)
        base_delay: delay after the first failure
        max_delay: cap before jitter
        jitter: add up to 25% on top so parallel probes do not retry in lockstep
    """
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)
    return delay


def is_retryable_error(error: BaseException) -> bool:
    """
    True for failures worth another attempt.

    HTTP errors are judged by status: ``status_code`` on ClickUpAPIError,
    ``status`` on aiohttp.ClientResponseError.
    """
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        return status in TRANSIENT_STATUS_CODES

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    text = str(error).lower()
    return "timeout" in text or "timed out" in text


class RetryContext:
    """
    Bounded retry around one outbound call.

    Usage:
        async with RetryContext(max_attempts=2, operation_name="GET /team") as ctx:
            data = await ctx.execute(fetch, "/team")
        ctx.attempts, ctx.errors
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        operation_name: str = "operation"
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.operation_name = operation_name
        self.attempts = 0
        self.errors: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None and self.attempts > 1:
            log.warning(f"{self.operation_name} gave up after {self.attempts} attempts")

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        last_error: Optional[BaseException] = None

        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                last_error = e
                self.errors.append(f"{type(e).__name__}: {e}")
                if self.attempts >= self.max_attempts or not is_retryable_error(e):
                    raise

                delay = calculate_backoff(self.attempts, self.base_delay, self.max_delay)
                log.warning(
                    f"{self.operation_name} attempt {self.attempts} failed: {e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)

        raise last_error if last_error else RuntimeError(f"{self.operation_name}: no attempts made")
