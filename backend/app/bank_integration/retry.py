"""
Storage Retry Helper

Retries async storage operations that fail with transient connection errors
(connection pooler hiccups, resets, timeouts, exhausted connection slots).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MESSAGES = (
    "Tenant or user not found",
    "Connection terminated",
    "connection terminated",
    "connection reset",
    "ECONNRESET",
    "ETIMEDOUT",
    "timeout",
    "too many clients",
    "remaining connection slots",
)


def is_transient_error(error: BaseException) -> bool:
    message = str(error) or ""
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 2,
    delay: float = 0.5,
    label: str = "DB",
    on_retry: Optional[Callable[[], Awaitable[Any]]] = None
) -> T:
    """
    Run `fn`, retrying on transient errors with linear backoff.

    Makes at most `retries + 1` attempts, sleeping `delay * attempt` seconds
    between them. Non-transient errors, and the last transient one, are
    re-raised unchanged.

    Args:
        fn: Zero-argument coroutine function to execute
        retries: Maximum number of retries after the first attempt
        delay: Base delay in seconds
        label: Log prefix
        on_retry: Optional coroutine run before each retry (e.g. session rollback)

    Example:
        >>> await with_retry(lambda: session.execute(stmt), retries=2, label="bank_accounts")
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_transient_error(e) or attempt > retries:
                raise

            wait = delay * attempt
            logger.warning(
                f"[{label}] Transient error (attempt {attempt}/{retries + 1}): {e} - retrying in {wait}s"
            )
            if on_retry is not None:
                await on_retry()
            await asyncio.sleep(wait)
            attempt += 1
