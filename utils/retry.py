"""
Retry helper for secondary effects (suspension sweeps, reaping).

Primary state transitions are never retried: their errors go back to the
caller verbatim. Secondary passes get exactly one more attempt after a
transient backing store failure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from utils.exceptions import BackingStoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_ATTEMPTS = 2


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    description: str,
    delay: Optional[float] = None,
) -> T:
    """
    Run ``operation``, retrying once if it raises BackingStoreUnavailableError.

    Args:
        operation: Zero-argument coroutine factory
        description: Human-readable label used in log messages
        delay: Seconds to wait before the retry (defaults to settings)

    Returns:
        The operation's result

    Raises:
        BackingStoreUnavailableError: If the retry fails as well
        DatabaseError: Any non-transient failure, immediately
    """
    if delay is None:
        from config import settings

        delay = settings.secondary_retry_delay_seconds

    for attempt in range(_MAX_ATTEMPTS):
        try:
            return await operation()
        except BackingStoreUnavailableError as e:
            if attempt < _MAX_ATTEMPTS - 1:
                logger.warning(
                    f"Transient store error during {description} "
                    f"(attempt {attempt + 1}/{_MAX_ATTEMPTS}): {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"Store still unavailable during {description} after {_MAX_ATTEMPTS} attempts: {e}"
                )
                raise

    # Loop always returns or raises
    raise BackingStoreUnavailableError(f"{description} did not run")
