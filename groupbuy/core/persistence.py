"""Helpers for calling outbound boundaries from core services."""

import logging
from collections.abc import Awaitable
from typing import TypeVar

from .errors import GroupBuyError, PersistenceFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def guarded(
    operation: str,
    awaitable: Awaitable[T],
    error: type[GroupBuyError] = PersistenceFailed,
) -> T:
    """Await a boundary call, wrapping unexpected failures as ``error``.

    Domain errors raised by the boundary pass through unchanged. The
    wrapped error carries a generic "Could not ..." reason; the original
    exception is only logged.
    """
    try:
        return await awaitable
    except GroupBuyError:
        raise
    except Exception as e:
        logger.error(f"Failed to {operation}: {e}", exc_info=True)
        raise error(f"Could not {operation}") from e
