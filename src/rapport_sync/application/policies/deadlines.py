from __future__ import annotations

import asyncio
import logging
from typing import Awaitable

from rapport_sync.application.exceptions import NetworkError
from rapport_sync.application.ports.directory import DirectoryResult

logger = logging.getLogger(__name__)


async def with_deadline(
    call: Awaitable[DirectoryResult],
    seconds: float,
    operation: str,
) -> DirectoryResult:
    """Await a directory call, turning expiry or a dropped connection into a NetworkError result.

    The call is abandoned locally on expiry; the directory may still apply it,
    so callers must tolerate the change arriving later through the push stream.
    """
    try:
        return await asyncio.wait_for(call, timeout=seconds)
    except TimeoutError:
        logger.warning("%s exceeded its %.2fs deadline", operation, seconds)
        return DirectoryResult(error=NetworkError(f"{operation} timed out"))
    except (ConnectionError, OSError) as exc:
        logger.warning("%s failed: %s", operation, exc)
        return DirectoryResult(error=NetworkError(f"{operation} failed: {exc}"))
