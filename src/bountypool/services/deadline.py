"""Request deadlines."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .errors import TransientError


@asynccontextmanager
async def deadline(seconds: float, operation: str) -> AsyncIterator[None]:
    """Cancel everything inside once *seconds* pass, surfacing a TransientError."""
    try:
        async with asyncio.timeout(seconds):
            yield
    except TimeoutError as exc:
        raise TransientError(f"{operation} did not finish within {seconds:g}s") from exc
