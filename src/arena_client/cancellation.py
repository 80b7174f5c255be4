"""Cancellation handles for stream read loops, built on :class:`asyncio.Event`."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import StreamCancelledError

__all__ = ["CancellationToken", "StreamCancelledError"]

T = TypeVar("T")


class CancellationToken:
    """One-shot flag that a stream reader polls and races its reads against."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelledError(self.reason or "cancelled")

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless cancellation fires first.

        The losing read is cancelled; the caller is expected to close the
        underlying response afterwards.
        """
        self.raise_if_cancelled()
        read = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            raise
        finally:
            stop.cancel()
        if read.done():
            return read.result()
        read.cancel()
        raise StreamCancelledError(self.reason or "cancelled")
