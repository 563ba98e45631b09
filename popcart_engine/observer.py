"""
Change-observer channel.

Anything that notices the cart changed (a shopper action, an intercepted
add-to-cart from the theme, the engine's own writes) publishes a
CartChange here. The reconciliation loop consumes the feed and only reacts
to external changes, so the engine never re-enters on its own writes.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

ORIGIN_EXTERNAL = "external"
ORIGIN_INTERNAL = "internal"


@dataclass(frozen=True, slots=True)
class CartChange:
    origin: str
    reason: str = ""

    @property
    def internal(self) -> bool:
        return self.origin == ORIGIN_INTERNAL


class ChangeFeed:
    """FIFO of cart changes. None is the shutdown sentinel."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[CartChange]]" = asyncio.Queue()

    def publish(self, change: CartChange) -> None:
        self._queue.put_nowait(change)

    def external(self, reason: str = "") -> None:
        self.publish(CartChange(ORIGIN_EXTERNAL, reason))

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def next(self) -> Optional[CartChange]:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()
