"""
CartMirror: the engine's read/write-through view of the remote cart.

refresh() replaces the snapshot with the authoritative cart; mutate()
issues one engine-initiated write. Both return a CallResult instead of
raising, so callers decide per error kind. Every successful mutate()
publishes an internal CartChange on the feed, and leaves the snapshot
marked stale: remote totals (tax, discounts) may differ from any local
projection, so only refresh() makes the snapshot authoritative again.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Union

from popcart_engine.errors import CallResult, RejectedByRemote, TransportError
from popcart_engine.models import AddLine, Cart, SetQuantity, UpdateAttributes
from popcart_engine.observer import ORIGIN_INTERNAL, CartChange, ChangeFeed
from popcart_engine.transport import CartTransport

logger = logging.getLogger(__name__)

CartOp = Union[SetQuantity, AddLine, UpdateAttributes]


class CartMirror:
    def __init__(self, transport: CartTransport, feed: Optional[ChangeFeed] = None) -> None:
        self.transport = transport
        self.feed = feed
        self.snapshot: Optional[Cart] = None
        self.stale: bool = True
        self._internal_depth = 0
        self.mutation_log: List[str] = []

    @property
    def internal_in_progress(self) -> bool:
        """True while an engine write is on the wire."""
        return self._internal_depth > 0

    async def refresh(self) -> CallResult[Cart]:
        try:
            cart = await self.transport.fetch_cart()
        except (TransportError, RejectedByRemote) as exc:
            logger.warning("Cart refresh failed, keeping previous snapshot: %s", exc)
            return CallResult.failure(exc)
        self.snapshot = cart
        self.stale = False
        logger.debug(
            "Cart refreshed: %d line(s), total=%d", len(cart.items), cart.total_price,
        )
        return CallResult.success(cart)

    async def mutate(self, op: CartOp) -> CallResult[Cart]:
        self._internal_depth += 1
        try:
            if isinstance(op, SetQuantity):
                cart = await self.transport.change_line(op.key, op.quantity)
            elif isinstance(op, AddLine):
                cart = await self.transport.add_line(op.variant_id, op.quantity, dict(op.properties))
            elif isinstance(op, UpdateAttributes):
                cart = await self.transport.update_attributes(dict(op.attributes))
            else:
                raise TypeError(f"Unsupported cart operation: {op!r}")
        except (TransportError, RejectedByRemote) as exc:
            logger.warning("Cart mutation failed (%s): %s", op.describe(), exc)
            return CallResult.failure(exc)
        finally:
            self._internal_depth -= 1

        self.stale = True
        self.mutation_log.append(op.describe())
        logger.info("Cart mutation applied: %s", op.describe())
        if self.feed is not None:
            self.feed.publish(CartChange(ORIGIN_INTERNAL, op.describe()))
        return CallResult.success(cart)
