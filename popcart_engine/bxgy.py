"""
BxgyEngine: "Buy X Get Y" entitlement and application.

Per offer and per pass:

  1. qualifying quantity: units on lines matching the offer's product
     predicate, never counting lines either engine tagged as free.
  2. entitlement:
       cheapest_in_cart      max(0, min(G, Q - B))   must exceed B, not meet it
       selection / automatic floor(Q / B) * G      cycle based
  3. application:
       cheapest_in_cart      no cart writes; the allocator decides which
                             units are free (state.free_allocation)
       selection             trims excess free lines; adding is left to the
                             shopper through the selection picker
       automatic             adds/removes the preset variant to match
  4. the per-offer entitlement is recorded in the session state.

Free lines tagged for an offer that is no longer active (disabled, deleted
or renamed) are removed on every pass.

Losing the threshold entirely removes every free unit of the offer at once,
cooldown or not. Every other cart write is gated by the cooldown window.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence

from popcart_engine.allocator import allocate_cheapest
from popcart_engine.catalog import Catalog
from popcart_engine.errors import (
    CallResult,
    ConfigurationError,
    RejectedByRemote,
    TransportError,
)
from popcart_engine.mirror import CartMirror
from popcart_engine.models import (
    APPLIES_ALL,
    APPLIES_COLLECTION,
    APPLIES_PRODUCTS,
    ATTR_BXGY_ACTIVE,
    ATTR_BXGY_CYCLES,
    ATTR_BXGY_FREE_ITEMS,
    ATTR_BXGY_OFFER,
    BXGY_COOLDOWN_SECONDS,
    FLAG_TRUE,
    MODE_AUTOMATIC,
    MODE_CHEAPEST,
    MODE_SELECTION,
    PHASE_AT_CAP,
    PHASE_BELOW_THRESHOLD,
    PHASE_EARNING,
    PROP_BXGY_FREE,
    PROP_BXGY_OFFER,
    PROP_GIFT_NAME,
    AddLine,
    BxgyOffer,
    Cart,
    CartLineItem,
    SetQuantity,
    UpdateAttributes,
)
from popcart_engine.state import OfferEntitlement, ReconciliationState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------
def qualifies(
    line: CartLineItem, offer: BxgyOffer, collection_ids: Optional[FrozenSet[str]] = None
) -> bool:
    """Product predicate. Misconfigured offers match nothing."""
    if line.is_engine_free or offer.misconfigured:
        return False
    if offer.applies_to_type == APPLIES_ALL:
        return True
    if offer.applies_to_type == APPLIES_COLLECTION:
        return collection_ids is not None and line.product_id in collection_ids
    if offer.applies_to_type == APPLIES_PRODUCTS:
        return line.product_id in offer.product_ids
    return False


def qualifying_lines(
    cart: Cart, offer: BxgyOffer, collection_ids: Optional[FrozenSet[str]] = None
) -> List[CartLineItem]:
    return [line for line in cart.items if qualifies(line, offer, collection_ids)]


def qualifying_quantity(
    cart: Cart, offer: BxgyOffer, collection_ids: Optional[FrozenSet[str]] = None
) -> int:
    return sum(line.quantity for line in qualifying_lines(cart, offer, collection_ids))


def earned_free_items(offer: BxgyOffer, qualifying_qty: int) -> int:
    if offer.reward_mode == MODE_CHEAPEST:
        return max(0, min(offer.get_quantity, qualifying_qty - offer.buy_quantity))
    return (qualifying_qty // offer.buy_quantity) * offer.get_quantity


def earned_cycles(offer: BxgyOffer, qualifying_qty: int) -> int:
    if offer.reward_mode == MODE_CHEAPEST:
        return 1 if qualifying_qty > offer.buy_quantity else 0
    return qualifying_qty // offer.buy_quantity


def offer_phase(offer: BxgyOffer, earned: int, claimed: int) -> str:
    if earned <= 0:
        return PHASE_BELOW_THRESHOLD
    if offer.reward_mode == MODE_CHEAPEST:
        return PHASE_AT_CAP if earned >= offer.get_quantity else PHASE_EARNING
    return PHASE_AT_CAP if claimed >= earned else PHASE_EARNING


@dataclass(frozen=True, slots=True)
class BxgyProgress:
    """Numbers behind the BXGY progress boxes."""

    total_slots:   int
    filled_slots:  int
    items_needed:  int
    free_earned:   int
    free_claimed:  int
    free_remaining: int
    phase:         str


def progress(offer: BxgyOffer, entitlement: OfferEntitlement) -> BxgyProgress:
    buy, get = offer.buy_quantity, offer.get_quantity
    qty = entitlement.qualifying_qty
    earned = entitlement.earned_free_items

    if offer.reward_mode == MODE_CHEAPEST:
        filled = min(qty, buy)
        if qty <= buy:
            needed = buy - qty + 1
        elif earned < get:
            needed = 1
        else:
            needed = 0
    else:
        in_cycle = qty % buy
        filled = buy if qty >= buy else in_cycle
        needed = buy - in_cycle

    return BxgyProgress(
        total_slots=buy + get,
        filled_slots=filled,
        items_needed=needed,
        free_earned=earned,
        free_claimed=entitlement.claimed,
        free_remaining=entitlement.remaining_free_slots,
        phase=entitlement.phase,
    )


def bxgy_attributes(
    offers: Sequence[BxgyOffer], entitlements: Dict[str, OfferEntitlement]
) -> Dict[str, str]:
    active = [o for o in offers if entitlements.get(o.key, OfferEntitlement()).cycles > 0]
    return {
        ATTR_BXGY_ACTIVE: "true" if active else "false",
        ATTR_BXGY_CYCLES: str(sum(entitlements[o.key].cycles for o in active)),
        ATTR_BXGY_FREE_ITEMS: str(sum(
            entitlements.get(o.key, OfferEntitlement()).earned_free_items for o in offers
        )),
        ATTR_BXGY_OFFER: ", ".join(o.title for o in active),
    }


def free_line_properties(offer: BxgyOffer) -> Dict[str, str]:
    return {
        PROP_BXGY_FREE: FLAG_TRUE,
        PROP_BXGY_OFFER: offer.key,
        PROP_GIFT_NAME: f"{offer.title} - Free Item",
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class BxgyEngine:
    def __init__(
        self,
        mirror: CartMirror,
        catalog: Catalog,
        clock: Callable[[], float] = time.monotonic,
        cooldown_seconds: float = BXGY_COOLDOWN_SECONDS,
    ) -> None:
        self.mirror = mirror
        self.catalog = catalog
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self._collections: Dict[str, FrozenSet[str]] = {}
        self._selection_variants: Dict[str, FrozenSet[str]] = {}

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------
    async def run(
        self, offers: Sequence[BxgyOffer], cart: Cart, state: ReconciliationState
    ) -> int:
        """One BXGY pass over every offer. Returns the number of cart mutations."""
        allocation: Dict[str, int] = {}
        mutations = 0
        for offer in offers:
            try:
                mutations += await self._run_offer(offer, cart, state, allocation)
            except ConfigurationError as exc:
                logger.warning("Offer %r skipped this pass: %s", offer.key, exc)
        state.free_allocation = allocation
        mutations += await self._sweep_orphans(offers, cart)

        if offers:
            attributes = bxgy_attributes(offers, state.last_bxgy_entitlement)
            if attributes != state.bxgy_attributes:
                result = await self.mirror.mutate(UpdateAttributes(attributes))
                if result.rejected:
                    logger.warning("BXGY attributes rejected: %s", result.error)
                else:
                    result.unwrap()
                    state.bxgy_attributes = attributes
                    mutations += 1
        return mutations

    async def _run_offer(
        self,
        offer: BxgyOffer,
        cart: Cart,
        state: ReconciliationState,
        allocation: Dict[str, int],
    ) -> int:
        collection_ids = await self._collection_ids(offer)
        lines = qualifying_lines(cart, offer, collection_ids)
        qty = sum(line.quantity for line in lines)
        earned = earned_free_items(offer, qty)
        cycles = earned_cycles(offer, qty)
        mutations = 0

        if offer.reward_mode == MODE_CHEAPEST:
            capacity = {line.key: line.quantity - allocation.get(line.key, 0) for line in lines}
            granted = allocate_cheapest(lines, earned, capacity)
            for key, free in granted.items():
                allocation[key] = allocation.get(key, 0) + free
            claimed = sum(granted.values())
        else:
            claimed = sum(line.quantity for line in cart.bxgy_free_lines(offer.key))
            mutations = await self._reconcile_claimed(offer, cart, state, earned, claimed)

        entitlement = OfferEntitlement(
            qualifying_qty=qty,
            cycles=cycles,
            earned_free_items=earned,
            claimed=claimed,
            phase=offer_phase(offer, earned, claimed),
        )
        previous = state.last_bxgy_entitlement.get(offer.key)
        if previous is None or previous.phase != entitlement.phase:
            logger.info(
                "Offer %r: %s -> %s (qualifying=%d earned=%d claimed=%d)",
                offer.key, previous.phase if previous else "-", entitlement.phase,
                qty, earned, claimed,
            )
        state.last_bxgy_entitlement[offer.key] = entitlement
        return mutations

    async def _reconcile_claimed(
        self,
        offer: BxgyOffer,
        cart: Cart,
        state: ReconciliationState,
        earned: int,
        claimed: int,
    ) -> int:
        now = self.clock()

        # Losing the threshold never waits for the cooldown.
        if earned == 0 and claimed > 0:
            logger.info("Offer %r: threshold lost, removing %d free unit(s)", offer.key, claimed)
            self._start_cooldown(state, now)
            return await self._remove_free_units(cart, offer, claimed)

        if earned == claimed:
            return 0

        if claimed < earned and offer.reward_mode == MODE_SELECTION:
            # remaining slots are claimed by the shopper through the picker
            return 0

        if not state.cooldown_elapsed(now):
            logger.warning(
                "Offer %r: adjustment %d -> %d deferred, cooldown active for %.2fs",
                offer.key, claimed, earned, state.cooldown_until - now,
            )
            return 0

        self._start_cooldown(state, now)
        if claimed > earned:
            return await self._remove_free_units(cart, offer, claimed - earned)
        return await self._add_automatic(offer, earned - claimed)

    def _start_cooldown(self, state: ReconciliationState, now: float) -> None:
        state.cooldown_until = now + self.cooldown_seconds

    async def _collection_ids(self, offer: BxgyOffer) -> Optional[FrozenSet[str]]:
        if offer.applies_to_type != APPLIES_COLLECTION:
            return None
        if not offer.collection_id:
            logger.warning("Offer %r targets a collection but has none configured", offer.key)
            return None
        cached = self._collections.get(offer.collection_id)
        if cached is not None:
            return cached
        try:
            ids = await self.catalog.collection_product_ids(offer.collection_id)
        except (TransportError, RejectedByRemote) as exc:
            logger.warning(
                "Collection %r unavailable, offer %r matches nothing this pass: %s",
                offer.collection_id, offer.key, exc,
            )
            return None
        self._collections[offer.collection_id] = ids
        return ids

    async def _sweep_orphans(self, offers: Sequence[BxgyOffer], cart: Cart) -> int:
        """Remove free lines whose offer was disabled, deleted or renamed."""
        known = {offer.key for offer in offers}
        mutations = 0
        for line in cart.bxgy_free_lines():
            if line.bxgy_offer in known:
                continue
            result = await self.mirror.mutate(SetQuantity(line.key, 0))
            if not result.ok:
                logger.warning(
                    "Orphaned free line %s (offer %r) not removed: %s",
                    line.key, line.bxgy_offer, result.error,
                )
                continue
            logger.info(
                "Removed %d orphaned free unit(s) of offer %r", line.quantity, line.bxgy_offer,
            )
            mutations += 1
        return mutations

    async def _remove_free_units(self, cart: Cart, offer: BxgyOffer, quantity: int) -> int:
        """Best-effort: a failure on one line is logged and the rest proceed."""
        remaining = quantity
        mutations = 0
        for line in cart.bxgy_free_lines(offer.key):
            if remaining <= 0:
                break
            take = min(line.quantity, remaining)
            result = await self.mirror.mutate(SetQuantity(line.key, line.quantity - take))
            if not result.ok:
                logger.warning(
                    "Offer %r: could not trim free line %s: %s", offer.key, line.key, result.error,
                )
                continue
            remaining -= take
            mutations += 1
        if remaining > 0:
            logger.warning("Offer %r: %d free unit(s) left to remove", offer.key, remaining)
        return mutations

    async def _add_automatic(self, offer: BxgyOffer, quantity: int) -> int:
        variant_id = offer.automatic_variant_id
        if variant_id is None:
            if not offer.automatic_product_handle:
                raise ConfigurationError(f"automatic offer {offer.key!r} has no product")
            try:
                variant = await self.catalog.resolve(offer.automatic_product_handle)
            except (TransportError, RejectedByRemote) as exc:
                logger.warning(
                    "Automatic product %r unavailable this pass: %s",
                    offer.automatic_product_handle, exc,
                )
                return 0
            variant_id = variant.id

        result = await self.mirror.mutate(AddLine(variant_id, quantity, free_line_properties(offer)))
        if result.rejected:
            logger.warning("Offer %r: automatic add rejected: %s", offer.key, result.error)
            return 0
        result.unwrap()
        logger.info("Offer %r: added %d automatic free unit(s)", offer.key, quantity)
        return 1

    # ------------------------------------------------------------------
    # Selection picker
    # ------------------------------------------------------------------
    async def _selection_variant_ids(self, offer: BxgyOffer) -> Optional[FrozenSet[str]]:
        """Variant ids the picker may offer; None when any handle is allowed."""
        if not offer.selection_handles:
            return None
        cached = self._selection_variants.get(offer.key)
        if cached is not None:
            return cached
        ids = set()
        complete = True
        for handle in offer.selection_handles:
            try:
                ids.add((await self.catalog.resolve(handle)).id)
            except (TransportError, RejectedByRemote) as exc:
                complete = False
                logger.warning("Selection product %r unavailable: %s", handle, exc)
        resolved = frozenset(ids)
        # a partial list is retried on the next pick
        if complete:
            self._selection_variants[offer.key] = resolved
        return resolved

    async def add_selection_item(
        self, offer: BxgyOffer, variant_id: str, state: ReconciliationState
    ) -> CallResult[Cart]:
        """Add one picked unit: free while slots remain, paid otherwise."""
        if offer.reward_mode != MODE_SELECTION:
            raise ValueError(f"offer {offer.key!r} is not a selection offer")
        allowed = await self._selection_variant_ids(offer)
        if allowed is not None and variant_id not in allowed:
            raise ValueError(f"variant {variant_id} is not part of offer {offer.key!r}")

        # the last pass may be stale: decide free or paid on the live cart
        refreshed = await self.mirror.refresh()
        if not refreshed.ok:
            logger.warning("Offer %r: selection add of %s skipped: %s",
                           offer.key, variant_id, refreshed.error)
            return refreshed
        cart = refreshed.unwrap()
        qty = sum(line.quantity for line in
                  qualifying_lines(cart, offer, await self._collection_ids(offer)))
        earned = earned_free_items(offer, qty)
        claimed = sum(line.quantity for line in cart.bxgy_free_lines(offer.key))
        entitlement = OfferEntitlement(
            qualifying_qty=qty,
            cycles=earned_cycles(offer, qty),
            earned_free_items=earned,
            claimed=claimed,
            phase=offer_phase(offer, earned, claimed),
        )
        state.last_bxgy_entitlement[offer.key] = entitlement
        as_free = entitlement.remaining_free_slots > 0
        self._start_cooldown(state, self.clock())

        properties = free_line_properties(offer) if as_free else {}
        result = await self.mirror.mutate(AddLine(variant_id, 1, properties))
        if result.ok and as_free:
            entitlement.claimed += 1
            entitlement.phase = offer_phase(offer, entitlement.earned_free_items, entitlement.claimed)
        logger.info(
            "Offer %r: selection add of %s as %s -> %s",
            offer.key, variant_id, "free" if as_free else "paid",
            "ok" if result.ok else result.error,
        )
        return result
