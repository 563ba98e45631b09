"""
RewardTierEngine: spend-threshold rewards.

A tier is unlocked when cart.total_price >= tier.threshold. Unlocked tiers
are applied once (tracked by "rewardType:threshold" keys in the session
state) and reversed when the cart drops back below the threshold:

  free_shipping / discount_percent / discount_fixed
      attribute-only: surfaced as cart attributes for the pricing
      collaborator, marked applied immediately.
  free_gift
      one unit of the gift variant added with free-gift tags, marked applied
      only after the add succeeds. The snapshot is checked first so a stale
      local state never adds the gift twice.

Cart attributes are pushed only when the unlocked count or free-shipping
membership changes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from popcart_engine.catalog import Catalog
from popcart_engine.errors import ConfigurationError, RejectedByRemote, TransportError
from popcart_engine.mirror import CartMirror
from popcart_engine.models import (
    ATTR_DISCOUNT_TYPE,
    ATTR_DISCOUNT_VALUE,
    ATTR_FREE_SHIPPING,
    ATTR_REWARDS_COUNT,
    DEFAULT_PROGRESS_THRESHOLD,
    FLAG_TRUE,
    PROP_FREE_GIFT,
    PROP_GIFT_NAME,
    PROP_TIER_THRESHOLD,
    REWARD_DISCOUNT_PERCENT,
    REWARD_FREE_GIFT,
    REWARD_FREE_SHIPPING,
    AddLine,
    Cart,
    RewardTier,
    SetQuantity,
    UpdateAttributes,
)
from popcart_engine.state import ReconciliationState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TierProgress:
    """Where the cart stands on the tier ladder."""

    unlocked_count: int
    current_title:  Optional[str]
    next_title:     Optional[str]
    remaining:      int
    percent:        int
    complete:       bool
    message:        str = ""


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------
def sort_tiers(tiers: Iterable[RewardTier]) -> List[RewardTier]:
    """Ascending threshold, ties keep their configured sort order."""
    return sorted(tiers, key=lambda t: (t.threshold, t.sort_order))


def unlocked(tiers: Iterable[RewardTier], cart: Cart) -> List[RewardTier]:
    return [t for t in sort_tiers(tiers) if cart.total_price >= t.threshold]


def best_discount(tiers: Iterable[RewardTier]) -> Optional[RewardTier]:
    """Percent beats fixed on a type mismatch; same type, larger value wins."""
    best: Optional[RewardTier] = None
    for tier in tiers:
        if not tier.is_discount:
            continue
        if best is None:
            best = tier
        elif tier.reward_type == best.reward_type:
            if tier.decimal_value > best.decimal_value:
                best = tier
        elif tier.reward_type == REWARD_DISCOUNT_PERCENT:
            best = tier
    return best


def reward_attributes(unlocked_tiers: Sequence[RewardTier]) -> Dict[str, str]:
    attributes = {
        ATTR_REWARDS_COUNT: str(len(unlocked_tiers)),
        ATTR_FREE_SHIPPING: "true" if has_free_shipping(unlocked_tiers) else "false",
        ATTR_DISCOUNT_TYPE: "",
        ATTR_DISCOUNT_VALUE: "",
    }
    best = best_discount(unlocked_tiers)
    if best is not None:
        attributes[ATTR_DISCOUNT_TYPE] = best.reward_type
        attributes[ATTR_DISCOUNT_VALUE] = best.reward_value or ""
    return attributes


def has_free_shipping(tiers: Iterable[RewardTier]) -> bool:
    return any(t.reward_type == REWARD_FREE_SHIPPING for t in tiers)


def progress(tiers: Iterable[RewardTier], cart: Cart) -> TierProgress:
    ordered = sort_tiers(tiers)
    total = cart.total_price
    if not ordered:
        remaining = max(0, DEFAULT_PROGRESS_THRESHOLD - total)
        return TierProgress(
            unlocked_count=0,
            current_title=None,
            next_title=None if remaining == 0 else "Free shipping",
            remaining=remaining,
            percent=min(total * 100 // DEFAULT_PROGRESS_THRESHOLD, 100),
            complete=remaining == 0,
        )

    current: Optional[RewardTier] = None
    upcoming: Optional[RewardTier] = None
    count = 0
    for tier in ordered:
        if total >= tier.threshold:
            current = tier
            count += 1
        else:
            upcoming = tier
            break

    max_threshold = ordered[-1].threshold
    percent = 100 if max_threshold <= 0 else min(total * 100 // max_threshold, 100)
    return TierProgress(
        unlocked_count=count,
        current_title=current.title if current else None,
        next_title=upcoming.title if upcoming else None,
        remaining=upcoming.threshold - total if upcoming else 0,
        percent=max(percent, 0),
        complete=upcoming is None,
        message=(current.message or "All rewards unlocked!") if upcoming is None and current else "",
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class RewardTierEngine:
    def __init__(self, mirror: CartMirror, catalog: Catalog) -> None:
        self.mirror = mirror
        self.catalog = catalog

    async def run(
        self, tiers: Sequence[RewardTier], cart: Cart, state: ReconciliationState
    ) -> int:
        """One tier pass against `cart`. Returns the number of cart mutations."""
        if not tiers:
            return 0

        open_tiers = unlocked(tiers, cart)
        open_keys = {t.key for t in open_tiers}
        by_key = {t.key: t for t in tiers}
        mutations = 0

        self._forget_missing_gifts(by_key, cart, state)

        # ---- Apply pass ----
        for tier in open_tiers:
            if tier.key in state.applied_reward_keys:
                continue
            if tier.reward_type == REWARD_FREE_GIFT:
                if await self._apply_free_gift(tier, cart, state):
                    mutations += 1
            else:
                state.applied_reward_keys.add(tier.key)
                logger.info("Reward unlocked: %s (%s)", tier.key, tier.title)

        # ---- Remove pass ----
        for key in sorted(state.applied_reward_keys - open_keys):
            tier = by_key.get(key)
            if tier is None or tier.reward_type != REWARD_FREE_GIFT:
                state.applied_reward_keys.discard(key)
                logger.info("Reward locked again: %s", key)
                continue
            removed, mutated = await self._remove_free_gift(tier, cart)
            mutations += mutated
            if removed:
                state.applied_reward_keys.discard(key)

        # ---- Attribute recompute ----
        shipping = has_free_shipping(open_tiers)
        if (len(open_tiers), shipping) != (state.rewards_count, state.rewards_free_shipping):
            result = await self.mirror.mutate(UpdateAttributes(reward_attributes(open_tiers)))
            if result.rejected:
                logger.warning("Reward attributes rejected: %s", result.error)
            else:
                result.unwrap()
                state.rewards_count = len(open_tiers)
                state.rewards_free_shipping = shipping
                mutations += 1

        return mutations

    @staticmethod
    def _forget_missing_gifts(
        by_key: Dict[str, RewardTier], cart: Cart, state: ReconciliationState
    ) -> None:
        """An applied gift that left the cart is no longer applied."""
        for key in sorted(state.applied_reward_keys):
            tier = by_key.get(key)
            if tier is None or tier.reward_type != REWARD_FREE_GIFT:
                continue
            if cart.free_gift_line(tier.threshold) is None:
                logger.info("Free gift for %s is no longer in the cart", key)
                state.applied_reward_keys.discard(key)

    async def _apply_free_gift(
        self, tier: RewardTier, cart: Cart, state: ReconciliationState
    ) -> bool:
        if not tier.reward_value:
            logger.warning("%s", ConfigurationError(f"free gift tier {tier.key} has no product"))
            return False

        if cart.free_gift_line(tier.threshold) is not None:
            logger.debug("Free gift for %s already in cart", tier.key)
            state.applied_reward_keys.add(tier.key)
            return False

        try:
            variant = await self.catalog.resolve(tier.reward_value)
        except (TransportError, RejectedByRemote) as exc:
            logger.warning("Free gift %r unavailable this pass: %s", tier.reward_value, exc)
            return False
        if not variant.available:
            logger.warning("Free gift %r is sold out", tier.reward_value)
            return False

        result = await self.mirror.mutate(AddLine(
            variant_id=variant.id,
            quantity=1,
            properties={
                PROP_FREE_GIFT: FLAG_TRUE,
                PROP_TIER_THRESHOLD: str(tier.threshold),
                PROP_GIFT_NAME: tier.title,
            },
        ))
        if result.rejected:
            logger.warning("Free gift for %s rejected: %s", tier.key, result.error)
            return False
        result.unwrap()
        state.applied_reward_keys.add(tier.key)
        logger.info("Free gift added for %s: %s", tier.key, variant.title or variant.handle)
        return True

    async def _remove_free_gift(self, tier: RewardTier, cart: Cart) -> Tuple[bool, int]:
        """Returns (key can be dropped, mutations issued)."""
        line = cart.free_gift_line(tier.threshold)
        if line is None:
            return True, 0
        result = await self.mirror.mutate(SetQuantity(line.key, 0))
        if not result.ok:
            # best-effort: keep the key so the next pass retries
            logger.warning("Could not remove free gift for %s: %s", tier.key, result.error)
            return False, 0
        logger.info("Free gift removed for %s", tier.key)
        return True, 1
