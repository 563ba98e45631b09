"""
ReconciliationLoop: one pass end-to-end, one pass at a time.

    refresh -> RewardTierEngine -> BxgyEngine (per offer) -> [refresh]

The follow-up refresh happens exactly once and only when the pass wrote to
the cart; it updates the mirror but never starts another pass. Tier gifts
added in a pass are therefore seen by BXGY qualification one pass later.

Passes are serialised by an asyncio.Lock. A trigger that arrives while a
pass is in flight waits for it and then runs against fresh cart state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from popcart_engine.allocator import LineRows, split_rows
from popcart_engine.bxgy import BxgyEngine, BxgyProgress
from popcart_engine.bxgy import progress as bxgy_progress
from popcart_engine.catalog import Catalog
from popcart_engine.config import EngineConfig
from popcart_engine.errors import CallResult, RejectedByRemote, TransportError
from popcart_engine.mirror import CartMirror
from popcart_engine.models import BxgyOffer, Cart
from popcart_engine.state import OfferEntitlement, ReconciliationState, compute_state_digest
from popcart_engine.tiers import RewardTierEngine, TierProgress
from popcart_engine.tiers import progress as tier_progress

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PassReport:
    """Audit record of one reconciliation pass."""

    pass_number:  int
    reason:       str
    started_at:   float
    mutations:    int = 0
    aborted:      bool = False
    abort_reason: str = ""
    applied_reward_keys: List[str] = field(default_factory=list)
    entitlements:    Dict[str, Dict[str, Any]] = field(default_factory=dict)
    free_allocation: Dict[str, int] = field(default_factory=dict)
    state_digest: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_number": self.pass_number,
            "reason": self.reason,
            "started_at": self.started_at,
            "mutations": self.mutations,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "applied_reward_keys": list(self.applied_reward_keys),
            "entitlements": dict(self.entitlements),
            "free_allocation": dict(self.free_allocation),
            "state_digest": self.state_digest,
        }


class ReconciliationLoop:
    """
    Owns the session state and is the only caller of CartMirror.mutate
    (through the two engines).

    Usage:
        loop = ReconciliationLoop(mirror, config, catalog)
        report = await loop.run_pass("cart edited")
    """

    def __init__(
        self,
        mirror: CartMirror,
        config: EngineConfig,
        catalog: Catalog,
        clock: Callable[[], float] = time.monotonic,
        state: Optional[ReconciliationState] = None,
    ) -> None:
        self.mirror = mirror
        self.config = config
        self.clock = clock
        self.state = state or ReconciliationState()
        self.tiers = RewardTierEngine(mirror, catalog)
        self.bxgy = BxgyEngine(mirror, catalog, clock, config.cooldown_seconds)
        self.reports: List[PassReport] = []
        self._lock = asyncio.Lock()
        self._active = 0
        # triggers that had to wait for a pass in flight, and the most
        # passes or picks ever seen running at once (1 when serialised)
        self.queued_triggers = 0
        self.peak_concurrency = 0

    @property
    def in_flight(self) -> bool:
        return self.state.in_flight

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    async def run_pass(self, reason: str = "external") -> PassReport:
        """Run one pass, waiting for any pass already in flight."""
        if self._lock.locked():
            self.queued_triggers += 1
            logger.debug("Pass requested (%s) while another is in flight; waiting", reason)
        async with self._lock:
            self._enter()
            try:
                return await self._run_pass(reason)
            finally:
                self._leave()

    def _enter(self) -> None:
        self._active += 1
        self.peak_concurrency = max(self.peak_concurrency, self._active)
        self.state.in_flight = True

    def _leave(self) -> None:
        self._active -= 1
        self.state.in_flight = self._active > 0

    async def _run_pass(self, reason: str) -> PassReport:
        state = self.state
        state.pass_count += 1
        report = PassReport(pass_number=state.pass_count, reason=reason, started_at=self.clock())
        writes_before = len(self.mirror.mutation_log)

        try:
            cart = (await self.mirror.refresh()).unwrap()
            await self.tiers.run(self.config.tiers, cart, state)
            # with no active offers this only sweeps orphaned free lines
            await self.bxgy.run(self.config.active_offers, cart, state)
        except (TransportError, RejectedByRemote) as exc:
            report.aborted = True
            report.abort_reason = str(exc)
            logger.error("Pass %d (%s) aborted: %s", report.pass_number, reason, exc)

        report.mutations = len(self.mirror.mutation_log) - writes_before
        if report.mutations:
            # verify convergence once; this never triggers another pass
            follow_up = await self.mirror.refresh()
            if not follow_up.ok:
                logger.warning("Follow-up refresh failed: %s", follow_up.error)

        report.applied_reward_keys = sorted(state.applied_reward_keys)
        report.entitlements = {
            k: v.to_dict() for k, v in sorted(state.last_bxgy_entitlement.items())
        }
        report.free_allocation = dict(sorted(state.free_allocation.items()))
        report.state_digest = compute_state_digest(state)
        self.reports.append(report)

        logger.info(
            "Pass %d (%s): %d mutation(s)%s",
            report.pass_number, reason, report.mutations,
            " [aborted]" if report.aborted else "",
        )
        return report

    async def add_selection_item(self, offer_key: str, variant_id: str) -> CallResult[Cart]:
        """Picker action: add one unit, then reconcile."""
        offer = self._offer(offer_key)
        if self._lock.locked():
            self.queued_triggers += 1
        async with self._lock:
            self._enter()
            try:
                result = await self.bxgy.add_selection_item(offer, variant_id, self.state)
            finally:
                self._leave()
        await self.run_pass(f"selection add {variant_id}")
        return result

    async def run_forever(self) -> None:
        """Consume the change feed until it is closed."""
        feed = self.mirror.feed
        if feed is None:
            raise RuntimeError("run_forever needs a CartMirror with a ChangeFeed")
        await self.run_pass("initial load")
        while True:
            change = await feed.next()
            if change is None:
                logger.info("Change feed closed after %d pass(es)", self.state.pass_count)
                return
            if change.internal:
                logger.debug("Ignoring internal change: %s", change.reason)
                continue
            await self.run_pass(change.reason or "external")

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def _offer(self, offer_key: str) -> BxgyOffer:
        for offer in self.config.active_offers:
            if offer.key == offer_key:
                return offer
        raise KeyError(f"no active BXGY offer {offer_key!r}")

    def rows(self) -> List[LineRows]:
        """Paid/free rows for every line in the current snapshot."""
        cart = self.mirror.snapshot
        if cart is None:
            return []
        allocation = self.state.free_allocation
        return [
            split_rows(line, line.quantity if line.is_engine_free
                       else min(allocation.get(line.key, 0), line.quantity))
            for line in cart.items
        ]

    def tier_progress(self) -> Optional[TierProgress]:
        if self.mirror.snapshot is None:
            return None
        return tier_progress(self.config.tiers, self.mirror.snapshot)

    def offer_progress(self, offer_key: str) -> BxgyProgress:
        offer = self._offer(offer_key)
        entitlement = self.state.last_bxgy_entitlement.get(offer.key, OfferEntitlement())
        return bxgy_progress(offer, entitlement)
