"""
Unit tests for Buy-X-Get-Y entitlement and application.
"""
import asyncio

import pytest

from popcart_engine.bxgy import (
    BxgyEngine,
    bxgy_attributes,
    earned_cycles,
    earned_free_items,
    free_line_properties,
    offer_phase,
    progress,
    qualifies,
    qualifying_quantity,
)
from popcart_engine.catalog import StaticCatalog
from popcart_engine.errors import TransportError
from popcart_engine.mirror import CartMirror
from popcart_engine.models import (
    APPLIES_COLLECTION,
    APPLIES_PRODUCTS,
    ATTR_BXGY_ACTIVE,
    ATTR_BXGY_CYCLES,
    ATTR_BXGY_FREE_ITEMS,
    ATTR_BXGY_OFFER,
    FLAG_TRUE,
    MODE_AUTOMATIC,
    MODE_CHEAPEST,
    MODE_SELECTION,
    PHASE_AT_CAP,
    PHASE_BELOW_THRESHOLD,
    PHASE_EARNING,
    PROP_FREE_GIFT,
    BxgyOffer,
    Cart,
    CartLineItem,
)
from popcart_engine.simulate import ManualClock
from popcart_engine.state import OfferEntitlement, ReconciliationState
from popcart_engine.transport import CartStore, InMemoryCartTransport, StockEntry, line_key


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------
SHIRT, SOCKS, STICKER, PIN = "100", "200", "300", "400"


def _offer(title="Deal", buy=3, get=1, mode=MODE_CHEAPEST, **kw) -> BxgyOffer:
    return BxgyOffer(title=title, buy_quantity=buy, get_quantity=get, reward_mode=mode, **kw)


def _line(key="k", product="10", qty=1, price=1000, props=None) -> CartLineItem:
    return CartLineItem(key=key, product_id=product, variant_id=key, quantity=qty,
                        unit_price=price, properties=props or {})


def _setup(socks=0, shirts=0):
    store = CartStore([
        StockEntry(variant_id=SHIRT, product_id="10", price=2500, handle="shirt", collections=("apparel",)),
        StockEntry(variant_id=SOCKS, product_id="20", price=1000, handle="socks", collections=("apparel",)),
        StockEntry(variant_id=STICKER, product_id="30", price=500, handle="sticker"),
        StockEntry(variant_id=PIN, product_id="40", price=300, handle="pin"),
    ])
    if shirts:
        store.add(SHIRT, shirts)
    if socks:
        store.add(SOCKS, socks)
    store.calls.clear()
    clock = ManualClock()
    mirror = CartMirror(InMemoryCartTransport(store))
    catalog = StaticCatalog.from_stock(store.variants.values())
    engine = BxgyEngine(mirror, catalog, clock=clock, cooldown_seconds=2.0)
    return store, mirror, engine, clock, ReconciliationState()


def _run(engine, mirror, offers, state):
    async def go():
        cart = (await mirror.refresh()).unwrap()
        return await engine.run(offers, cart, state)
    return asyncio.run(go())


def _select(engine, offer, variant_id, state):
    async def go():
        return await engine.add_selection_item(offer, variant_id, state)
    return asyncio.run(go())


def _free_units(store, offer_key="Deal"):
    return sum(line.quantity for line in store.snapshot().bxgy_free_lines(offer_key))


def _set_socks(store, qty):
    store.change(line_key(SOCKS, {}), qty)


# -----------------------------------------------------------------------
# Test: entitlement formulas
# -----------------------------------------------------------------------
class TestEntitlement:
    @pytest.mark.parametrize("qty,expected", [(0, 0), (3, 0), (4, 1), (5, 2), (6, 3), (10, 3)])
    def test_cheapest_mode(self, qty, expected):
        assert earned_free_items(_offer(buy=3, get=3), qty) == expected

    @pytest.mark.parametrize("qty,expected", [(2, 0), (3, 1), (5, 1), (6, 2), (8, 2)])
    def test_selection_mode(self, qty, expected):
        assert earned_free_items(_offer(buy=3, get=1, mode=MODE_SELECTION), qty) == expected

    def test_automatic_mode_matches_selection(self):
        auto = _offer(buy=2, get=3, mode=MODE_AUTOMATIC)
        assert earned_free_items(auto, 5) == 6

    def test_cheapest_must_exceed_buy_quantity(self):
        offer = _offer(buy=3, get=1)
        assert earned_cycles(offer, 3) == 0
        assert earned_cycles(offer, 4) == 1

    def test_cycles_for_selection(self):
        assert earned_cycles(_offer(buy=3, mode=MODE_SELECTION), 7) == 2


class TestQualification:
    def test_all_products(self):
        assert qualifies(_line(), _offer())

    def test_engine_free_lines_never_qualify(self):
        gift = _line(props={PROP_FREE_GIFT: FLAG_TRUE})
        bxgy = _line(props=free_line_properties(_offer()))
        assert not qualifies(gift, _offer())
        assert not qualifies(bxgy, _offer())

    def test_product_list(self):
        offer = _offer(applies_to_type=APPLIES_PRODUCTS, product_ids=frozenset({"10"}))
        assert qualifies(_line(product="10"), offer)
        assert not qualifies(_line(product="11"), offer)

    def test_misconfigured_matches_nothing(self):
        offer = _offer(applies_to_type=APPLIES_PRODUCTS, misconfigured=True)
        assert not qualifies(_line(product="10"), offer)

    def test_collection_without_ids_matches_nothing(self):
        offer = _offer(applies_to_type=APPLIES_COLLECTION, collection_id="apparel")
        assert not qualifies(_line(product="10"), offer, None)
        assert qualifies(_line(product="10"), offer, frozenset({"10"}))

    def test_quantity_sums_qualifying_lines(self):
        cart = Cart(items=(
            _line("a", "10", qty=2),
            _line("b", "11", qty=3),
            _line("c", "10", qty=1, props={PROP_FREE_GIFT: FLAG_TRUE}),
        ))
        offer = _offer(applies_to_type=APPLIES_PRODUCTS, product_ids=frozenset({"10"}))
        assert qualifying_quantity(cart, offer) == 2
        assert qualifying_quantity(cart, _offer()) == 5


class TestPhaseAndProgress:
    def test_phases_cheapest(self):
        offer = _offer(buy=3, get=2)
        assert offer_phase(offer, 0, 0) == PHASE_BELOW_THRESHOLD
        assert offer_phase(offer, 1, 1) == PHASE_EARNING
        assert offer_phase(offer, 2, 2) == PHASE_AT_CAP

    def test_phases_selection(self):
        offer = _offer(mode=MODE_SELECTION)
        assert offer_phase(offer, 2, 1) == PHASE_EARNING
        assert offer_phase(offer, 2, 2) == PHASE_AT_CAP

    def test_cheapest_progress_below_buy(self):
        p = progress(_offer(buy=3, get=1), OfferEntitlement(qualifying_qty=2))
        assert p.total_slots == 4
        assert p.filled_slots == 2
        assert p.items_needed == 2

    def test_cheapest_progress_at_buy_needs_one_more(self):
        p = progress(_offer(buy=3, get=1), OfferEntitlement(qualifying_qty=3))
        assert p.items_needed == 1

    def test_cheapest_progress_earned(self):
        ent = OfferEntitlement(qualifying_qty=4, cycles=1, earned_free_items=1, claimed=1, phase=PHASE_AT_CAP)
        p = progress(_offer(buy=3, get=1), ent)
        assert p.items_needed == 0
        assert p.free_earned == 1
        assert p.phase == PHASE_AT_CAP

    def test_cycle_progress(self):
        ent = OfferEntitlement(qualifying_qty=4, cycles=1, earned_free_items=1, claimed=0)
        p = progress(_offer(buy=3, get=1, mode=MODE_SELECTION), ent)
        assert p.filled_slots == 3
        assert p.items_needed == 2
        assert p.free_remaining == 1

    def test_attributes_aggregate_offers(self):
        a, b = _offer("A"), _offer("B")
        attrs = bxgy_attributes([a, b], {
            "A": OfferEntitlement(cycles=1, earned_free_items=1),
            "B": OfferEntitlement(cycles=0, earned_free_items=0),
        })
        assert attrs == {
            ATTR_BXGY_ACTIVE: "true",
            ATTR_BXGY_CYCLES: "1",
            ATTR_BXGY_FREE_ITEMS: "1",
            ATTR_BXGY_OFFER: "A",
        }

    def test_attributes_inactive(self):
        attrs = bxgy_attributes([_offer("A")], {})
        assert attrs[ATTR_BXGY_ACTIVE] == "false"
        assert attrs[ATTR_BXGY_OFFER] == ""


# -----------------------------------------------------------------------
# Test: cheapest_in_cart mode
# -----------------------------------------------------------------------
class TestCheapestMode:
    def test_allocation_without_cart_writes(self):
        store, mirror, engine, clock, state = _setup(socks=2, shirts=2)
        _run(engine, mirror, [_offer()], state)
        assert state.free_allocation == {line_key(SOCKS, {}): 1}
        assert not [c for c in store.calls if c[0] in ("add", "change")]
        assert state.last_bxgy_entitlement["Deal"].earned_free_items == 1

    def test_below_threshold_allocates_nothing(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [_offer()], state)
        assert state.free_allocation == {}
        assert state.last_bxgy_entitlement["Deal"].phase == PHASE_BELOW_THRESHOLD

    def test_offers_share_line_capacity(self):
        store, mirror, engine, clock, state = _setup(socks=2)
        offers = [_offer("A", buy=1, get=1), _offer("B", buy=1, get=1)]
        _run(engine, mirror, offers, state)
        assert state.free_allocation == {line_key(SOCKS, {}): 2}

    def test_engine_free_lines_do_not_count(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        store.add(STICKER, 2, {PROP_FREE_GIFT: FLAG_TRUE})
        _run(engine, mirror, [_offer()], state)
        assert state.last_bxgy_entitlement["Deal"].qualifying_qty == 3
        assert state.free_allocation == {}

    def test_attributes_pushed_once(self):
        store, mirror, engine, clock, state = _setup(socks=4)
        _run(engine, mirror, [_offer()], state)
        _run(engine, mirror, [_offer()], state)
        assert len([c for c in store.calls if c[0] == "update"]) == 1
        assert store.attributes[ATTR_BXGY_ACTIVE] == "true"
        assert store.attributes[ATTR_BXGY_OFFER] == "Deal"


# -----------------------------------------------------------------------
# Test: selection mode
# -----------------------------------------------------------------------
SELECTION = _offer(mode=MODE_SELECTION, selection_handles=("sticker",))


class TestSelectionMode:
    def test_no_auto_add(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [SELECTION], state)
        assert _free_units(store) == 0
        assert state.last_bxgy_entitlement["Deal"].remaining_free_slots == 1

    def test_pick_is_free_while_slots_remain(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [SELECTION], state)
        result = _select(engine, SELECTION, STICKER, state)
        assert result.ok
        assert _free_units(store) == 1
        # no slot left: the next pick is a paid line
        _select(engine, SELECTION, STICKER, state)
        assert _free_units(store) == 1
        assert store.snapshot().find(line_key(STICKER, {})).quantity == 1

    def test_pick_outside_selection_rejected(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [SELECTION], state)
        with pytest.raises(ValueError):
            _select(engine, SELECTION, PIN, state)

    def test_pick_on_non_selection_offer_rejected(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        with pytest.raises(ValueError):
            _select(engine, _offer(), STICKER, state)

    def test_threshold_loss_ignores_cooldown(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [SELECTION], state)
        _select(engine, SELECTION, STICKER, state)
        assert not state.cooldown_elapsed(clock())

        _set_socks(store, 1)
        clock.advance(0.5)
        _run(engine, mirror, [SELECTION], state)
        assert _free_units(store) == 0
        assert state.last_bxgy_entitlement["Deal"].phase == PHASE_BELOW_THRESHOLD

    def test_partial_decrease_waits_for_cooldown(self):
        store, mirror, engine, clock, state = _setup(socks=6)
        _run(engine, mirror, [SELECTION], state)
        _select(engine, SELECTION, STICKER, state)
        _select(engine, SELECTION, STICKER, state)
        assert _free_units(store) == 2

        _set_socks(store, 4)
        clock.advance(0.5)
        _run(engine, mirror, [SELECTION], state)
        assert _free_units(store) == 2

        clock.advance(2.5)
        _run(engine, mirror, [SELECTION], state)
        assert _free_units(store) == 1
        assert state.last_bxgy_entitlement["Deal"].phase == PHASE_AT_CAP

    def test_removal_is_best_effort(self):
        store, mirror, engine, clock, state = _setup(socks=1)
        store.add(STICKER, 1, free_line_properties(SELECTION))
        store.add(PIN, 1, free_line_properties(SELECTION))

        async def go():
            cart = (await mirror.refresh()).unwrap()
            store.fail_next(1)
            return await engine.run([SELECTION], cart, state)

        asyncio.run(go())
        remaining = store.snapshot().bxgy_free_lines("Deal")
        assert [line.variant_id for line in remaining] == [STICKER]

    def test_pick_uses_live_cart_not_last_pass(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [SELECTION], state)
        assert state.last_bxgy_entitlement["Deal"].remaining_free_slots == 1

        # shopper drops below the threshold; no pass has run since
        _set_socks(store, 2)
        result = _select(engine, SELECTION, STICKER, state)
        assert result.ok
        assert _free_units(store) == 0
        assert store.snapshot().find(line_key(STICKER, {})).quantity == 1
        assert state.last_bxgy_entitlement["Deal"].phase == PHASE_BELOW_THRESHOLD

    def test_pick_before_first_pass_is_free(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        result = _select(engine, SELECTION, STICKER, state)
        assert result.ok
        assert _free_units(store) == 1
        assert state.last_bxgy_entitlement["Deal"].phase == PHASE_AT_CAP

    def test_pick_skipped_when_cart_unreachable(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        store.fail_next(1)
        result = _select(engine, SELECTION, STICKER, state)
        assert result.transport_failed
        assert store.snapshot().find(line_key(STICKER, {})) is None
        assert _free_units(store) == 0

    def test_selection_list_retried_after_lookup_failure(self):
        store, mirror, engine, clock, state = _setup(socks=3)

        class FlakyCatalog(StaticCatalog):
            failures = 1

            async def resolve(self, handle):
                if self.failures:
                    self.failures -= 1
                    raise TransportError("catalog down", status=503)
                return await super().resolve(handle)

        engine.catalog = FlakyCatalog(engine.catalog.variants)
        with pytest.raises(ValueError):
            _select(engine, SELECTION, STICKER, state)
        assert _select(engine, SELECTION, STICKER, state).ok
        assert _free_units(store) == 1


# -----------------------------------------------------------------------
# Test: free lines of offers that no longer exist
# -----------------------------------------------------------------------
class TestOrphanedFreeLines:
    def test_renamed_offer_lines_removed(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        store.add(STICKER, 1, free_line_properties(_offer(title="Old Deal")))
        _run(engine, mirror, [SELECTION], state)
        assert store.snapshot().bxgy_free_lines() == ()
        assert state.last_bxgy_entitlement["Deal"].claimed == 0

    def test_current_offer_lines_kept(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        store.add(STICKER, 1, free_line_properties(SELECTION))
        store.add(PIN, 1, free_line_properties(_offer(title="Gone")))
        _run(engine, mirror, [SELECTION], state)
        assert [line.variant_id for line in store.snapshot().bxgy_free_lines()] == [STICKER]

    def test_no_offers_still_sweeps(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        store.add(STICKER, 2, free_line_properties(SELECTION))
        assert _run(engine, mirror, [], state) == 1
        assert store.snapshot().bxgy_free_lines() == ()
        assert state.free_allocation == {}

    def test_sweep_is_best_effort(self):
        store, mirror, engine, clock, state = _setup()
        store.add(STICKER, 1, free_line_properties(_offer(title="A")))
        store.add(PIN, 1, free_line_properties(_offer(title="B")))

        async def go():
            cart = (await mirror.refresh()).unwrap()
            store.fail_next(1)
            return await engine.run([], cart, state)

        assert asyncio.run(go()) == 1
        assert [line.variant_id for line in store.snapshot().bxgy_free_lines()] == [STICKER]


# -----------------------------------------------------------------------
# Test: automatic mode
# -----------------------------------------------------------------------
AUTOMATIC = _offer(mode=MODE_AUTOMATIC, automatic_product_handle="sticker")


class TestAutomaticMode:
    def test_adds_missing_units_in_one_call(self):
        store, mirror, engine, clock, state = _setup(socks=6)
        _run(engine, mirror, [AUTOMATIC], state)
        adds = [c for c in store.calls if c[0] == "add"]
        assert adds == [("add", STICKER, "2")]
        assert _free_units(store) == 2
        assert state.cooldown_until == 2.0

    def test_excess_removed_after_cooldown(self):
        store, mirror, engine, clock, state = _setup(socks=6)
        _run(engine, mirror, [AUTOMATIC], state)
        _set_socks(store, 3)
        clock.advance(0.5)
        _run(engine, mirror, [AUTOMATIC], state)
        assert _free_units(store) == 2
        clock.advance(2.0)
        _run(engine, mirror, [AUTOMATIC], state)
        assert _free_units(store) == 1

    def test_growth_waits_for_cooldown(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [AUTOMATIC], state)
        store.add(SOCKS, 3)
        clock.advance(1.0)
        _run(engine, mirror, [AUTOMATIC], state)
        assert _free_units(store) == 1
        clock.advance(1.0)
        _run(engine, mirror, [AUTOMATIC], state)
        assert _free_units(store) == 2

    def test_zero_entitlement_removes_immediately(self):
        store, mirror, engine, clock, state = _setup(socks=6)
        _run(engine, mirror, [AUTOMATIC], state)
        _set_socks(store, 1)
        clock.advance(0.1)
        _run(engine, mirror, [AUTOMATIC], state)
        assert _free_units(store) == 0

    def test_variant_id_skips_catalog(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        offer = _offer(mode=MODE_AUTOMATIC, automatic_variant_id=STICKER)
        _run(engine, mirror, [offer], state)
        assert engine.catalog.lookups == 0
        assert _free_units(store) == 1

    def test_missing_product_skips_offer(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        _run(engine, mirror, [_offer(mode=MODE_AUTOMATIC)], state)
        assert _free_units(store) == 0

    def test_unknown_handle_skips_offer(self):
        store, mirror, engine, clock, state = _setup(socks=3)
        offer = _offer(mode=MODE_AUTOMATIC, automatic_product_handle="ghost")
        _run(engine, mirror, [offer], state)
        assert _free_units(store) == 0

    def test_transport_error_propagates(self):
        store, mirror, engine, clock, state = _setup(socks=3)

        async def go():
            cart = (await mirror.refresh()).unwrap()
            store.fail_next(1)
            return await engine.run([AUTOMATIC], cart, state)

        with pytest.raises(TransportError):
            asyncio.run(go())


# -----------------------------------------------------------------------
# Test: product predicates
# -----------------------------------------------------------------------
class TestPredicates:
    def test_collection_lookup_cached(self):
        store, mirror, engine, clock, state = _setup(socks=2, shirts=2)
        store.add(PIN, 5)
        offer = _offer(applies_to_type=APPLIES_COLLECTION, collection_id="apparel")
        _run(engine, mirror, [offer], state)
        _run(engine, mirror, [offer], state)
        assert state.last_bxgy_entitlement["Deal"].qualifying_qty == 4
        assert engine.catalog.lookups == 1

    def test_collection_failure_matches_nothing(self):
        store, mirror, engine, clock, state = _setup(socks=5)
        offer = _offer(applies_to_type=APPLIES_COLLECTION, collection_id="missing")
        _run(engine, mirror, [offer], state)
        assert state.last_bxgy_entitlement["Deal"].qualifying_qty == 0
        assert state.free_allocation == {}

    def test_misconfigured_offer_matches_nothing(self):
        store, mirror, engine, clock, state = _setup(socks=5)
        offer = _offer(applies_to_type=APPLIES_PRODUCTS, misconfigured=True)
        _run(engine, mirror, [offer], state)
        assert state.last_bxgy_entitlement["Deal"].earned_free_items == 0

    def test_product_list(self):
        store, mirror, engine, clock, state = _setup(socks=2, shirts=2)
        offer = _offer(applies_to_type=APPLIES_PRODUCTS, product_ids=frozenset({"20"}))
        _run(engine, mirror, [offer], state)
        assert state.last_bxgy_entitlement["Deal"].qualifying_qty == 2
