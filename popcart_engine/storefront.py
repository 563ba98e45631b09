"""
Sandbox storefront for the PopCart engine.

A Flask app that plays the storefront the engine talks to: the AJAX cart
API backed by an in-memory CartStore, product/collection lookups, the app
proxy serving the promotion settings, and a scenario runner that executes
canned engine scenarios without writing code.

Usage:
    python -m popcart_engine.cli serve --session session.json
    # Cart API at http://localhost:5050/cart.js
"""
from __future__ import annotations

import asyncio
import traceback
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from popcart_engine.allocator import allocate_cheapest, render_rows
from popcart_engine.bxgy import earned_free_items
from popcart_engine.errors import RejectedByRemote, TransportError
from popcart_engine.models import (
    BXGY_COOLDOWN_SECONDS,
    MODE_CHEAPEST,
    MODE_SELECTION,
    REWARD_DISCOUNT_FIXED,
    REWARD_DISCOUNT_PERCENT,
    CartLineItem,
    RewardTier,
    normalize_id,
)
from popcart_engine.simulate import build_session
from popcart_engine.tiers import best_discount
from popcart_engine.transport import CartStore

DEFAULT_PORT = 5050

# -----------------------------------------------------------------------
# Scenario definitions
# -----------------------------------------------------------------------
SCENARIOS: List[Dict[str, Any]] = [
    {
        "id": "cheapest_entitlement",
        "name": "Cheapest-in-cart entitlement",
        "description": "Free units earned in cheapest_in_cart mode: max(0, min(G, Q - B)).",
        "fields": [
            {"name": "buy_quantity", "label": "Buy (B)", "type": "number", "default": 3},
            {"name": "get_quantity", "label": "Get (G)", "type": "number", "default": 3},
            {"name": "qualifying_qty", "label": "Qualifying units (Q)", "type": "number", "default": 6},
            {"name": "expected", "label": "Expected free units", "type": "number", "default": 3},
        ],
    },
    {
        "id": "cycle_entitlement",
        "name": "Selection / automatic entitlement",
        "description": "Free units earned per completed cycle: floor(Q / B) * G.",
        "fields": [
            {"name": "reward_mode", "label": "Mode", "type": "select", "default": "selection",
             "options": ["selection", "automatic"]},
            {"name": "buy_quantity", "label": "Buy (B)", "type": "number", "default": 3},
            {"name": "get_quantity", "label": "Get (G)", "type": "number", "default": 1},
            {"name": "qualifying_qty", "label": "Qualifying units (Q)", "type": "number", "default": 8},
            {"name": "expected", "label": "Expected free units", "type": "number", "default": 2},
        ],
    },
    {
        "id": "threshold_loss",
        "name": "Threshold loss removes free items",
        "description": "Claim free selection items, then drop below the buy quantity inside the cooldown window.",
        "fields": [
            {"name": "buy_quantity", "label": "Buy (B)", "type": "number", "default": 3},
            {"name": "paid_qty", "label": "Paid units before", "type": "number", "default": 3},
            {"name": "paid_qty_after", "label": "Paid units after", "type": "number", "default": 1},
        ],
    },
    {
        "id": "allocation",
        "name": "Cheapest-first allocation",
        "description": "Which units become free: cheapest first, ties in cart order.",
        "fields": [
            {"name": "lines", "label": "Lines (key:price:qty, ...)", "type": "text",
             "default": "A:500:3, B:200:2, C:800:1"},
            {"name": "entitlement", "label": "Entitlement (N)", "type": "number", "default": 3},
            {"name": "expected", "label": "Expected (key:free, ...)", "type": "text", "default": "A:1, B:2"},
        ],
    },
    {
        "id": "discount_tiebreak",
        "name": "Best discount",
        "description": "Percent beats fixed on a type mismatch; within a type the larger value wins.",
        "fields": [
            {"name": "percent_value", "label": "Percent tier value", "type": "text", "default": "10"},
            {"name": "fixed_value", "label": "Fixed tier value (cents)", "type": "text", "default": "5000"},
            {"name": "expected_type", "label": "Expected winner", "type": "select",
             "default": REWARD_DISCOUNT_PERCENT, "options": [REWARD_DISCOUNT_PERCENT, REWARD_DISCOUNT_FIXED]},
        ],
    },
    {
        "id": "tier_idempotence",
        "name": "Tier idempotence",
        "description": "A second pass against an unchanged cart issues no mutations.",
        "fields": [
            {"name": "cart_total", "label": "Cart total (cents)", "type": "number", "default": 12000},
        ],
    },
    {
        "id": "reentrancy",
        "name": "Re-entrancy guard",
        "description": "Two triggers fired together run as two passes, one after the other.",
        "fields": [
            {"name": "triggers", "label": "Simultaneous triggers", "type": "number", "default": 2},
        ],
    },
]


# -----------------------------------------------------------------------
# Scenario helpers
# -----------------------------------------------------------------------
def _catalog_entry(variant: str, product: str, price: int, handle: str, **extra: Any) -> Dict[str, Any]:
    entry = {"variant_id": variant, "product_id": product, "price": price,
             "handle": handle, "title": handle.replace("-", " ").title()}
    entry.update(extra)
    return entry


def _offer_payload(mode: str, buy: int, get: int) -> Dict[str, Any]:
    return {
        "title": "Scenario Offer",
        "buyQuantity": buy,
        "getQuantity": get,
        "rewardMode": mode,
        "appliesToType": "products",
        "productIds": '["gid://shopify/Product/10"]',
        "selectionProductIds": "freebie",
        "automaticProductHandle": "freebie",
    }


def _bxgy_session(mode: str, buy: int, get: int, qty: int) -> Dict[str, Any]:
    return {
        "config": {"settings": {"bxgyEnabled": True}, "bxgyOffers": [_offer_payload(mode, buy, get)]},
        "catalog": [
            _catalog_entry("1000", "10", 1500, "qualifier"),
            _catalog_entry("2000", "20", 400, "freebie"),
        ],
        "cart": [{"variant_id": "1000", "quantity": qty}] if qty > 0 else [],
    }


def _parse_pairs(raw: str) -> List[List[str]]:
    return [part.strip().split(":") for part in raw.split(",") if part.strip()]


# -----------------------------------------------------------------------
# Scenario runners
# -----------------------------------------------------------------------
def _run_cheapest_entitlement(params: Dict) -> Dict[str, Any]:
    buy = int(params["buy_quantity"])
    get = int(params["get_quantity"])
    qty = int(params["qualifying_qty"])
    expected = int(params["expected"])

    _, loop, _ = build_session(_bxgy_session(MODE_CHEAPEST, buy, get, qty))
    report = asyncio.run(loop.run_pass("scenario"))
    entitlement = loop.state.last_bxgy_entitlement["Scenario Offer"]

    return {
        "passed": entitlement.earned_free_items == expected,
        "actual": entitlement.earned_free_items,
        "expected": expected,
        "free_allocation": report.free_allocation,
        "phase": entitlement.phase,
        "explanation": f"B={buy}, G={get}, Q={qty} -> max(0, min({get}, {qty - buy}))",
    }


def _run_cycle_entitlement(params: Dict) -> Dict[str, Any]:
    mode = params["reward_mode"]
    buy = int(params["buy_quantity"])
    get = int(params["get_quantity"])
    qty = int(params["qualifying_qty"])
    expected = int(params["expected"])

    store, loop, _ = build_session(_bxgy_session(mode, buy, get, qty))
    asyncio.run(loop.run_pass("scenario"))
    entitlement = loop.state.last_bxgy_entitlement["Scenario Offer"]
    free_lines = store.snapshot().bxgy_free_lines("Scenario Offer")

    return {
        "passed": entitlement.earned_free_items == expected,
        "actual": entitlement.earned_free_items,
        "expected": expected,
        "cycles": entitlement.cycles,
        "free_units_in_cart": sum(line.quantity for line in free_lines),
        "explanation": f"floor({qty} / {buy}) * {get}",
    }


def _run_threshold_loss(params: Dict) -> Dict[str, Any]:
    buy = int(params["buy_quantity"])
    before = int(params["paid_qty"])
    after = int(params["paid_qty_after"])

    store, loop, clock = build_session(_bxgy_session(MODE_SELECTION, buy, 1, before))

    async def play() -> None:
        await loop.run_pass("initial load")
        await loop.add_selection_item("Scenario Offer", "2000")
        store.change(store.snapshot().items[0].key, after)
        clock.advance(BXGY_COOLDOWN_SECONDS / 4)
        await loop.run_pass("quantity change")

    asyncio.run(play())
    remaining = sum(line.quantity for line in store.snapshot().bxgy_free_lines("Scenario Offer"))
    earned_after = earned_free_items(loop.config.offers[0], after)
    cooldown_active = not loop.state.cooldown_elapsed(clock())

    return {
        "passed": earned_after > 0 or remaining == 0,
        "earned_after": earned_after,
        "free_units_remaining": remaining,
        "cooldown_active": cooldown_active,
        "explanation": (
            "Entitlement fell to zero: free units removed regardless of cooldown."
            if earned_after == 0 else "Entitlement still positive: excess waits for the cooldown."
        ),
    }


def _run_allocation(params: Dict) -> Dict[str, Any]:
    lines = [
        CartLineItem(key=key, product_id=key, variant_id=key, quantity=int(qty), unit_price=int(price))
        for key, price, qty in _parse_pairs(params["lines"])
    ]
    entitlement = int(params["entitlement"])
    expected = {key: int(free) for key, free in _parse_pairs(params.get("expected", ""))}

    allocation = allocate_cheapest(lines, entitlement)
    rows = render_rows(lines, allocation)
    return {
        "passed": allocation == expected,
        "actual": allocation,
        "expected": expected,
        "rows": [{"key": r.key, "paid": r.paid, "free": r.free} for r in rows],
    }


def _run_discount_tiebreak(params: Dict) -> Dict[str, Any]:
    tiers = [
        RewardTier(threshold=1000, reward_type=REWARD_DISCOUNT_PERCENT,
                   reward_value=str(params["percent_value"]), title="Percent"),
        RewardTier(threshold=1000, reward_type=REWARD_DISCOUNT_FIXED,
                   reward_value=str(params["fixed_value"]), title="Fixed"),
    ]
    best = best_discount(tiers)
    actual = best.reward_type if best else None
    return {
        "passed": actual == params["expected_type"],
        "actual": actual,
        "expected": params["expected_type"],
        "value": best.reward_value if best else None,
    }


def _run_tier_idempotence(params: Dict) -> Dict[str, Any]:
    total = int(params["cart_total"])
    session = {
        "config": {
            "rewardTiers": [
                {"threshold": 5000, "rewardType": "free_shipping", "title": "Free shipping"},
                {"threshold": 10000, "rewardType": "free_gift", "rewardValue": "freebie", "title": "Gift"},
            ],
        },
        "catalog": [
            _catalog_entry("1000", "10", 1, "qualifier"),
            _catalog_entry("2000", "20", 400, "freebie"),
        ],
        "cart": [{"variant_id": "1000", "quantity": total}] if total > 0 else [],
    }
    _, loop, _ = build_session(session)

    async def play() -> List[int]:
        first = await loop.run_pass("first")
        second = await loop.run_pass("second")
        return [first.mutations, second.mutations]

    mutations = asyncio.run(play())
    return {
        "passed": mutations[1] == 0,
        "mutations": mutations,
        "applied_reward_keys": sorted(loop.state.applied_reward_keys),
    }


def _run_reentrancy(params: Dict) -> Dict[str, Any]:
    triggers = max(1, int(params["triggers"]))
    _, loop, _ = build_session(_bxgy_session(MODE_CHEAPEST, 3, 1, 4))
    loop.mirror.transport.latency = 0.001

    async def play() -> None:
        await asyncio.gather(*(loop.run_pass(f"trigger {i}") for i in range(triggers)))

    asyncio.run(play())
    return {
        "passed": loop.peak_concurrency == 1 and len(loop.reports) == triggers,
        "passes": [r.pass_number for r in loop.reports],
        "queued": loop.queued_triggers,
        "peak_concurrency": loop.peak_concurrency,
        "trace": [f"pass {r.pass_number}: {r.reason}" for r in loop.reports],
    }


RUNNERS = {
    "cheapest_entitlement": _run_cheapest_entitlement,
    "cycle_entitlement": _run_cycle_entitlement,
    "threshold_loss": _run_threshold_loss,
    "allocation": _run_allocation,
    "discount_tiebreak": _run_discount_tiebreak,
    "tier_idempotence": _run_tier_idempotence,
    "reentrancy": _run_reentrancy,
}


# -----------------------------------------------------------------------
# Storefront JSON shapes
# -----------------------------------------------------------------------
def _error(exc: RejectedByRemote) -> Any:
    body = {"status": exc.status, "message": str(exc), "description": exc.description}
    return jsonify(body), exc.status


def _product_json(store: CartStore, handle: str) -> Optional[Dict[str, Any]]:
    entries = [v for v in store.variants.values() if v.handle == handle]
    if not entries:
        return None
    first = entries[0]
    return {
        "id": int(first.product_id) if first.product_id.isdigit() else first.product_id,
        "title": first.title,
        "handle": handle,
        "images": [],
        "variants": [
            {
                "id": int(v.variant_id) if v.variant_id.isdigit() else v.variant_id,
                "price": v.price,
                "available": v.stock is None or v.stock > 0,
            }
            for v in entries
        ],
    }


# -----------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------
def create_app(store: Optional[CartStore] = None, config_payload: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config["CART_STORE"] = store or CartStore()
    app.config["POPCART_SETTINGS"] = config_payload or {}

    def cart_store() -> CartStore:
        return app.config["CART_STORE"]

    @app.errorhandler(RejectedByRemote)
    def handle_rejected(exc: RejectedByRemote):
        return _error(exc)

    @app.errorhandler(TransportError)
    def handle_transport(exc: TransportError):
        status = exc.status or 503
        return jsonify({"status": status, "message": str(exc), "description": "Service unavailable"}), status

    # ---- Cart API ----
    @app.route("/cart.js")
    def get_cart():
        s = cart_store()
        s.fetch()
        return jsonify(s.to_json())

    @app.route("/cart/add.js", methods=["POST"])
    def add_to_cart():
        data = request.get_json(silent=True) or {}
        items = data.get("items") or [data]
        s = cart_store()
        for item in items:
            if "id" not in item:
                raise RejectedByRemote("missing variant id", status=422, description="Parameter Missing: id")
            s.add(str(item["id"]), int(item.get("quantity", 1)), item.get("properties") or {})
        # the storefront answers with the added line(s), not the cart
        added_ids = {normalize_id(item["id"]) for item in items}
        added = [line for line in s.to_json()["items"] if line["variant_id"] in added_ids]
        if len(items) > 1:
            return jsonify({"items": added})
        return jsonify(added[-1] if added else {})

    @app.route("/cart/change.js", methods=["POST"])
    def change_cart():
        data = request.get_json(silent=True) or {}
        if "id" not in data or "quantity" not in data:
            raise RejectedByRemote("missing line id or quantity", status=400,
                                   description="Parameter Missing: id, quantity")
        s = cart_store()
        s.change(str(data["id"]), int(data["quantity"]))
        return jsonify(s.to_json())

    @app.route("/cart/update.js", methods=["POST"])
    def update_cart():
        data = request.get_json(silent=True) or {}
        attributes = {str(k): "" if v is None else str(v) for k, v in (data.get("attributes") or {}).items()}
        s = cart_store()
        s.update_attributes(attributes)
        return jsonify(s.to_json())

    # ---- Catalog ----
    @app.route("/products/<handle>.js")
    def get_product(handle: str):
        product = _product_json(cart_store(), handle)
        if product is None:
            raise RejectedByRemote(f"unknown product {handle!r}", status=404, description="Not Found")
        return jsonify(product)

    @app.route("/collections/<handle>/products.json")
    def get_collection(handle: str):
        entries = [v for v in cart_store().variants.values() if handle in v.collections]
        if not entries:
            raise RejectedByRemote(f"unknown collection {handle!r}", status=404, description="Not Found")
        seen: Dict[str, Dict[str, Any]] = {}
        for v in entries:
            seen.setdefault(v.product_id, {"id": v.product_id, "handle": v.handle, "title": v.title})
        return jsonify({"products": list(seen.values())})

    # ---- App proxy ----
    @app.route("/apps/popcart")
    def get_settings():
        return jsonify(app.config["POPCART_SETTINGS"])

    # ---- Scenario runner ----
    @app.route("/")
    def index():
        return jsonify({
            "name": "PopCart sandbox storefront",
            "scenarios": [s["id"] for s in SCENARIOS],
        })

    @app.route("/api/scenarios")
    def get_scenarios():
        return jsonify(SCENARIOS)

    @app.route("/api/run-test", methods=["POST"])
    def run_test():
        data = request.get_json(silent=True) or {}
        scenario_id = data.get("scenario")
        params = data.get("params", {})

        runner = RUNNERS.get(scenario_id)
        if not runner:
            return jsonify({"error": f"Unknown scenario: {scenario_id}"}), 400

        defaults = {
            f["name"]: f["default"]
            for s in SCENARIOS if s["id"] == scenario_id
            for f in s["fields"]
        }
        try:
            return jsonify(runner({**defaults, **params}))
        except Exception as exc:
            return jsonify({
                "passed": False,
                "error": str(exc),
                "traceback": traceback.format_exc(),
            }), 200

    return app
