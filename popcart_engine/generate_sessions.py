"""
Synthetic session generator.

Writes a session script (see simulate.py) that exercises:
  - reward tiers, including a free gift unlocked and lost again
  - all three BXGY modes (cheapest_in_cart, selection, automatic)
  - threshold loss with free units in the cart
  - rapid edits inside the cooldown window
  - injected transport failures
"""
from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any, Dict, List

# Catalog with realistic prices (cents)
PRODUCTS = {
    "classic-tee":     {"variant": "4101", "product": "101", "price": 2000, "collections": ["apparel"]},
    "linen-shirt":     {"variant": "4102", "product": "102", "price": 4500, "collections": ["apparel"]},
    "wool-socks":      {"variant": "4103", "product": "103", "price": 900,  "collections": ["apparel", "accessories"]},
    "canvas-tote":     {"variant": "4104", "product": "104", "price": 1500, "collections": ["accessories"]},
    "enamel-pin":      {"variant": "4105", "product": "105", "price": 500,  "collections": ["accessories"]},
    "sticker-pack":    {"variant": "4106", "product": "106", "price": 300,  "collections": []},
    "gift-keychain":   {"variant": "4107", "product": "107", "price": 800,  "collections": [], "stock": 50},
}

SHOPPER_PRODUCTS = ["classic-tee", "linen-shirt", "wool-socks", "canvas-tote", "enamel-pin"]


def _catalog() -> List[Dict[str, Any]]:
    return [
        {
            "variant_id": p["variant"],
            "product_id": p["product"],
            "price": p["price"],
            "handle": handle,
            "title": handle.replace("-", " ").title(),
            "stock": p.get("stock"),
            "collections": p["collections"],
        }
        for handle, p in PRODUCTS.items()
    ]


def _config(rng: random.Random) -> Dict[str, Any]:
    mode = rng.choice(["cheapest_in_cart", "selection", "automatic"])
    offers: List[Dict[str, Any]] = [{
        "title": "Accessories 3+1",
        "buyQuantity": 3,
        "getQuantity": 1,
        "rewardMode": mode,
        "appliesToType": "collection",
        "collectionId": "accessories",
        "selectionProductIds": "sticker-pack, enamel-pin",
        "automaticProductHandle": "sticker-pack",
        "sortOrder": 0,
    }]
    if rng.random() < 0.5:
        offers.append({
            "title": "Tee Bundle",
            "buyQuantity": 2,
            "getQuantity": 1,
            "rewardMode": "cheapest_in_cart",
            "appliesToType": "products",
            "productIds": json.dumps(["gid://shopify/Product/101", "gid://shopify/Product/102"]),
            "sortOrder": 1,
        })
    return {
        "settings": {"bxgyEnabled": True, "bxgyCooldownSeconds": 2},
        "rewardTiers": [
            {"threshold": 5000, "rewardType": "free_shipping", "title": "Free shipping"},
            {"threshold": 7500, "rewardType": "discount_percent", "rewardValue": "10", "title": "10% off"},
            {"threshold": 10000, "rewardType": "free_gift", "rewardValue": "gift-keychain", "title": "Free keychain"},
            {"threshold": 15000, "rewardType": "discount_fixed", "rewardValue": "1500", "title": "$15 off"},
        ],
        "bxgyOffers": offers,
    }


def generate_session(output_path: str, count: int = 200, seed: int = 42) -> None:
    """Generate a seeded session script with `count` shopper actions."""
    rng = random.Random(seed)
    config = _config(rng)
    selection_offer = config["bxgyOffers"][0]
    quantities = {handle: 0 for handle in SHOPPER_PRODUCTS}
    actions: List[Dict[str, Any]] = []

    while len(actions) < count:
        roll = rng.random()
        handle = rng.choice(SHOPPER_PRODUCTS)
        variant = PRODUCTS[handle]["variant"]

        if roll < 0.40:
            qty = rng.randint(1, 3)
            quantities[handle] += qty
            actions.append({"type": "add", "variant_id": variant, "quantity": qty})
        elif roll < 0.60:
            # includes dropping to zero, which crosses thresholds downwards
            qty = rng.randint(0, max(quantities[handle] - 1, 0))
            quantities[handle] = qty
            actions.append({"type": "set", "variant_id": variant, "quantity": qty})
        elif roll < 0.72:
            actions.append({
                "type": "wait",
                "seconds": rng.choice([0.5, 1.0, 2.5]),
                "reconcile": rng.random() < 0.5,
            })
        elif roll < 0.82 and selection_offer["rewardMode"] == "selection":
            pick = rng.choice(["sticker-pack", "enamel-pin"])
            actions.append({
                "type": "select",
                "offer": selection_offer["title"],
                "variant_id": PRODUCTS[pick]["variant"],
            })
        elif roll < 0.87:
            actions.append({"type": "fail_next", "count": 1, "status": rng.choice([500, 503])})
        else:
            # burst of edits inside one cooldown window, then a full drop
            for _ in range(3):
                quantities[handle] += 1
                actions.append({"type": "add", "variant_id": variant, "quantity": 1})
            quantities[handle] = 0
            actions.append({"type": "set", "variant_id": variant, "quantity": 0})

    session = {
        "config": config,
        "catalog": _catalog(),
        "cart": [{"variant_id": PRODUCTS["classic-tee"]["variant"], "quantity": 1}],
        "actions": actions[:count],
    }

    p = Path(output_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(session, f, indent=2)
