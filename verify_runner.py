"""Quick API verification for the sandbox storefront.

Start the sandbox first:
    python -m popcart_engine.cli generate --output session.json
    python -m popcart_engine.cli serve --session session.json
"""
import sys

import requests

base = "http://127.0.0.1:5050"

tests = [
    ("Scenarios loaded", "GET", "/api/scenarios", None, lambda r: len(r.json()) == 7),
    ("Cart readable", "GET", "/cart.js", None,
     lambda r: r.status_code == 200 and "items" in r.json() and "total_price" in r.json()),
    ("Settings served", "GET", "/apps/popcart", None, lambda r: r.status_code == 200),
    ("Unknown product is 404", "GET", "/products/does-not-exist.js", None,
     lambda r: r.status_code == 404 and r.json()["status"] == 404),
    ("Unknown line is rejected", "POST", "/cart/change.js", {"id": "nope", "quantity": 1},
     lambda r: r.status_code == 400 and "description" in r.json()),
    ("Cheapest entitlement (B=3,G=3,Q=4 -> 1)", "POST", "/api/run-test", {
        "scenario": "cheapest_entitlement",
        "params": {"buy_quantity": 3, "get_quantity": 3, "qualifying_qty": 4, "expected": 1},
    }, lambda r: r.json()["passed"]),
    ("Cheapest entitlement (B=3,G=3,Q=10 -> 3)", "POST", "/api/run-test", {
        "scenario": "cheapest_entitlement",
        "params": {"buy_quantity": 3, "get_quantity": 3, "qualifying_qty": 10, "expected": 3},
    }, lambda r: r.json()["passed"]),
    ("Cycle entitlement (B=3,G=1,Q=8 -> 2)", "POST", "/api/run-test", {
        "scenario": "cycle_entitlement",
        "params": {"reward_mode": "selection", "buy_quantity": 3, "get_quantity": 1,
                   "qualifying_qty": 8, "expected": 2},
    }, lambda r: r.json()["passed"]),
    ("Automatic mode adds free units", "POST", "/api/run-test", {
        "scenario": "cycle_entitlement",
        "params": {"reward_mode": "automatic", "buy_quantity": 3, "get_quantity": 1,
                   "qualifying_qty": 6, "expected": 2},
    }, lambda r: r.json()["passed"] and r.json()["free_units_in_cart"] == 2),
    ("Threshold loss", "POST", "/api/run-test", {
        "scenario": "threshold_loss",
        "params": {"buy_quantity": 3, "paid_qty": 3, "paid_qty_after": 1},
    }, lambda r: r.json()["passed"] and r.json()["cooldown_active"]),
    ("Allocation", "POST", "/api/run-test", {
        "scenario": "allocation",
        "params": {"lines": "A:500:3, B:200:2, C:800:1", "entitlement": 3, "expected": "A:1, B:2"},
    }, lambda r: r.json()["passed"]),
    ("Discount tie-break", "POST", "/api/run-test", {
        "scenario": "discount_tiebreak",
        "params": {"percent_value": "10", "fixed_value": "5000", "expected_type": "discount_percent"},
    }, lambda r: r.json()["passed"]),
    ("Tier idempotence", "POST", "/api/run-test", {
        "scenario": "tier_idempotence", "params": {"cart_total": 12000},
    }, lambda r: r.json()["passed"]),
    ("Re-entrancy", "POST", "/api/run-test", {
        "scenario": "reentrancy", "params": {"triggers": 3},
    }, lambda r: r.json()["passed"]),
]

print("=" * 60)
ok = 0
for name, method, path, body, check in tests:
    try:
        if method == "GET":
            r = requests.get(base + path, timeout=10)
        else:
            r = requests.post(base + path, json=body, timeout=10)
        passed = check(r)
        status = "PASS" if passed else "FAIL"
        detail = ""
        if not passed:
            detail = f" | {r.text[:120]}"
    except Exception as exc:
        status = "ERR"
        detail = f" | {exc}"
        passed = False
    print(f"  {'✅' if passed else '❌'} [{status}] {name}{detail}")
    if passed:
        ok += 1

print(f"\n  {ok}/{len(tests)} passed")
print("=" * 60)
if ok != len(tests):
    sys.exit(1)
