"""
Sandbox storefront tests: the AJAX cart API, catalog lookups, the scenario
runner, and the engine driving the sandbox over its HTTP transport.
"""
import asyncio
from urllib.parse import urlsplit

import pytest

from popcart_engine.catalog import HttpCatalog
from popcart_engine.config import parse_config
from popcart_engine.loop import ReconciliationLoop
from popcart_engine.mirror import CartMirror
from popcart_engine.models import ATTR_FREE_SHIPPING, PROP_FREE_GIFT
from popcart_engine.storefront import SCENARIOS, create_app
from popcart_engine.transport import CartStore, HttpCartTransport, StockEntry, line_key

BASE_URL = "http://sandbox.test"

SETTINGS = {
    "settings": {"bxgyEnabled": True},
    "rewardTiers": [
        {"threshold": 5000, "rewardType": "free_shipping", "title": "Ship"},
        {"threshold": 6000, "rewardType": "free_gift", "rewardValue": "gift-mug", "title": "Mug"},
    ],
    "bxgyOffers": [{"title": "Shirts 3+1", "buyQuantity": 3, "getQuantity": 1,
                    "appliesToType": "collection", "collectionId": "apparel"}],
}


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------
def _store() -> CartStore:
    return CartStore([
        StockEntry(variant_id="100", product_id="10", price=1500, handle="shirt", title="Shirt",
                   collections=("apparel",)),
        StockEntry(variant_id="900", product_id="90", price=800, handle="gift-mug", title="Gift Mug",
                   stock=1),
    ])


@pytest.fixture
def store():
    return _store()


@pytest.fixture
def client(store):
    app = create_app(store, SETTINGS)
    app.config["TESTING"] = True
    return app.test_client()


class _Request:
    def __init__(self, method):
        self.method = method


class _Response:
    """The slice of requests.Response the transports read."""

    def __init__(self, response, url, method):
        self._response = response
        self.status_code = response.status_code
        self.url = url
        self.text = response.get_data(as_text=True)
        self.request = _Request(method)

    def json(self):
        data = self._response.get_json(silent=True)
        if data is None:
            raise ValueError("response is not JSON")
        return data


class ClientSession:
    """Routes transport requests into the Flask test client."""

    def __init__(self, client):
        self.client = client

    def request(self, method, url, json=None, timeout=None, headers=None):
        path = urlsplit(url).path
        return _Response(self.client.open(path, method=method, json=json), url, method)

    def get(self, url, timeout=None):
        return self.request("GET", url)


# -----------------------------------------------------------------------
# Test: cart API
# -----------------------------------------------------------------------
class TestCartApi:
    def test_empty_cart(self, client):
        data = client.get("/cart.js").get_json()
        assert data["items"] == []
        assert data["total_price"] == 0

    def test_add_returns_the_line(self, client):
        data = client.post("/cart/add.js", json={"id": 100, "quantity": 2}).get_json()
        assert data["variant_id"] == "100"
        assert data["quantity"] == 2

    def test_add_many(self, client):
        resp = client.post("/cart/add.js", json={"items": [{"id": 100}, {"id": 900}]})
        assert len(resp.get_json()["items"]) == 2

    def test_add_sold_out(self, client):
        resp = client.post("/cart/add.js", json={"id": 900, "quantity": 2})
        assert resp.status_code == 422
        assert "only add 1" in resp.get_json()["description"]

    def test_add_missing_id(self, client):
        assert client.post("/cart/add.js", json={"quantity": 1}).status_code == 422

    def test_change(self, client, store):
        store.add("100", 3)
        data = client.post("/cart/change.js", json={"id": line_key("100", {}), "quantity": 1}).get_json()
        assert data["items"][0]["quantity"] == 1
        assert data["total_price"] == 1500

    def test_change_missing_params(self, client):
        assert client.post("/cart/change.js", json={"id": "x"}).status_code == 400

    def test_change_unknown_line(self, client):
        assert client.post("/cart/change.js", json={"id": "x", "quantity": 1}).status_code == 400

    def test_update_attributes(self, client, store):
        client.post("/cart/update.js", json={"attributes": {"a": "1", "b": None}})
        assert store.attributes == {"a": "1"}

    def test_free_lines_priced_at_zero(self, client, store):
        store.add("900", 1, {PROP_FREE_GIFT: "true"})
        assert client.get("/cart.js").get_json()["total_price"] == 0

    def test_injected_failure(self, client, store):
        store.fail_next(1, status=502)
        assert client.get("/cart.js").status_code == 502
        assert client.get("/cart.js").status_code == 200


class TestCatalogApi:
    def test_product(self, client):
        data = client.get("/products/gift-mug.js").get_json()
        assert data["id"] == 90
        assert data["variants"] == [{"id": 900, "price": 800, "available": True}]

    def test_unknown_product(self, client):
        assert client.get("/products/nope.js").status_code == 404

    def test_collection(self, client):
        data = client.get("/collections/apparel/products.json").get_json()
        assert [p["id"] for p in data["products"]] == ["10"]

    def test_settings(self, client):
        assert client.get("/apps/popcart").get_json() == SETTINGS


# -----------------------------------------------------------------------
# Test: scenario runner
# -----------------------------------------------------------------------
class TestScenarios:
    def test_index_lists_scenarios(self, client):
        assert len(client.get("/").get_json()["scenarios"]) == len(SCENARIOS)

    def test_scenarios_endpoint(self, client):
        data = client.get("/api/scenarios").get_json()
        assert {s["id"] for s in data} == {s["id"] for s in SCENARIOS}

    @pytest.mark.parametrize("scenario_id", [s["id"] for s in SCENARIOS])
    def test_default_scenarios_pass(self, client, scenario_id):
        data = client.post("/api/run-test", json={"scenario": scenario_id}).get_json()
        assert data["passed"], data

    def test_params_override_defaults(self, client):
        data = client.post("/api/run-test", json={
            "scenario": "cheapest_entitlement",
            "params": {"qualifying_qty": 4, "expected": 1},
        }).get_json()
        assert data["passed"]
        assert data["actual"] == 1

    def test_wrong_expectation_fails(self, client):
        data = client.post("/api/run-test", json={
            "scenario": "cheapest_entitlement", "params": {"expected": 99},
        }).get_json()
        assert not data["passed"]

    def test_reentrancy_reports_queued_triggers(self, client):
        data = client.post("/api/run-test", json={
            "scenario": "reentrancy", "params": {"triggers": 3},
        }).get_json()
        assert data["passed"]
        assert data["peak_concurrency"] == 1
        assert data["queued"] == 2
        assert data["trace"] == ["pass 1: trigger 0", "pass 2: trigger 1", "pass 3: trigger 2"]

    def test_runner_error_is_reported(self, client):
        data = client.post("/api/run-test", json={
            "scenario": "allocation", "params": {"entitlement": "lots"},
        }).get_json()
        assert not data["passed"]
        assert "traceback" in data

    def test_unknown_scenario(self, client):
        assert client.post("/api/run-test", json={"scenario": "nope"}).status_code == 400


# -----------------------------------------------------------------------
# Test: engine over HTTP
# -----------------------------------------------------------------------
class TestEngineOverHttp:
    def _loop(self, client):
        session = ClientSession(client)
        mirror = CartMirror(HttpCartTransport(BASE_URL, session=session))
        return ReconciliationLoop(mirror, parse_config(SETTINGS), HttpCatalog(BASE_URL, session=session))

    def test_pass_against_sandbox(self, client, store):
        store.add("100", 4)
        loop = self._loop(client)
        report = asyncio.run(loop.run_pass("http"))
        assert not report.aborted
        assert report.applied_reward_keys == ["free_gift:6000", "free_shipping:5000"]
        assert store.attributes[ATTR_FREE_SHIPPING] == "true"
        gifts = [line for line in store.snapshot().items if line.is_free_gift]
        assert [(g.variant_id, g.quantity) for g in gifts] == [("900", 1)]
        assert report.free_allocation == {line_key("100", {}): 1}

    def test_second_pass_is_quiet(self, client, store):
        store.add("100", 4)
        loop = self._loop(client)
        asyncio.run(loop.run_pass("first"))
        assert asyncio.run(loop.run_pass("second")).mutations == 0

    def test_server_failure_aborts(self, client, store):
        store.add("100", 4)
        store.fail_next(1)
        loop = self._loop(client)
        report = asyncio.run(loop.run_pass("http"))
        assert report.aborted
