"""
Cart resource collaborators.

A CartTransport is the engine's only way to read or write the remote cart.
Two implementations:

  InMemoryCartTransport  wraps a CartStore, the in-process stand-in for the
                         storefront used by the simulator, the sandbox
                         server and the tests.
  HttpCartTransport      speaks the storefront AJAX cart API
                         (/cart.js, /cart/add.js, /cart/change.js,
                         /cart/update.js) with requests.

Transports raise TransportError / RejectedByRemote; turning those into
results is CartMirror's job.
"""
from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

import requests

from popcart_engine.errors import RejectedByRemote, TransportError
from popcart_engine.models import (
    FLAG_TRUE,
    PROP_BXGY_FREE,
    PROP_FREE_GIFT,
    Cart,
    normalize_id,
)

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 10


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------
class CartTransport(abc.ABC):
    """Async access to the remote cart. Every call returns the cart after it."""

    @abc.abstractmethod
    async def fetch_cart(self) -> Cart: ...

    @abc.abstractmethod
    async def change_line(self, key: str, quantity: int) -> Cart: ...

    @abc.abstractmethod
    async def add_line(
        self, variant_id: str, quantity: int, properties: Dict[str, str]
    ) -> Cart: ...

    @abc.abstractmethod
    async def update_attributes(self, attributes: Dict[str, str]) -> Cart: ...


# ---------------------------------------------------------------------------
# In-memory remote cart
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class StockEntry:
    """A variant the store can sell. stock=None means unlimited."""

    variant_id: str
    product_id: str
    price:      int
    handle:     str = ""
    title:      str = ""
    stock:      Optional[int] = None
    collections: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "StockEntry":
        return StockEntry(
            variant_id=normalize_id(d["variant_id"]),
            product_id=normalize_id(d["product_id"]),
            price=int(d["price"]),
            handle=str(d.get("handle", "")),
            title=str(d.get("title", "")),
            stock=None if d.get("stock") is None else int(d["stock"]),
            collections=tuple(d.get("collections", ())),
        )


@dataclass(slots=True)
class _Line:
    key:        str
    variant_id: str
    product_id: str
    quantity:   int
    price:      int
    properties: Dict[str, str] = field(default_factory=dict)


def line_key(variant_id: str, properties: Dict[str, str]) -> str:
    """Same variant + same properties always maps to the same line."""
    canonical = json.dumps(properties, sort_keys=True, separators=(",", ":"))
    digest = hashlib.md5(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{variant_id}:{digest}"


class CartStore:
    """
    Synchronous stand-in for the storefront's cart.

    Lines tagged as engine rewards are priced at zero in the totals, which
    is what the downstream pricing collaborator does with those tags.
    """

    def __init__(self, variants: Iterable[StockEntry] = ()) -> None:
        self.variants: Dict[str, StockEntry] = {v.variant_id: v for v in variants}
        self.lines: List[_Line] = []
        self.attributes: Dict[str, str] = {}
        self.calls: List[Tuple[str, ...]] = []
        self._failures: Deque[TransportError] = deque()

    # ---- test / simulation hooks ----
    def fail_next(self, count: int = 1, status: int = 503) -> None:
        """Make the next `count` calls fail with a TransportError."""
        for _ in range(count):
            self._failures.append(TransportError(f"injected failure ({status})", status=status))

    def clear_failures(self) -> int:
        """Drop injected failures nobody consumed; returns how many were dropped."""
        dropped = len(self._failures)
        self._failures.clear()
        return dropped

    def set_stock(self, variant_id: str, stock: Optional[int]) -> None:
        self.variants[normalize_id(variant_id)].stock = stock

    def _check_failure(self) -> None:
        if self._failures:
            raise self._failures.popleft()

    # ---- cart API ----
    def snapshot(self) -> Cart:
        return Cart.from_dict(self.to_json())

    def to_json(self) -> Dict[str, Any]:
        items = []
        total = 0
        for line in self.lines:
            free = (
                line.properties.get(PROP_FREE_GIFT) == FLAG_TRUE
                or line.properties.get(PROP_BXGY_FREE) == FLAG_TRUE
            )
            line_price = 0 if free else line.price * line.quantity
            total += line_price
            items.append({
                "key": line.key,
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "quantity": line.quantity,
                "price": line.price,
                "line_price": line_price,
                "properties": dict(line.properties),
            })
        return {
            "items": items,
            "total_price": total,
            "item_count": sum(line.quantity for line in self.lines),
            "attributes": dict(self.attributes),
        }

    def _variant_in_cart(self, variant_id: str, excluding: Optional[str] = None) -> int:
        return sum(
            line.quantity for line in self.lines
            if line.variant_id == variant_id and line.key != excluding
        )

    def _check_stock(self, entry: StockEntry, wanted_total: int) -> None:
        if entry.stock is not None and wanted_total > entry.stock:
            raise RejectedByRemote(
                f"variant {entry.variant_id} sold out",
                status=422,
                description=f"You can only add {entry.stock} of {entry.title or entry.handle} to the cart.",
            )

    def add(self, variant_id: str, quantity: int, properties: Optional[Dict[str, str]] = None) -> Cart:
        self._check_failure()
        variant_id = normalize_id(variant_id)
        props = {str(k): str(v) for k, v in (properties or {}).items()}
        self.calls.append(("add", variant_id, str(quantity)))
        entry = self.variants.get(variant_id)
        if entry is None:
            raise RejectedByRemote(f"unknown variant {variant_id}", status=404,
                                   description="Cannot find variant")
        if quantity < 1:
            raise RejectedByRemote(f"invalid quantity {quantity}", status=422)
        self._check_stock(entry, self._variant_in_cart(variant_id) + quantity)

        key = line_key(variant_id, props)
        existing = next((line for line in self.lines if line.key == key), None)
        if existing is not None:
            existing.quantity += quantity
        else:
            self.lines.append(_Line(
                key=key, variant_id=variant_id, product_id=entry.product_id,
                quantity=quantity, price=entry.price, properties=props,
            ))
        return self.snapshot()

    def change(self, key: str, quantity: int) -> Cart:
        self._check_failure()
        self.calls.append(("change", key, str(quantity)))
        line = next((line for line in self.lines if line.key == key), None)
        if line is None:
            raise RejectedByRemote(f"no line with key {key}", status=400,
                                   description="Cannot find line item")
        if quantity < 0:
            raise RejectedByRemote(f"invalid quantity {quantity}", status=422)
        if quantity == 0:
            self.lines.remove(line)
            return self.snapshot()
        entry = self.variants[line.variant_id]
        self._check_stock(entry, self._variant_in_cart(line.variant_id, excluding=key) + quantity)
        line.quantity = quantity
        return self.snapshot()

    def update_attributes(self, attributes: Dict[str, str]) -> Cart:
        self._check_failure()
        self.calls.append(("update",) + tuple(sorted(attributes)))
        for k, v in attributes.items():
            if v in ("", None):
                self.attributes.pop(k, None)
            else:
                self.attributes[k] = str(v)
        return self.snapshot()

    def fetch(self) -> Cart:
        self._check_failure()
        self.calls.append(("fetch",))
        return self.snapshot()


class InMemoryCartTransport(CartTransport):
    """Async facade over a CartStore; each call is a real suspension point."""

    def __init__(self, store: CartStore, latency: float = 0.0) -> None:
        self.store = store
        self.latency = latency

    async def _yield(self) -> None:
        await asyncio.sleep(self.latency)

    async def fetch_cart(self) -> Cart:
        await self._yield()
        return self.store.fetch()

    async def change_line(self, key: str, quantity: int) -> Cart:
        await self._yield()
        return self.store.change(key, quantity)

    async def add_line(self, variant_id: str, quantity: int, properties: Dict[str, str]) -> Cart:
        await self._yield()
        return self.store.add(variant_id, quantity, properties)

    async def update_attributes(self, attributes: Dict[str, str]) -> Cart:
        await self._yield()
        return self.store.update_attributes(attributes)


# ---------------------------------------------------------------------------
# Storefront AJAX API
# ---------------------------------------------------------------------------
def raise_for_remote(response: requests.Response) -> None:
    """Map an HTTP status onto the engine's error taxonomy."""
    if response.status_code >= 500:
        raise TransportError(
            f"{response.request.method if response.request else 'HTTP'} "
            f"{response.url} -> {response.status_code}",
            status=response.status_code,
        )
    if response.status_code >= 400:
        description = ""
        try:
            body = response.json()
            description = str(body.get("description") or body.get("message") or "")
        except ValueError:
            description = response.text[:200]
        raise RejectedByRemote(
            f"{response.url} -> {response.status_code}",
            status=response.status_code,
            description=description,
        )


class HttpCartTransport(CartTransport):
    """Cart transport over the storefront AJAX API.

    requests is blocking, so each call runs in a worker thread; the event
    loop still only ever sees one suspension point per network call.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, json=payload, timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        logger.debug("%s %s -> %d", method, url, response.status_code)
        raise_for_remote(response)
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {url} returned invalid JSON") from exc

    def _fetch_sync(self) -> Cart:
        return Cart.from_dict(self._request("GET", "/cart.js"))

    def _add_sync(self, variant_id: str, quantity: int, properties: Dict[str, str]) -> Cart:
        body: Dict[str, Any] = {"id": int(variant_id) if variant_id.isdigit() else variant_id,
                                "quantity": quantity}
        if properties:
            body["properties"] = properties
        # /cart/add.js answers with the added line, not the cart
        self._request("POST", "/cart/add.js", body)
        return self._fetch_sync()

    async def fetch_cart(self) -> Cart:
        return await asyncio.to_thread(self._fetch_sync)

    async def change_line(self, key: str, quantity: int) -> Cart:
        data = await asyncio.to_thread(
            self._request, "POST", "/cart/change.js", {"id": key, "quantity": quantity},
        )
        return Cart.from_dict(data)

    async def add_line(self, variant_id: str, quantity: int, properties: Dict[str, str]) -> Cart:
        return await asyncio.to_thread(self._add_sync, variant_id, quantity, properties)

    async def update_attributes(self, attributes: Dict[str, str]) -> Cart:
        data = await asyncio.to_thread(
            self._request, "POST", "/cart/update.js", {"attributes": attributes},
        )
        return Cart.from_dict(data)
