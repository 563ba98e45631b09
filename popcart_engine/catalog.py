"""
Catalog collaborator: resolves product handles to purchasable variants and
collection handles to product-id sets.

Lookups are async because the storefront serves them over the network.
Unknown handles raise RejectedByRemote; the engines treat any lookup
failure as "this tier/offer is inapplicable for this pass".
"""
from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

import requests

from popcart_engine.errors import RejectedByRemote, TransportError
from popcart_engine.models import Variant, normalize_id
from popcart_engine.transport import HTTP_TIMEOUT_SECONDS, StockEntry, raise_for_remote

logger = logging.getLogger(__name__)


class Catalog(abc.ABC):
    @abc.abstractmethod
    async def resolve(self, handle: str) -> Variant:
        """Return the first variant of the product with this handle."""

    @abc.abstractmethod
    async def collection_product_ids(self, handle: str) -> FrozenSet[str]:
        """Return the ids of all products in a collection."""


class StaticCatalog(Catalog):
    """Dictionary-backed catalog for tests, simulation and the sandbox."""

    def __init__(
        self,
        variants: Mapping[str, Variant],
        collections: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self.variants = dict(variants)
        self.collections = {k: frozenset(normalize_id(p) for p in v)
                            for k, v in (collections or {}).items()}
        self.lookups = 0

    @staticmethod
    def from_stock(entries: Iterable[StockEntry]) -> "StaticCatalog":
        variants: Dict[str, Variant] = {}
        collections: Dict[str, set] = {}
        for e in entries:
            if e.handle and e.handle not in variants:
                variants[e.handle] = Variant(
                    id=e.variant_id, product_id=e.product_id, handle=e.handle,
                    title=e.title, price=e.price,
                    available=e.stock is None or e.stock > 0,
                )
            for c in e.collections:
                collections.setdefault(c, set()).add(e.product_id)
        return StaticCatalog(variants, collections)

    async def resolve(self, handle: str) -> Variant:
        self.lookups += 1
        await asyncio.sleep(0)
        try:
            return self.variants[handle]
        except KeyError:
            raise RejectedByRemote(f"unknown product handle {handle!r}", status=404) from None

    async def collection_product_ids(self, handle: str) -> FrozenSet[str]:
        self.lookups += 1
        await asyncio.sleep(0)
        try:
            return self.collections[handle]
        except KeyError:
            raise RejectedByRemote(f"unknown collection {handle!r}", status=404) from None


class HttpCatalog(Catalog):
    """Catalog backed by the storefront's /products/<handle>.js endpoint."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get_json(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"GET {url} failed: {exc}") from exc
        raise_for_remote(response)
        return response.json()

    def _resolve_sync(self, handle: str) -> Variant:
        product = self._get_json(f"/products/{handle}.js")
        variants = product.get("variants") or []
        if not variants:
            raise RejectedByRemote(f"product {handle!r} has no variants", status=404)
        first = variants[0]
        images = product.get("images") or []
        return Variant(
            id=normalize_id(first["id"]),
            product_id=normalize_id(product.get("id", "")),
            handle=handle,
            title=str(product.get("title", "")),
            price=int(first.get("price", 0)),
            available=bool(first.get("available", True)),
            image=images[0] if images else None,
        )

    def _collection_sync(self, handle: str) -> FrozenSet[str]:
        data = self._get_json(f"/collections/{handle}/products.json")
        return frozenset(normalize_id(p["id"]) for p in data.get("products", []))

    async def resolve(self, handle: str) -> Variant:
        logger.debug("Resolving product handle %s", handle)
        return await asyncio.to_thread(self._resolve_sync, handle)

    async def collection_product_ids(self, handle: str) -> FrozenSet[str]:
        logger.debug("Resolving collection %s", handle)
        return await asyncio.to_thread(self._collection_sync, handle)
