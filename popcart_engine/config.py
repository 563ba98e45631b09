"""
Configuration loading for the reconciliation engine.

The storefront serves a loosely-typed settings payload
({"settings": ..., "rewardTiers": [...], "bxgyOffers": [...]}) with
string-encoded lists and optional fields. This module turns it into typed,
validated rules once per session. Bad entries are dropped with a warning;
an offer whose product list cannot be parsed is kept but matches nothing.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import requests

from popcart_engine.errors import ConfigurationError
from popcart_engine.models import (
    APPLIES_ALL,
    APPLIES_PRODUCTS,
    BXGY_COOLDOWN_SECONDS,
    DEFAULT_BUY_QUANTITY,
    DEFAULT_GET_QUANTITY,
    MODE_CHEAPEST,
    BxgyOffer,
    RewardTier,
    normalize_id,
)

logger = logging.getLogger(__name__)

CONFIG_TIMEOUT_SECONDS = 10


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Promotion rules for one session. Read-only to the engine."""

    tiers:            Tuple[RewardTier, ...] = ()
    offers:           Tuple[BxgyOffer, ...] = ()
    bxgy_enabled:     bool = False
    cooldown_seconds: float = BXGY_COOLDOWN_SECONDS
    settings:         Dict[str, Any] = field(default_factory=dict)

    @property
    def active_offers(self) -> Tuple[BxgyOffer, ...]:
        return self.offers if self.bxgy_enabled else ()


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------
def _as_int(value: Any, name: str, default: Optional[int] = None) -> int:
    if value is None or value == "":
        if default is None:
            raise ConfigurationError(f"{name} is required")
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def parse_product_ids(raw: Any) -> FrozenSet[str]:
    """Accept a JSON-encoded list, a plain list, or nothing.

    Raises ConfigurationError when the value is present but unusable.
    """
    if raw is None or raw == "":
        return frozenset()
    values: Any = raw
    if isinstance(raw, str):
        try:
            values = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"productIds is not valid JSON: {raw!r}") from exc
    if not isinstance(values, (list, tuple)):
        raise ConfigurationError(f"productIds must be a list, got {type(values).__name__}")
    ids = [normalize_id(v) for v in values if v is not None and str(v).strip()]
    if not ids:
        raise ConfigurationError("productIds is empty")
    return frozenset(ids)


def parse_handles(raw: Any) -> Tuple[str, ...]:
    """Selection handles come as 'a, b, c' or as a list."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        parts = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        parts = [p.get("productHandle", "") if isinstance(p, dict) else p for p in raw]
    else:
        raise ConfigurationError(f"selection handles must be a string or list, got {raw!r}")
    return tuple(h.strip() for h in map(str, parts) if h.strip())


def parse_tier(d: Dict[str, Any]) -> RewardTier:
    try:
        tier = RewardTier(
            threshold=_as_int(d.get("threshold"), "threshold"),
            reward_type=str(d.get("rewardType", "")),
            reward_value=None if d.get("rewardValue") in (None, "") else str(d["rewardValue"]),
            title=str(d.get("title", "")),
            message=str(d.get("message", "")),
            sort_order=_as_int(d.get("sortOrder"), "sortOrder", default=0),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid reward tier {d!r}: {exc}") from exc

    if tier.is_discount:
        try:
            Decimal(str(tier.reward_value))
        except (InvalidOperation, ValueError) as exc:
            raise ConfigurationError(
                f"Discount tier {tier.key} has non-numeric value {tier.reward_value!r}"
            ) from exc
    return tier


def parse_offer(d: Dict[str, Any]) -> BxgyOffer:
    applies_to = str(d.get("appliesToType") or APPLIES_ALL)
    misconfigured = False
    product_ids: FrozenSet[str] = frozenset()
    if applies_to == APPLIES_PRODUCTS:
        try:
            product_ids = parse_product_ids(d.get("productIds"))
        except ConfigurationError as exc:
            logger.warning(
                "Offer %r: %s; offer will match nothing", d.get("title"), exc,
            )
            misconfigured = True

    automatic_variant = d.get("automaticVariantId")
    try:
        return BxgyOffer(
            title=str(d.get("title") or "BXGY Offer"),
            buy_quantity=_as_int(d.get("buyQuantity"), "buyQuantity", DEFAULT_BUY_QUANTITY),
            get_quantity=_as_int(d.get("getQuantity"), "getQuantity", DEFAULT_GET_QUANTITY),
            reward_mode=str(d.get("rewardMode") or MODE_CHEAPEST),
            applies_to_type=applies_to,
            collection_id=d.get("collectionId") or None,
            product_ids=product_ids,
            selection_handles=parse_handles(d.get("selectionProductIds", d.get("selectionProducts"))),
            automatic_product_handle=d.get("automaticProductHandle") or None,
            automatic_variant_id=normalize_id(automatic_variant) if automatic_variant else None,
            sort_order=_as_int(d.get("sortOrder"), "sortOrder", default=0),
            misconfigured=misconfigured,
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid BXGY offer {d.get('title')!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Payload → EngineConfig
# ---------------------------------------------------------------------------
def parse_config(payload: Dict[str, Any]) -> EngineConfig:
    """Validate a settings payload. Invalid tiers/offers are skipped."""
    settings = payload.get("settings") or {}

    tiers: List[RewardTier] = []
    for raw in payload.get("rewardTiers") or []:
        try:
            tiers.append(parse_tier(raw))
        except ConfigurationError as exc:
            logger.warning("Skipping reward tier: %s", exc)

    offers: List[BxgyOffer] = []
    seen_titles = set()
    for raw in sorted(payload.get("bxgyOffers") or [], key=lambda o: o.get("sortOrder") or 0):
        try:
            offer = parse_offer(raw)
        except ConfigurationError as exc:
            logger.warning("Skipping BXGY offer: %s", exc)
            continue
        if offer.key in seen_titles:
            logger.warning("Skipping BXGY offer %r: duplicate title", offer.key)
            continue
        seen_titles.add(offer.key)
        offers.append(offer)

    cooldown = settings.get("bxgyCooldownSeconds", BXGY_COOLDOWN_SECONDS)
    try:
        cooldown = float(cooldown)
    except (TypeError, ValueError):
        logger.warning("Invalid bxgyCooldownSeconds %r, using default", cooldown)
        cooldown = BXGY_COOLDOWN_SECONDS

    config = EngineConfig(
        tiers=tuple(tiers),
        offers=tuple(offers),
        bxgy_enabled=_as_bool(settings.get("bxgyEnabled", False)),
        cooldown_seconds=cooldown,
        settings=dict(settings),
    )
    logger.info(
        "Configuration loaded: %d tier(s), %d offer(s), bxgy_enabled=%s",
        len(config.tiers), len(config.offers), config.bxgy_enabled,
    )
    return config


def load_config(source: str, shop: Optional[str] = None) -> EngineConfig:
    """Load a settings payload from a JSON file or an http(s) URL."""
    if source.startswith(("http://", "https://")):
        params = {"shop": shop} if shop else None
        logger.info("Fetching configuration from %s", source)
        response = requests.get(source, params=params, timeout=CONFIG_TIMEOUT_SECONDS)
        response.raise_for_status()
        payload = response.json()
    else:
        with open(Path(source), "r", encoding="utf-8") as f:
            payload = json.load(f)
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration payload must be an object, got {type(payload).__name__}")
    return parse_config(payload)
