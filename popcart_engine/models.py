"""
Data models for the PopCart promotion reconciliation engine.

All monetary values are in integer minor currency units (cents).
The Cart is owned by the storefront; these types are read/write-through
copies of it, never the source of truth.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Optional, Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
BXGY_COOLDOWN_SECONDS: float = 2.0
DEFAULT_BUY_QUANTITY: int = 3
DEFAULT_GET_QUANTITY: int = 1
DEFAULT_PROGRESS_THRESHOLD: int = 5000        # $50, used when no tiers exist


# ---------------------------------------------------------------------------
# Reward types / BXGY modes (string-based for JSON compat)
# ---------------------------------------------------------------------------
REWARD_FREE_SHIPPING    = "free_shipping"
REWARD_DISCOUNT_PERCENT = "discount_percent"
REWARD_DISCOUNT_FIXED   = "discount_fixed"
REWARD_FREE_GIFT        = "free_gift"

REWARD_TYPES = (
    REWARD_FREE_SHIPPING,
    REWARD_DISCOUNT_PERCENT,
    REWARD_DISCOUNT_FIXED,
    REWARD_FREE_GIFT,
)
DISCOUNT_TYPES = (REWARD_DISCOUNT_PERCENT, REWARD_DISCOUNT_FIXED)

MODE_CHEAPEST  = "cheapest_in_cart"
MODE_SELECTION = "selection"
MODE_AUTOMATIC = "automatic"

REWARD_MODES = (MODE_CHEAPEST, MODE_SELECTION, MODE_AUTOMATIC)

APPLIES_ALL        = "all"
APPLIES_COLLECTION = "collection"
APPLIES_PRODUCTS   = "products"

APPLIES_TO_TYPES = (APPLIES_ALL, APPLIES_COLLECTION, APPLIES_PRODUCTS)

PHASE_BELOW_THRESHOLD = "below_threshold"
PHASE_EARNING         = "earning"
PHASE_AT_CAP          = "at_cap"


# ---------------------------------------------------------------------------
# Line properties written by the engine
# ---------------------------------------------------------------------------
PROP_FREE_GIFT      = "_popcart_free_gift"
PROP_TIER_THRESHOLD = "_popcart_tier_threshold"
PROP_GIFT_NAME      = "_popcart_gift_name"
PROP_BXGY_FREE      = "_popcart_bxgy_free"
PROP_BXGY_OFFER     = "_popcart_bxgy_offer"

FLAG_TRUE = "true"


# ---------------------------------------------------------------------------
# Cart-level attributes written by the engine
# ---------------------------------------------------------------------------
ATTR_REWARDS_COUNT   = "_popcart_rewards_count"
ATTR_FREE_SHIPPING   = "_popcart_free_shipping"
ATTR_DISCOUNT_TYPE   = "_popcart_discount_type"
ATTR_DISCOUNT_VALUE  = "_popcart_discount_value"
ATTR_BXGY_ACTIVE     = "_popcart_bxgy_active"
ATTR_BXGY_CYCLES     = "_popcart_bxgy_cycles"
ATTR_BXGY_FREE_ITEMS = "_popcart_bxgy_free_items"
ATTR_BXGY_OFFER      = "_popcart_bxgy_offer"


def normalize_id(raw: Any) -> str:
    """Reduce a Shopify GID (gid://shopify/Product/123) to its numeric tail."""
    text = str(raw).strip()
    if "/" in text:
        return text.rsplit("/", 1)[-1]
    return text


# ---------------------------------------------------------------------------
# Cart (mirror of the remote resource)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CartLineItem:
    """One line of the remote cart."""

    key:        str
    product_id: str
    variant_id: str
    quantity:   int
    unit_price: int
    properties: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.quantity, int) or self.quantity < 0:
            raise ValueError(f"quantity must be a non-negative int, got {self.quantity!r}")
        if not isinstance(self.unit_price, int):
            raise TypeError(
                f"unit_price must be int (cents), got {type(self.unit_price).__name__}"
            )

    @property
    def is_free_gift(self) -> bool:
        return self.properties.get(PROP_FREE_GIFT) == FLAG_TRUE

    @property
    def is_bxgy_free(self) -> bool:
        return self.properties.get(PROP_BXGY_FREE) == FLAG_TRUE

    @property
    def is_engine_free(self) -> bool:
        """True for lines either engine created as a reward."""
        return self.is_free_gift or self.is_bxgy_free

    @property
    def bxgy_offer(self) -> Optional[str]:
        return self.properties.get(PROP_BXGY_OFFER)

    @property
    def tier_threshold(self) -> Optional[str]:
        return self.properties.get(PROP_TIER_THRESHOLD)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CartLineItem":
        props = d.get("properties") or {}
        return CartLineItem(
            key=str(d["key"]),
            product_id=normalize_id(d.get("product_id", "")),
            variant_id=normalize_id(d.get("variant_id", d.get("id", ""))),
            quantity=int(d["quantity"]),
            unit_price=int(d.get("price", d.get("unit_price", 0))),
            properties={str(k): str(v) for k, v in props.items() if v is not None},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "price": self.unit_price,
            "line_price": self.unit_price * self.quantity,
            "properties": dict(self.properties),
        }


@dataclass(frozen=True, slots=True)
class Cart:
    """Snapshot of the remote cart as last returned by the storefront."""

    items:       Tuple[CartLineItem, ...] = ()
    total_price: int = 0
    item_count:  int = 0
    attributes:  Dict[str, str] = field(default_factory=dict)

    def find(self, key: str) -> Optional[CartLineItem]:
        return next((item for item in self.items if item.key == key), None)

    def bxgy_free_lines(self, offer_key: Optional[str] = None) -> Tuple[CartLineItem, ...]:
        """Lines tagged BXGY-free, optionally restricted to one offer."""
        return tuple(
            item for item in self.items
            if item.is_bxgy_free and (offer_key is None or item.bxgy_offer == offer_key)
        )

    def free_gift_line(self, threshold: int) -> Optional[CartLineItem]:
        wanted = str(threshold)
        return next(
            (item for item in self.items
             if item.is_free_gift and item.tier_threshold == wanted),
            None,
        )

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Cart":
        items = tuple(CartLineItem.from_dict(i) for i in d.get("items", []))
        attrs = d.get("attributes") or {}
        return Cart(
            items=items,
            total_price=int(d.get("total_price", 0)),
            item_count=int(d.get("item_count", sum(i.quantity for i in items))),
            attributes={str(k): str(v) for k, v in attrs.items() if v is not None},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "total_price": self.total_price,
            "item_count": self.item_count,
            "attributes": dict(self.attributes),
        }


# ---------------------------------------------------------------------------
# Mutations accepted by CartMirror.mutate
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SetQuantity:
    key:      str
    quantity: int

    def describe(self) -> str:
        return f"set {self.key} qty={self.quantity}"


@dataclass(frozen=True, slots=True)
class AddLine:
    variant_id: str
    quantity:   int
    properties: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> str:
        return f"add variant={self.variant_id} qty={self.quantity}"


@dataclass(frozen=True, slots=True)
class UpdateAttributes:
    attributes: Dict[str, str]

    def describe(self) -> str:
        return "attributes " + ",".join(sorted(self.attributes))


# ---------------------------------------------------------------------------
# Catalog entry
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Variant:
    """A purchasable variant as resolved from a product handle."""

    id:         str
    product_id: str
    handle:     str
    title:      str = ""
    price:      int = 0
    available:  bool = True
    image:      Optional[str] = None


# ---------------------------------------------------------------------------
# Promotion rules (loaded once per session, immutable)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardTier:
    """A spend threshold that unlocks a reward."""

    threshold:    int
    reward_type:  str
    reward_value: Optional[str] = None
    title:        str = ""
    message:      str = ""
    sort_order:   int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.threshold, int):
            raise TypeError(
                f"threshold must be int (cents), got {type(self.threshold).__name__}"
            )
        if self.reward_type not in REWARD_TYPES:
            raise ValueError(f"Invalid reward_type: {self.reward_type!r}")

    @property
    def key(self) -> str:
        return f"{self.reward_type}:{self.threshold}"

    @property
    def is_discount(self) -> bool:
        return self.reward_type in DISCOUNT_TYPES

    @property
    def decimal_value(self) -> Decimal:
        try:
            return Decimal(str(self.reward_value))
        except (InvalidOperation, ValueError):
            return Decimal(0)


@dataclass(frozen=True, slots=True)
class BxgyOffer:
    """A Buy-X-Get-Y offer."""

    title:                    str
    buy_quantity:             int = DEFAULT_BUY_QUANTITY
    get_quantity:             int = DEFAULT_GET_QUANTITY
    reward_mode:              str = MODE_CHEAPEST
    applies_to_type:          str = APPLIES_ALL
    collection_id:            Optional[str] = None
    product_ids:              FrozenSet[str] = frozenset()
    selection_handles:        Tuple[str, ...] = ()
    automatic_product_handle: Optional[str] = None
    automatic_variant_id:     Optional[str] = None
    sort_order:               int = 0
    misconfigured:            bool = False

    def __post_init__(self) -> None:
        if self.buy_quantity < 1 or self.get_quantity < 1:
            raise ValueError(
                f"buy/get quantities must be >= 1, got "
                f"{self.buy_quantity}/{self.get_quantity}"
            )
        if self.reward_mode not in REWARD_MODES:
            raise ValueError(f"Invalid reward_mode: {self.reward_mode!r}")
        if self.applies_to_type not in APPLIES_TO_TYPES:
            raise ValueError(f"Invalid applies_to_type: {self.applies_to_type!r}")

    @property
    def key(self) -> str:
        return self.title
