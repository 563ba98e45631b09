"""
Session state for the reconciliation engine.

ReconciliationState is created at session start, mutated only inside a
reconciliation pass, and discarded with the session. The digest is a
SHA-256 over a canonical JSON representation (sorted keys, no whitespace,
in-flight flag excluded) so simulated sessions can be replayed and compared.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Set

from popcart_engine.models import PHASE_BELOW_THRESHOLD


@dataclass(slots=True)
class OfferEntitlement:
    """What one BXGY offer earned in the last pass."""

    qualifying_qty:    int = 0
    cycles:            int = 0
    earned_free_items: int = 0
    claimed:           int = 0
    phase:             str = PHASE_BELOW_THRESHOLD

    @property
    def remaining_free_slots(self) -> int:
        return max(0, self.earned_free_items - self.claimed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qualifying_qty": self.qualifying_qty,
            "cycles": self.cycles,
            "earned_free_items": self.earned_free_items,
            "claimed": self.claimed,
            "phase": self.phase,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "OfferEntitlement":
        return OfferEntitlement(
            qualifying_qty=int(d.get("qualifying_qty", 0)),
            cycles=int(d.get("cycles", 0)),
            earned_free_items=int(d.get("earned_free_items", 0)),
            claimed=int(d.get("claimed", 0)),
            phase=d.get("phase", PHASE_BELOW_THRESHOLD),
        )


@dataclass(slots=True)
class ReconciliationState:
    """Everything the loop remembers between passes."""

    applied_reward_keys:   Set[str] = field(default_factory=set)
    last_bxgy_entitlement: Dict[str, OfferEntitlement] = field(default_factory=dict)
    cooldown_until:        float = 0.0
    in_flight:             bool = False
    free_allocation:       Dict[str, int] = field(default_factory=dict)
    rewards_count:         int = 0
    rewards_free_shipping: bool = False
    bxgy_attributes:       Dict[str, str] = field(default_factory=dict)
    pass_count:            int = 0

    def cooldown_elapsed(self, now: float) -> bool:
        return now >= self.cooldown_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied_reward_keys": sorted(self.applied_reward_keys),
            "last_bxgy_entitlement": {
                k: v.to_dict() for k, v in sorted(self.last_bxgy_entitlement.items())
            },
            "cooldown_until": self.cooldown_until,
            "in_flight": self.in_flight,
            "free_allocation": dict(sorted(self.free_allocation.items())),
            "rewards_count": self.rewards_count,
            "rewards_free_shipping": self.rewards_free_shipping,
            "bxgy_attributes": dict(sorted(self.bxgy_attributes.items())),
            "pass_count": self.pass_count,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ReconciliationState":
        return ReconciliationState(
            applied_reward_keys=set(d.get("applied_reward_keys", [])),
            last_bxgy_entitlement={
                k: OfferEntitlement.from_dict(v)
                for k, v in d.get("last_bxgy_entitlement", {}).items()
            },
            cooldown_until=float(d.get("cooldown_until", 0.0)),
            free_allocation={k: int(v) for k, v in d.get("free_allocation", {}).items()},
            rewards_count=int(d.get("rewards_count", 0)),
            rewards_free_shipping=bool(d.get("rewards_free_shipping", False)),
            bxgy_attributes=dict(d.get("bxgy_attributes", {})),
            pass_count=int(d.get("pass_count", 0)),
        )


def compute_state_digest(state: ReconciliationState) -> str:
    """Compute SHA-256 of the canonical state JSON (excluding in_flight)."""
    d = state.to_dict()
    d.pop("in_flight", None)
    canonical = json.dumps(d, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def save_state(state: ReconciliationState, path: str) -> str:
    """Persist the state (with its digest) for inspection and return the digest."""
    digest = compute_state_digest(state)
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    d = state.to_dict()
    d["state_digest"] = digest
    with open(p, "w", encoding="utf-8") as f:
        json.dump(d, f, indent=2, sort_keys=True)

    return digest
