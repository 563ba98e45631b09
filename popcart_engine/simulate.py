"""
Session simulation and replay.

A session script is a JSON document:

    {
      "config":  {settings payload, see config.py},
      "catalog": [{"variant_id", "product_id", "price", "handle", "title",
                   "stock", "collections"}, ...],
      "cart":    [{"variant_id", "quantity"}, ...],
      "actions": [
        {"type": "add",       "variant_id": "...", "quantity": 1},
        {"type": "set",       "variant_id": "...", "quantity": 0},
        {"type": "select",    "offer": "...", "variant_id": "..."},
        {"type": "wait",      "seconds": 2.5, "reconcile": false},
        {"type": "fail_next", "count": 1, "status": 503}
      ]
    }

Shopper actions hit the in-memory store directly (they are external
changes) and each is followed by a reconciliation pass. `fail_next` arms
transport failures for the engine's calls in the next pass only;
failures that pass did not consume are dropped afterwards. Time only
moves through `wait`, so a session always produces the same reports and
the same final state digest.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Tuple

from popcart_engine.catalog import StaticCatalog
from popcart_engine.config import parse_config
from popcart_engine.errors import RejectedByRemote
from popcart_engine.loop import PassReport, ReconciliationLoop
from popcart_engine.mirror import CartMirror
from popcart_engine.models import normalize_id
from popcart_engine.state import compute_state_digest, save_state
from popcart_engine.transport import CartStore, InMemoryCartTransport, StockEntry, line_key

logger = logging.getLogger(__name__)

ACTION_TYPES = ("add", "set", "select", "wait", "fail_next")


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"cannot move the clock backwards ({seconds})")
        self.now += seconds


def load_session(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        session = json.load(f)
    if not isinstance(session, dict):
        raise ValueError(f"Session script must be an object, got {type(session).__name__}")
    for i, action in enumerate(session.get("actions", []), 1):
        if action.get("type") not in ACTION_TYPES:
            raise ValueError(f"Invalid action #{i}: unknown type {action.get('type')!r}")
    return session


def build_session(session: Dict[str, Any]) -> Tuple[CartStore, ReconciliationLoop, ManualClock]:
    """Wire a store, a mirror and a loop for one simulated session."""
    entries = [StockEntry.from_dict(d) for d in session.get("catalog", [])]
    store = CartStore(entries)
    for line in session.get("cart", []):
        store.add(line["variant_id"], int(line.get("quantity", 1)))

    clock = ManualClock()
    mirror = CartMirror(InMemoryCartTransport(store))
    loop = ReconciliationLoop(
        mirror,
        parse_config(session.get("config") or {}),
        StaticCatalog.from_stock(entries),
        clock=clock,
    )
    return store, loop, clock


def _set_paid_quantity(store: CartStore, variant_id: str, quantity: int) -> None:
    key = line_key(normalize_id(variant_id), {})
    if any(line.key == key for line in store.lines):
        store.change(key, quantity)
    elif quantity > 0:
        store.add(variant_id, quantity)


async def _run_actions(
    session: Dict[str, Any],
    store: CartStore,
    loop: ReconciliationLoop,
    clock: ManualClock,
) -> List[PassReport]:
    armed: List[Tuple[int, int]] = []

    async def armed_call(call: Awaitable[Any]) -> None:
        # armed failures only apply to the engine call that follows them
        for count, status in armed:
            store.fail_next(count, status)
        armed.clear()
        try:
            await call
        finally:
            dropped = store.clear_failures()
            if dropped:
                logger.debug("Dropped %d unused injected failure(s)", dropped)

    await loop.run_pass("initial load")

    for i, action in enumerate(session.get("actions", []), 1):
        kind = action["type"]
        if kind == "wait":
            clock.advance(float(action.get("seconds", 0)))
            if action.get("reconcile"):
                await armed_call(loop.run_pass("timer"))
            continue
        if kind == "fail_next":
            armed.append((int(action.get("count", 1)), int(action.get("status", 503))))
            continue

        if kind == "select":
            await armed_call(
                loop.add_selection_item(action["offer"], normalize_id(action["variant_id"]))
            )
            continue

        # shopper edits go straight to the store, never through armed failures
        try:
            if kind == "add":
                store.add(action["variant_id"], int(action.get("quantity", 1)))
            else:
                _set_paid_quantity(store, action["variant_id"], int(action["quantity"]))
        except RejectedByRemote as exc:
            logger.warning("Action #%d (%s) rejected by the store: %s", i, kind, exc)
        await armed_call(loop.run_pass(f"{kind} {action['variant_id']}"))

    return loop.reports


def run_session(session: Dict[str, Any]) -> Tuple[str, ReconciliationLoop]:
    """Play a session from a clean state; returns (final digest, loop)."""
    store, loop, clock = build_session(session)
    asyncio.run(_run_actions(session, store, loop, clock))
    return compute_state_digest(loop.state), loop


def _write_reports(reports: List[PassReport], path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        for report in reports:
            f.write(json.dumps(report.to_dict(), sort_keys=True) + "\n")


# ---------------------------------------------------------------------------
# High-level runners
# ---------------------------------------------------------------------------
def simulate_session(session_path: str, reports_path: str, state_path: str = "") -> str:
    """
    Run a session script, write pass reports (JSONL) and optionally the
    final state. Returns the final state digest.
    """
    logger.info("Simulating session from %s", session_path)
    session = load_session(session_path)
    digest, loop = run_session(session)

    _write_reports(loop.reports, reports_path)
    logger.info("Pass reports saved → %s (%d passes)", reports_path, len(loop.reports))
    if state_path:
        save_state(loop.state, state_path)
        logger.info("State saved → %s (digest=%s)", state_path, digest)
    return digest


def replay_session(session_path: str, reports_path: str, verify_digest_path: str) -> bool:
    """Re-run a session from a clean state and compare the final digest."""
    logger.info("Replay mode: simulating from clean state")
    digest = simulate_session(session_path, reports_path)

    with open(verify_digest_path, "r", encoding="utf-8") as f:
        expected = f.read().strip()

    match = digest == expected
    if match:
        logger.info("Replay PASSED: digest=%s", digest)
    else:
        logger.error("Replay FAILED: expected=%s actual=%s", expected, digest)
    return match
