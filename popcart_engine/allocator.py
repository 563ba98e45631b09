"""
Free-unit allocation for the "cheapest item in cart" BXGY mode.

Pure functions, no I/O. Given the qualifying, non-free lines and an
entitlement N, the cheapest units become free:

  - lines are ordered by unit price ascending, ties by cart order
  - each line takes min(remaining, quantity) free units
  - sum(free) == min(N, sum(quantity)), and no line exceeds its quantity
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence

from popcart_engine.errors import AllocationInvariantViolation
from popcart_engine.models import CartLineItem


@dataclass(frozen=True, slots=True)
class LineRows:
    """How a line renders: a paid row and/or a free row."""

    key:  str
    paid: int
    free: int

    @property
    def is_split(self) -> bool:
        return self.paid > 0 and self.free > 0


def allocate_cheapest(
    lines: Sequence[CartLineItem],
    entitlement: int,
    capacity: Mapping[str, int] | None = None,
) -> Dict[str, int]:
    """
    Decide which units are free. Returns {line_key: free_units} for lines
    that receive at least one free unit.

    `capacity` optionally caps the units available per line (used when an
    earlier offer already claimed some of them); it defaults to quantity.
    """
    if entitlement <= 0:
        return {}

    # sorted() is stable, so equal prices keep their cart order
    ordered = sorted(lines, key=lambda line: line.unit_price)

    allocation: Dict[str, int] = {}
    remaining = entitlement
    for line in ordered:
        if remaining <= 0:
            break
        available = line.quantity if capacity is None else min(line.quantity, capacity.get(line.key, line.quantity))
        if available <= 0:
            continue
        free = min(remaining, available)
        allocation[line.key] = allocation.get(line.key, 0) + free
        remaining -= free

    check_allocation(lines, allocation, entitlement, capacity)
    return allocation


def check_allocation(
    lines: Iterable[CartLineItem],
    allocation: Mapping[str, int],
    entitlement: int,
    capacity: Mapping[str, int] | None = None,
) -> None:
    """Raise AllocationInvariantViolation if the guarantees do not hold."""
    by_key = {line.key: line for line in lines}
    total_available = 0
    for line in by_key.values():
        cap = line.quantity if capacity is None else min(line.quantity, capacity.get(line.key, line.quantity))
        total_available += max(0, cap)

    for key, free in allocation.items():
        line = by_key.get(key)
        if line is None:
            raise AllocationInvariantViolation(f"free units allocated to unknown line {key!r}")
        if free < 0 or free > line.quantity:
            raise AllocationInvariantViolation(
                f"line {key!r} allocated {free} free of {line.quantity}"
            )

    expected = min(max(entitlement, 0), total_available)
    granted = sum(allocation.values())
    if granted != expected:
        raise AllocationInvariantViolation(
            f"allocated {granted} free unit(s), expected {expected}"
        )


def split_rows(line: CartLineItem, free_units: int) -> LineRows:
    """Paid/free portions of one line; paid + free == quantity."""
    if free_units < 0 or free_units > line.quantity:
        raise AllocationInvariantViolation(
            f"line {line.key!r} cannot have {free_units} free of {line.quantity}"
        )
    return LineRows(key=line.key, paid=line.quantity - free_units, free=free_units)


def render_rows(lines: Iterable[CartLineItem], allocation: Mapping[str, int]) -> List[LineRows]:
    return [split_rows(line, allocation.get(line.key, 0)) for line in lines]
