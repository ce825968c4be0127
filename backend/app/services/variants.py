# backend/app/services/variants.py
"""
Attribute variants of unit-tracked products.

Units of a tracked product carry an ``attributes`` map keyed by the product's
booking axes (e.g. ``{"size": "M", "color": "red"}``). Units sharing the same
values form a *combination*, the allocatable unit of inventory. This module
builds combination keys, filters combinations against a requested partial
attribute filter, and allocates line items to combinations with a running
counter so several items of one cart cannot claim the same scarce units.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from backend.app.core.constants import DEFAULT_COMBINATION_KEY, UNIT_STATUS_AVAILABLE


class ProductNoLongerAvailable(Exception):
    """No combination (or untracked stock) has enough remaining capacity."""

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Product no longer available: {product_name}")


@dataclass(frozen=True)
class BookingAxis:
    key: str
    label: str
    position: int


@dataclass
class Combination:
    """Derived group of available units with identical attribute values."""
    combination_key: str
    selected_attributes: dict[str, str]
    total_quantity: int


def normalize_token(value) -> str:
    """Trim and collapse inner whitespace."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def get_booking_axes(raw_axes: Optional[list]) -> list[BookingAxis]:
    """Parse the product's axis JSON, ordered by position. Invalid entries are dropped."""
    axes: list[BookingAxis] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_axes or []):
        if not isinstance(raw, dict):
            continue
        key = normalize_token(raw.get("key"))
        if not key or key in seen:
            continue
        seen.add(key)
        position = raw.get("position")
        axes.append(BookingAxis(
            key=key,
            label=normalize_token(raw.get("label")) or key,
            position=position if isinstance(position, int) else index,
        ))
    return sorted(axes, key=lambda axis: axis.position)


def canonicalize_attributes(axes: list[BookingAxis], attributes: Optional[dict]) -> dict[str, str]:
    """Keep only axis keys with a non-empty normalized value."""
    result: dict[str, str] = {}
    if not attributes:
        return result
    normalized = {normalize_token(k): v for k, v in attributes.items()}
    for axis in axes:
        value = normalize_token(normalized.get(axis.key))
        if value:
            result[axis.key] = value
    return result


def build_combination_key(axes: list[BookingAxis], attributes: Optional[dict]) -> str:
    """
    Deterministic key ``key:value|key:value`` in axis order.

    Products without axes, and attribute maps missing any axis value, map to
    the default combination.
    """
    if not axes:
        return DEFAULT_COMBINATION_KEY
    canonical = canonicalize_attributes(axes, attributes)
    parts = []
    for axis in axes:
        value = canonical.get(axis.key)
        if not value:
            return DEFAULT_COMBINATION_KEY
        parts.append(f"{axis.key}:{value}")
    return "|".join(parts)


def matches_selected_attributes(selected: Optional[dict], candidate: dict) -> bool:
    """Every constrained key of the request must match; empty values are wildcards."""
    if not selected:
        return True
    for key, value in selected.items():
        wanted = normalize_token(value)
        if not wanted:
            continue
        if normalize_token(candidate.get(normalize_token(key))) != wanted:
            return False
    return True


def combination_sort_value(axes: list[BookingAxis], attributes: dict) -> str:
    """String compared ascending to break ties between candidate combinations."""
    if not axes:
        return DEFAULT_COMBINATION_KEY
    return "|".join(f"{axis.key}:{normalize_token(attributes.get(axis.key))}" for axis in axes)


def group_units_into_combinations(axes: list[BookingAxis], units: Iterable) -> list[Combination]:
    """
    Group units with status ``available`` by combination key.

    ``units`` are ProductUnit rows (anything with ``status``, ``attributes``,
    ``combination_key``). The stored key is trusted when present; otherwise it
    is derived from the attributes.
    """
    groups: dict[str, Combination] = {}
    for unit in units:
        if unit.status != UNIT_STATUS_AVAILABLE:
            continue
        key = unit.combination_key or build_combination_key(axes, unit.attributes)
        group = groups.get(key)
        if group is None:
            group = groups[key] = Combination(
                combination_key=key,
                selected_attributes={},
                total_quantity=0,
            )
        group.total_quantity += 1
        if not group.selected_attributes:
            group.selected_attributes = canonicalize_attributes(axes, unit.attributes)
    return list(groups.values())


@dataclass
class ResolvedAllocation:
    product_id: int
    quantity: int
    combination_key: str
    selected_attributes: dict[str, str]


@dataclass
class CombinationResolver:
    """
    Allocates cart lines against remaining capacity.

    ``reserved_by_product`` / ``reserved_by_combination`` start from the
    overlap scan and are incremented by every successful allocation, so later
    lines of the same cart see capacity already claimed by earlier ones.
    """
    reserved_by_product: dict[int, int] = field(default_factory=dict)
    reserved_by_combination: dict[tuple[int, str], int] = field(default_factory=dict)

    def resolve_untracked(self, product_id: int, product_name: str, total_quantity: int,
                          quantity: int) -> ResolvedAllocation:
        reserved = self.reserved_by_product.get(product_id, 0)
        available = max(0, total_quantity - reserved)
        if quantity > available:
            raise ProductNoLongerAvailable(product_name)
        self.reserved_by_product[product_id] = reserved + quantity
        return ResolvedAllocation(
            product_id=product_id,
            quantity=quantity,
            combination_key=DEFAULT_COMBINATION_KEY,
            selected_attributes={},
        )

    def resolve_tracked(
        self,
        product_id: int,
        product_name: str,
        axes: list[BookingAxis],
        combinations: list[Combination],
        selected_attributes: Optional[dict],
        quantity: int,
    ) -> ResolvedAllocation:
        # Filter on every requested key; a key outside the axes matches nothing
        candidates = [
            c for c in combinations
            if matches_selected_attributes(selected_attributes, c.selected_attributes)
        ]
        requested = canonicalize_attributes(axes, selected_attributes) if axes else {}
        candidates.sort(key=lambda c: combination_sort_value(axes, c.selected_attributes))

        for candidate in candidates:
            counter_key = (product_id, candidate.combination_key)
            reserved = self.reserved_by_combination.get(counter_key, 0)
            if candidate.total_quantity - reserved < quantity:
                continue
            self.reserved_by_combination[counter_key] = reserved + quantity
            self.reserved_by_product[product_id] = self.reserved_by_product.get(product_id, 0) + quantity
            return ResolvedAllocation(
                product_id=product_id,
                quantity=quantity,
                combination_key=candidate.combination_key,
                selected_attributes={**requested, **candidate.selected_attributes},
            )

        raise ProductNoLongerAvailable(product_name)
