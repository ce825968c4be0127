# backend/app/services/availability.py
"""
Reserved / available quantities over a time range.

Reservations in a blocking status whose half-open period overlaps the target
range count against inventory. Checkout must call ``get_reserved_quantities``
only after product locks are held; ``get_product_availability`` is the
lock-free preview used by the storefront calendar.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    BLOCKING_STATUSES_WITH_PENDING,
    BLOCKING_STATUSES_CONFIRMED_ONLY,
    DEFAULT_COMBINATION_KEY,
    PRODUCT_STATUS_ACTIVE,
    UNIT_STATUS_AVAILABLE,
)
from backend.app.core.logging import get_logger
from backend.app.models.product import Product, ProductUnit
from backend.app.models.reservation import Reservation, ReservationItem
from backend.app.models.store import Store
from backend.app.services.variants import (
    Combination,
    get_booking_axes,
    group_units_into_combinations,
)

logger = get_logger(__name__)


def get_blocking_statuses(store_settings: Optional[dict]) -> tuple[str, ...]:
    """Statuses that hold inventory for this store."""
    pending_blocks = (store_settings or {}).get("pending_blocks_availability", True)
    if pending_blocks is False:
        return BLOCKING_STATUSES_CONFIRMED_ONLY
    return BLOCKING_STATUSES_WITH_PENDING


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap: touching endpoints do not overlap."""
    return start_a < end_b and end_a > start_b


@dataclass
class ReservedQuantities:
    by_product: dict[int, int] = field(default_factory=dict)
    by_combination: dict[tuple[int, str], int] = field(default_factory=dict)


async def get_reserved_quantities(
    session: AsyncSession,
    store_id: int,
    start: datetime,
    end: datetime,
    blocking_statuses: Iterable[str],
    product_ids: Optional[Iterable[int]] = None,
) -> ReservedQuantities:
    """
    Sum item quantities of overlapping blocking reservations.

    Custom items (no product) are ignored; items without a combination key
    count against the default combination.
    """
    stmt = (
        select(
            ReservationItem.product_id,
            ReservationItem.combination_key,
            func.sum(ReservationItem.quantity),
        )
        .join(Reservation, Reservation.id == ReservationItem.reservation_id)
        .where(
            Reservation.store_id == store_id,
            Reservation.status.in_(list(blocking_statuses)),
            Reservation.start_date < end,
            Reservation.end_date > start,
            ReservationItem.product_id.is_not(None),
        )
        .group_by(ReservationItem.product_id, ReservationItem.combination_key)
    )
    if product_ids is not None:
        stmt = stmt.where(ReservationItem.product_id.in_(list(product_ids)))

    reserved = ReservedQuantities()
    for product_id, combination_key, quantity in (await session.execute(stmt)).all():
        quantity = int(quantity or 0)
        key = combination_key or DEFAULT_COMBINATION_KEY
        reserved.by_product[product_id] = reserved.by_product.get(product_id, 0) + quantity
        combo = (product_id, key)
        reserved.by_combination[combo] = reserved.by_combination.get(combo, 0) + quantity
    return reserved


async def load_combinations(
    session: AsyncSession,
    products: Iterable[Product],
) -> dict[int, list[Combination]]:
    """Combinations of available units for every unit-tracked product given."""
    tracked = {p.id: p for p in products if p.track_units}
    if not tracked:
        return {}
    result = await session.execute(
        select(ProductUnit)
        .where(
            ProductUnit.product_id.in_(list(tracked)),
            ProductUnit.status == UNIT_STATUS_AVAILABLE,
        )
        .order_by(ProductUnit.id)
    )
    units_by_product: dict[int, list[ProductUnit]] = defaultdict(list)
    for unit in result.scalars().all():
        units_by_product[unit.product_id].append(unit)

    return {
        product_id: group_units_into_combinations(
            get_booking_axes(product.booking_attribute_axes),
            units_by_product.get(product_id, []),
        )
        for product_id, product in tracked.items()
    }


def available_quantity(total: int, reserved: int) -> int:
    return max(0, total - reserved)


async def get_product_availability(
    session: AsyncSession,
    store: Store,
    start: datetime,
    end: datetime,
    product_ids: Optional[list[int]] = None,
) -> list[dict]:
    """
    Read-only availability preview for the storefront.

    No locks are taken, so the numbers may be stale by the time the customer
    checks out; checkout re-derives them under lock.
    """
    stmt = select(Product).where(
        Product.store_id == store.id,
        Product.status == PRODUCT_STATUS_ACTIVE,
    ).order_by(Product.id)
    if product_ids:
        stmt = stmt.where(Product.id.in_(product_ids))
    products = list((await session.execute(stmt)).scalars().all())
    if not products:
        return []

    reserved = await get_reserved_quantities(
        session,
        store.id,
        start,
        end,
        get_blocking_statuses(store.settings_dict),
        product_ids=[p.id for p in products],
    )
    combinations = await load_combinations(session, products)

    out = []
    for product in products:
        reserved_total = reserved.by_product.get(product.id, 0)
        entry = {
            "product_id": product.id,
            "name": product.name,
            "track_units": product.track_units,
            "reserved": reserved_total,
        }
        if product.track_units:
            combos = []
            for combo in combinations.get(product.id, []):
                combo_reserved = reserved.by_combination.get((product.id, combo.combination_key), 0)
                combos.append({
                    "combination_key": combo.combination_key,
                    "selected_attributes": combo.selected_attributes,
                    "total_quantity": combo.total_quantity,
                    "reserved": combo_reserved,
                    "available": available_quantity(combo.total_quantity, combo_reserved),
                })
            entry["total_quantity"] = sum(c["total_quantity"] for c in combos)
            entry["available"] = sum(c["available"] for c in combos)
            entry["combinations"] = combos
        else:
            entry["total_quantity"] = product.quantity
            entry["available"] = available_quantity(product.quantity, reserved_total)
            entry["combinations"] = []
        out.append(entry)

    logger.debug("Availability preview computed", store_id=store.id, products=len(out))
    return out
