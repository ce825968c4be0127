"""
Tests for the checkout transaction.

Tests cover:
- Happy path: reservation, items, activity and customer written in one commit
- Server-side pricing (tiers, deposit, tax modes, delivery fee, custom items)
- Availability under lock: overlap, same-cart counters, static stock bound
- Concurrency: two checkouts racing for the last unit
- Lock contention surfaces as a retryable error
- Nothing is persisted when a checkout fails
- Post-commit side effects (notifications, payment) never undo a reservation
- Reservation numbers and the collision fallback
"""
import asyncio
import re
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from prometheus_client import REGISTRY
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.locking import InMemoryProductLockManager
from backend.app.core.settings import get_settings
from backend.app.models.customer import Customer
from backend.app.models.product import Product
from backend.app.models.reservation import (
    Reservation,
    ReservationActivity,
    ReservationItem,
    ReservationPayment,
)
from backend.app.models.store import Store
from backend.app.services.notifications import EVENT_RESERVATION_CREATED, EVENT_REQUEST_RECEIVED
from backend.app.services.payment import PaymentSession, PaymentSessionError
from backend.app.services.rental_rules import utc_now
from backend.app.services.reservations import (
    CheckoutState,
    DeliverySelection,
    InsufficientStockError,
    LockContentionError,
    ProductNoLongerAvailableError,
    ReservationTransaction,
    ReservationValidationError,
    StoreNotFoundError,
    generate_reservation_number,
)
from backend.tests.conftest import (
    RENTAL_END,
    RENTAL_START,
    RecordingNotifier,
    cart_line,
    checkout_request,
    create_product,
    create_reservation,
    create_store,
    create_units,
)

NUMBER_PATTERN = re.compile(r"^R\d{4}-\d{4}$")


class FakePayments:
    """Stands in for PaymentSessionCreator."""

    configured = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def create_session(self, **kwargs) -> PaymentSession:
        self.calls.append(kwargs)
        if self.fail:
            raise PaymentSessionError("Payment creation failed: provider down")
        return PaymentSession(payment_id="pay_123", url="https://pay.test/pay_123", status="pending")


def _transaction(session, lock_manager, notifier=None, **kwargs) -> ReservationTransaction:
    return ReservationTransaction(
        session,
        lock_manager=lock_manager,
        notifier=notifier or RecordingNotifier(),
        **kwargs,
    )


async def _count(session: AsyncSession, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


# ============================================
# HAPPY PATH
# ============================================

@pytest.mark.asyncio
async def test_checkout_creates_reservation(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
    notifier: RecordingNotifier,
):
    """3-day rental hits the 3-day tier: 20 * 0.9 * 3 = 54, deposit 50."""
    transaction = _transaction(test_session, lock_manager, notifier)
    result = await transaction.execute(test_store.id, checkout_request([cart_line(test_product.id)]))

    assert NUMBER_PATTERN.match(result.reservation_number)
    assert result.payment_url is None
    assert transaction.state == CheckoutState.COMMITTED

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.status == "pending"
    assert reservation.source == "online"
    assert reservation.start_date == RENTAL_START
    assert reservation.end_date == RENTAL_END
    assert reservation.subtotal_amount == Decimal("54.00")
    assert reservation.deposit_amount == Decimal("50.00")
    assert reservation.total_amount == Decimal("104.00")
    assert reservation.tax_amount is None
    assert reservation.delivery_option == "pickup"

    items = (await test_session.execute(
        select(ReservationItem).where(ReservationItem.reservation_id == reservation.id)
    )).scalars().all()
    assert len(items) == 1
    assert items[0].product_id == test_product.id
    assert items[0].unit_price == Decimal("18.00")
    assert items[0].combination_key == "__default"
    assert items[0].pricing_breakdown["duration"] == 3
    assert items[0].product_snapshot["name"] == "Touring Ski"

    activity = (await test_session.execute(
        select(ReservationActivity).where(ReservationActivity.reservation_id == reservation.id)
    )).scalars().all()
    assert [a.activity_type for a in activity] == ["created"]

    customer = await test_session.get(Customer, reservation.customer_id)
    assert customer.email == "jane@example.com"
    assert notifier.event_types == [EVENT_REQUEST_RECEIVED, EVENT_RESERVATION_CREATED]
    assert notifier.events[0][1]["reservation_number"] == result.reservation_number


@pytest.mark.asyncio
async def test_checkout_reuses_existing_customer(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    existing = Customer(store_id=test_store.id, email="jane@example.com", first_name="J", last_name="D", city="Lyon")
    test_session.add(existing)
    await test_session.commit()

    request = checkout_request([cart_line(test_product.id)], email="Jane@Example.com")
    result = await _transaction(test_session, lock_manager).execute(test_store.id, request)

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.customer_id == existing.id
    assert await _count(test_session, Customer) == 1
    assert existing.first_name == "Jane"
    assert existing.city == "Lyon"


@pytest.mark.asyncio
async def test_checkout_with_custom_item(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    request = checkout_request([
        cart_line(test_product.id),
        cart_line(None, quantity=2, unit_price=Decimal("15.00"), name="Wax service"),
    ])
    result = await _transaction(test_session, lock_manager).execute(test_store.id, request)

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.subtotal_amount == Decimal("84.00")
    custom = await test_session.scalar(
        select(ReservationItem).where(ReservationItem.product_id.is_(None))
    )
    assert custom.product_id is None
    assert custom.total_price == Decimal("30.00")
    assert custom.tax_amount is None
    assert custom.product_snapshot["name"] == "Wax service"


# ============================================
# TAX / DELIVERY
# ============================================

@pytest.mark.asyncio
async def test_exclusive_tax_added_on_top(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    store = await create_store(
        test_session, settings={"tax": {"enabled": True, "default_rate": 20, "display_mode": "exclusive"}}
    )
    product = await create_product(test_session, store, tiers=[(3, "10")], deposit=Decimal("50.00"))

    result = await _transaction(test_session, lock_manager).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.subtotal_amount == Decimal("54.00")
    assert reservation.tax_amount == Decimal("10.80")
    assert reservation.subtotal_excl_tax == Decimal("54.00")
    assert reservation.tax_rate == Decimal("20")
    assert reservation.total_amount == Decimal("114.80")


@pytest.mark.asyncio
async def test_inclusive_tax_extracted(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    store = await create_store(
        test_session, settings={"tax": {"enabled": True, "default_rate": 20, "display_mode": "inclusive"}}
    )
    product = await create_product(test_session, store, price=Decimal("40.00"))

    result = await _transaction(test_session, lock_manager).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.subtotal_amount == Decimal("120.00")
    assert reservation.tax_amount == Decimal("20.00")
    assert reservation.subtotal_excl_tax == Decimal("100.00")
    assert reservation.total_amount == Decimal("120.00")


@pytest.mark.asyncio
async def test_reservation_tax_rate_from_product_override(test_session: AsyncSession,
                                                          lock_manager: InMemoryProductLockManager):
    store = await create_store(
        test_session, settings={"tax": {"enabled": True, "default_rate": 0, "display_mode": "exclusive"}}
    )
    product = await create_product(
        test_session, store, tax_settings={"inherit_from_store": False, "custom_rate": 10}
    )

    result = await _transaction(test_session, lock_manager).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.subtotal_amount == Decimal("60.00")
    assert reservation.tax_amount == Decimal("6.00")
    assert reservation.tax_rate == Decimal("10")


@pytest.mark.asyncio
async def test_reservation_tax_rate_none_for_mixed_rates(test_session: AsyncSession,
                                                         lock_manager: InMemoryProductLockManager):
    store = await create_store(
        test_session, settings={"tax": {"enabled": True, "default_rate": 20, "display_mode": "exclusive"}}
    )
    standard = await create_product(test_session, store)
    reduced = await create_product(
        test_session, store, name="Helmet", tax_settings={"inherit_from_store": False, "custom_rate": 10}
    )

    result = await _transaction(test_session, lock_manager).execute(
        store.id, checkout_request([cart_line(standard.id), cart_line(reduced.id)])
    )

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.tax_amount == Decimal("18.00")
    assert reservation.tax_rate is None
    rates = (await test_session.scalars(
        select(ReservationItem.tax_rate)
        .where(ReservationItem.reservation_id == reservation.id)
        .order_by(ReservationItem.tax_rate)
    )).all()
    assert rates == [Decimal("10"), Decimal("20")]


@pytest.mark.asyncio
async def test_delivery_fee_added(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    store = await create_store(
        test_session, settings={"delivery": {"enabled": True, "mode": "optional", "price_per_km": 2}}
    )
    product = await create_product(test_session, store)
    delivery = DeliverySelection(option="delivery", address="1 Rue de Test", latitude=48.8566, longitude=2.4892)

    result = await _transaction(test_session, lock_manager).execute(
        store.id, checkout_request([cart_line(product.id)], delivery=delivery)
    )

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.delivery_option == "delivery"
    assert reservation.delivery_address == "1 Rue de Test"
    assert Decimal("9") < reservation.delivery_distance_km < Decimal("11")
    assert reservation.delivery_fee == (reservation.delivery_distance_km * 2).quantize(Decimal("0.01"))
    assert reservation.total_amount == reservation.subtotal_amount + reservation.delivery_fee


@pytest.mark.asyncio
async def test_delivery_required_rejects_pickup(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    store = await create_store(test_session, settings={"delivery": {"enabled": True, "mode": "required"}})
    product = await create_product(test_session, store)

    with pytest.raises(ReservationValidationError) as exc:
        await _transaction(test_session, lock_manager).execute(store.id, checkout_request([cart_line(product.id)]))
    assert exc.value.error_code == "delivery_required"
    assert await _count(test_session, Reservation) == 0


# ============================================
# VALIDATION
# ============================================

@pytest.mark.asyncio
async def test_unknown_store(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    with pytest.raises(StoreNotFoundError) as exc:
        await _transaction(test_session, lock_manager).execute(999, checkout_request([cart_line(1)]))
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_empty_cart(test_session: AsyncSession, test_store: Store, lock_manager: InMemoryProductLockManager):
    with pytest.raises(ReservationValidationError) as exc:
        await _transaction(test_session, lock_manager).execute(test_store.id, checkout_request([]))
    assert exc.value.error_code == "empty_cart"


@pytest.mark.asyncio
async def test_product_of_other_store_rejected(
    test_session: AsyncSession,
    test_store: Store,
    lock_manager: InMemoryProductLockManager,
):
    other_store = await create_store(test_session, name="Other", slug="other")
    foreign = await create_product(test_session, other_store)

    with pytest.raises(ReservationValidationError) as exc:
        await _transaction(test_session, lock_manager).execute(test_store.id, checkout_request([cart_line(foreign.id)]))
    assert exc.value.error_code == "product_unavailable"
    assert exc.value.error_params == {"product_id": foreign.id}


@pytest.mark.asyncio
async def test_custom_item_without_price_rejected(
    test_session: AsyncSession,
    test_store: Store,
    lock_manager: InMemoryProductLockManager,
):
    with pytest.raises(ReservationValidationError) as exc:
        await _transaction(test_session, lock_manager).execute(test_store.id, checkout_request([cart_line(None)]))
    assert exc.value.error_code == "invalid_custom_item"


@pytest.mark.asyncio
async def test_advance_notice_rejected(test_session: AsyncSession, lock_manager: InMemoryProductLockManager):
    store = await create_store(test_session, settings={"advance_notice_minutes": 60})
    product = await create_product(test_session, store)
    soon = utc_now()
    line = cart_line(product.id, start=soon, end=soon + timedelta(days=2))

    with pytest.raises(ReservationValidationError) as exc:
        await _transaction(test_session, lock_manager).execute(store.id, checkout_request([line]))
    assert exc.value.error_code == "advance_notice_violation"
    assert exc.value.error_params == {"duration": "1h"}


# ============================================
# AVAILABILITY UNDER LOCK
# ============================================

@pytest.mark.asyncio
async def test_insufficient_stock(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    transaction = _transaction(test_session, lock_manager)
    with pytest.raises(InsufficientStockError) as exc:
        await transaction.execute(test_store.id, checkout_request([cart_line(test_product.id, quantity=3)]))

    assert exc.value.status_code == 409
    assert exc.value.error_params == {"product_name": "Touring Ski", "count": 2}
    assert transaction.state == CheckoutState.FAILED
    assert await _count(test_session, Reservation) == 0
    assert await _count(test_session, Customer) == 0


@pytest.mark.asyncio
async def test_overlapping_reservation_blocks(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    await create_reservation(test_session, test_store, [(test_product, 2, None)])

    with pytest.raises(ProductNoLongerAvailableError) as exc:
        await _transaction(test_session, lock_manager).execute(
            test_store.id, checkout_request([cart_line(test_product.id)])
        )
    assert exc.value.error_code == "product_no_longer_available"
    assert exc.value.error_params == {"product_name": "Touring Ski"}
    assert await _count(test_session, Reservation) == 1


@pytest.mark.asyncio
async def test_same_cart_lines_share_capacity(test_session: AsyncSession, test_store: Store,
                                              lock_manager: InMemoryProductLockManager):
    jacket = await create_product(
        test_session, test_store,
        name="Jacket", track_units=True, quantity=0,
        booking_attribute_axes=[{"key": "size", "label": "Size", "position": 0}],
    )
    await create_units(test_session, jacket, [{"size": "S"}, {"size": "S"}, {"size": "M"}])
    request = checkout_request([
        cart_line(jacket.id, selected_attributes={"size": "M"}, line_id="a"),
        cart_line(jacket.id, selected_attributes={"size": "M"}, line_id="b"),
    ])

    with pytest.raises(ProductNoLongerAvailableError):
        await _transaction(test_session, lock_manager).execute(test_store.id, request)
    assert await _count(test_session, Reservation) == 0
    assert await _count(test_session, ReservationItem) == 0


@pytest.mark.asyncio
async def test_tracked_allocation_records_combination(test_session: AsyncSession, test_store: Store,
                                                      lock_manager: InMemoryProductLockManager):
    jacket = await create_product(
        test_session, test_store,
        name="Jacket", track_units=True, quantity=0,
        booking_attribute_axes=[{"key": "size", "label": "Size", "position": 0}],
    )
    await create_units(test_session, jacket, [{"size": "S"}, {"size": "M"}])
    await create_reservation(test_session, test_store, [(jacket, 1, "size:M")])

    result = await _transaction(test_session, lock_manager).execute(
        test_store.id, checkout_request([cart_line(jacket.id)])
    )

    item = await test_session.scalar(
        select(ReservationItem).where(ReservationItem.reservation_id == result.reservation_id)
    )
    assert item.combination_key == "size:S"
    assert item.selected_attributes == {"size": "S"}


@pytest.mark.asyncio
async def test_tracked_rejects_attribute_outside_axes(test_session: AsyncSession, test_store: Store,
                                                      lock_manager: InMemoryProductLockManager):
    jacket = await create_product(
        test_session, test_store,
        name="Jacket", track_units=True, quantity=0,
        booking_attribute_axes=[{"key": "size", "label": "Size", "position": 0}],
    )
    await create_units(test_session, jacket, [{"size": "S"}, {"size": "M"}])
    store_id = test_store.id
    request = checkout_request([cart_line(jacket.id, selected_attributes={"color": "red"})])

    with pytest.raises(ProductNoLongerAvailableError) as exc:
        await _transaction(test_session, lock_manager).execute(store_id, request)
    assert exc.value.error_params == {"product_name": "Jacket"}
    assert await _count(test_session, Reservation) == 0


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_last_unit(file_session_factory, lock_manager: InMemoryProductLockManager):
    async with file_session_factory() as setup:
        store = await create_store(setup)
        product = await create_product(setup, store, quantity=1)

    async def attempt(email: str):
        async with file_session_factory() as session:
            request = checkout_request([cart_line(product.id)], email=email)
            return await _transaction(session, lock_manager).execute(store.id, request)

    results = await asyncio.gather(
        attempt("first@example.com"),
        attempt("second@example.com"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ProductNoLongerAvailableError)

    async with file_session_factory() as check:
        assert await _count(check, Reservation) == 1
        reserved = await check.scalar(select(func.sum(ReservationItem.quantity)))
        assert reserved == 1


@pytest.mark.asyncio
async def test_lock_timeout_is_retryable(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    product_id = test_product.id
    settings = get_settings().model_copy(update={"RESERVATION_LOCK_TIMEOUT_SECONDS": 0.05})
    transaction = _transaction(test_session, lock_manager, settings=settings)

    async with lock_manager.hold([product_id], timeout=1):
        with pytest.raises(LockContentionError) as exc:
            await transaction.execute(test_store.id, checkout_request([cart_line(product_id)]))

    assert exc.value.status_code == 503
    assert exc.value.to_dict() == {"error_code": "lock_timeout", "retryable": True}
    assert await _count(test_session, Reservation) == 0
    assert not lock_manager.is_locked(product_id)


# ============================================
# CLIENT AMOUNTS
# ============================================

@pytest.mark.asyncio
async def test_client_price_mismatch_is_logged_not_rejected(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    before = REGISTRY.get_sample_value("price_mismatches_total", {"field": "total"}) or 0
    request = checkout_request(
        [cart_line(test_product.id, subtotal=Decimal("1.00"))],
        total_amount=Decimal("1.00"),
    )

    result = await _transaction(test_session, lock_manager).execute(test_store.id, request)

    reservation = await test_session.get(Reservation, result.reservation_id)
    assert reservation.total_amount == Decimal("104.00")
    after = REGISTRY.get_sample_value("price_mismatches_total", {"field": "total"})
    assert after == before + 1


# ============================================
# PAYMENT (POST-COMMIT)
# ============================================

async def _payment_store(session: AsyncSession, percentage: int = 100) -> Store:
    return await create_store(
        session,
        slug="pay-store",
        payment_account_id="acct_1",
        settings={"reservation_mode": "payment", "online_payment_deposit_percentage": percentage},
    )


@pytest.mark.asyncio
async def test_payment_session_created_after_commit(test_session: AsyncSession,
                                                    lock_manager: InMemoryProductLockManager):
    store = await _payment_store(test_session)
    product = await create_product(test_session, store)
    payments = FakePayments()

    result = await _transaction(test_session, lock_manager, payments=payments).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    assert result.payment_url == "https://pay.test/pay_123"
    call = payments.calls[0]
    assert call["amount"] == Decimal("60.00")
    assert call["success_url"].endswith(f"/pay-store/checkout/success?reservation={result.reservation_id}")
    assert call["cancel_url"].endswith("/pay-store/checkout?cancelled=true")

    payment = await test_session.scalar(select(ReservationPayment))
    assert payment.provider_payment_id == "pay_123"
    assert payment.status == "pending"
    activity_types = (await test_session.execute(
        select(ReservationActivity.activity_type).order_by(ReservationActivity.id)
    )).scalars().all()
    assert activity_types == ["created", "payment_initiated"]


@pytest.mark.asyncio
async def test_partial_payment_charges_percentage(test_session: AsyncSession,
                                                  lock_manager: InMemoryProductLockManager):
    store = await _payment_store(test_session, percentage=30)
    product = await create_product(test_session, store)
    payments = FakePayments()

    await _transaction(test_session, lock_manager, payments=payments).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    call = payments.calls[0]
    assert call["amount"] == Decimal("18.00")
    assert len(call["line_items"]) == 1
    assert call["line_items"][0].description.startswith("Deposit (30%)")


@pytest.mark.asyncio
async def test_payment_failure_keeps_reservation(test_session: AsyncSession,
                                                 lock_manager: InMemoryProductLockManager):
    store = await _payment_store(test_session)
    product = await create_product(test_session, store)

    result = await _transaction(test_session, lock_manager, payments=FakePayments(fail=True)).execute(
        store.id, checkout_request([cart_line(product.id)])
    )

    assert result.payment_url is None
    assert await _count(test_session, Reservation) == 1
    assert await _count(test_session, ReservationPayment) == 0


@pytest.mark.asyncio
async def test_request_mode_store_skips_payment(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
    lock_manager: InMemoryProductLockManager,
):
    payments = FakePayments()
    result = await _transaction(test_session, lock_manager, payments=payments).execute(
        test_store.id, checkout_request([cart_line(test_product.id)])
    )
    assert result.payment_url is None
    assert payments.calls == []


# ============================================
# RESERVATION NUMBERS
# ============================================

@pytest.mark.asyncio
async def test_reservation_number_format(test_session: AsyncSession, test_store: Store):
    number = await generate_reservation_number(test_session, test_store.id, now=datetime(2030, 6, 1))
    assert re.match(r"^R3006-\d{4}$", number)


@pytest.mark.asyncio
async def test_reservation_number_fallback_after_collisions(
    test_session: AsyncSession,
    test_store: Store,
    test_product: Product,
):
    await create_reservation(test_session, test_store, [(test_product, 1, None)], number="R3006-0042")

    with patch("backend.app.services.reservations.secrets.randbelow", return_value=42):
        number = await generate_reservation_number(
            test_session, test_store.id, max_retries=3, now=datetime(2030, 6, 1)
        )
    assert re.match(r"^R3006-[A-Z0-9]{6}$", number)
