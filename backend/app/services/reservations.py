# backend/app/services/reservations.py
"""
Checkout: turn a cart into a committed reservation.

ReservationTransaction moves through
Validating -> Locking -> Resolving -> Pricing -> Persisting -> Committed
(Failed on any error before commit). Everything before commit happens in one
database transaction; nothing is written if any step fails. Availability is
only decided after the product locks are held, from data read under those
locks. Notifications and payment-session creation run after commit and can
never undo the reservation.
"""
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from backend.app.core.constants import (
    ZERO,
    DELIVERY_OPTION_DELIVERY,
    DELIVERY_OPTION_PICKUP,
    PRODUCT_STATUS_ACTIVE,
    RESERVATION_MODE_PAYMENT,
    RESERVATION_SOURCE_ONLINE,
    to_money,
)
from backend.app.core.exceptions import CodedServiceError
from backend.app.core.locking import (
    LockTimeoutError,
    ProductLockManager,
    get_lock_manager,
    is_lock_timeout_error,
)
from backend.app.core.logging import get_logger
from backend.app.core.metrics import (
    checkout_duration_seconds,
    checkout_failures_total,
    price_mismatches_total,
    reservations_created_total,
    side_effect_failures_total,
)
from backend.app.core.settings import Settings, get_settings
from backend.app.models.product import Product
from backend.app.models.reservation import Reservation, ReservationItem, ReservationActivity
from backend.app.models.store import Store
from backend.app.services.availability import (
    get_blocking_statuses,
    get_reserved_quantities,
    load_combinations,
)
from backend.app.services.customers import CustomerContact, CustomerService
from backend.app.services.delivery import (
    DeliverySettings,
    DeliveryValidationError,
    quote_delivery,
    validate_delivery,
)
from backend.app.services.notifications import (
    EVENT_REQUEST_RECEIVED,
    EVENT_RESERVATION_CREATED,
    NotificationDispatcher,
)
from backend.app.services.payment import (
    PaymentLineItem,
    PaymentSessionCreator,
    compute_online_payment_amount,
    record_payment_initiated,
)
from backend.app.services.pricing import calculate_line_price, pricing_breakdown
from backend.app.services.rental_rules import RentalPolicy, check_rental_policy, to_utc_naive, utc_now
from backend.app.services.tax import DISPLAY_EXCLUSIVE, effective_tax_rate, item_tax_fields
from backend.app.services.variants import (
    CombinationResolver,
    ProductNoLongerAvailable,
    get_booking_axes,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReservationServiceError(CodedServiceError):
    """Base exception for checkout errors."""


class ReservationValidationError(ReservationServiceError):
    """Request rejected before any lock is taken."""

    def __init__(self, error_code: str, error_params: Optional[dict] = None, status_code: int = 400):
        super().__init__(f"Checkout validation failed: {error_code}", status_code, error_code, error_params)


class StoreNotFoundError(ReservationValidationError):
    def __init__(self, store_id: int):
        super().__init__("store_not_found", {"store_id": store_id}, 404)


class AvailabilityError(ReservationServiceError):
    """Not enough inventory once contention is resolved; the cart should be refreshed."""


class ProductNoLongerAvailableError(AvailabilityError):
    error_code = "product_no_longer_available"

    def __init__(self, product_name: str):
        super().__init__(
            f"Product no longer available: {product_name}",
            409,
            error_params={"product_name": product_name},
        )


class InsufficientStockError(AvailabilityError):
    error_code = "insufficient_stock"

    def __init__(self, product_name: str, available: int):
        super().__init__(
            f"Insufficient stock for {product_name}: {available} available",
            409,
            error_params={"product_name": product_name, "count": available},
        )


class LockContentionError(ReservationServiceError):
    """Lock wait exceeded; safe to retry."""
    error_code = "lock_timeout"
    retryable = True

    def __init__(self, timeout: float):
        super().__init__(f"Product locks not acquired within {timeout}s", 503)


class ReservationIntegrityError(ReservationServiceError):
    def __init__(self, error_code: str, detail: str):
        super().__init__(f"Checkout failed: {detail}", 500, error_code)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------

@dataclass
class CheckoutItem:
    product_id: Optional[int]
    quantity: int
    start_date: datetime
    end_date: datetime
    selected_attributes: Optional[dict] = None
    # Client-computed figures. Advisory for catalogue products; the price
    # source for custom items.
    unit_price: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    deposit_per_unit: Optional[Decimal] = None
    name: Optional[str] = None
    line_id: Optional[str] = None


@dataclass
class DeliverySelection:
    option: str = DELIVERY_OPTION_PICKUP
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class CheckoutRequest:
    customer: CustomerContact
    items: list[CheckoutItem]
    delivery: DeliverySelection = field(default_factory=DeliverySelection)
    customer_notes: Optional[str] = None
    subtotal_amount: Optional[Decimal] = None
    deposit_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None


@dataclass
class CheckoutResult:
    reservation_id: int
    reservation_number: str
    payment_url: Optional[str] = None


class CheckoutState(str, Enum):
    VALIDATING = "validating"
    LOCKING = "locking"
    RESOLVING = "resolving"
    PRICING = "pricing"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class _PricedLine:
    item: CheckoutItem
    product: Optional[Product]
    unit_price: Decimal
    deposit_per_unit: Decimal
    total_price: Decimal
    deposit_total: Decimal
    combination_key: Optional[str]
    selected_attributes: Optional[dict]
    tax: dict
    breakdown: Optional[dict]
    snapshot: dict


# ---------------------------------------------------------------------------
# Reservation numbers
# ---------------------------------------------------------------------------

_FALLBACK_ALPHABET = string.ascii_uppercase + string.digits


async def generate_reservation_number(
    session: AsyncSession,
    store_id: int,
    max_retries: int = 5,
    now: Optional[datetime] = None,
) -> str:
    """
    ``R{YY}{MM}-{NNNN}`` unique within the store.

    After ``max_retries`` collisions a 6-character random suffix is used
    instead, so the call never loops indefinitely.
    """
    prefix = f"R{(now or utc_now()):%y%m}-"
    for _ in range(max_retries):
        number = f"{prefix}{secrets.randbelow(10000):04d}"
        existing = await session.scalar(
            select(Reservation.id).where(Reservation.store_id == store_id, Reservation.number == number).limit(1)
        )
        if existing is None:
            return number
    suffix = "".join(secrets.choice(_FALLBACK_ALPHABET) for _ in range(6))
    logger.warning("Reservation number retries exhausted, using fallback", store_id=store_id)
    return f"{prefix}{suffix}"


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class ReservationTransaction:
    """One checkout. Create a new instance per request."""

    def __init__(
        self,
        session: AsyncSession,
        lock_manager: Optional[ProductLockManager] = None,
        notifier: Optional[NotificationDispatcher] = None,
        payments: Optional[PaymentSessionCreator] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.lock_manager = lock_manager or get_lock_manager()
        self.notifier = notifier or NotificationDispatcher()
        self._payments = payments
        self.state = CheckoutState.VALIDATING

    async def execute(self, store_id: int, request: CheckoutRequest) -> CheckoutResult:
        started = time.perf_counter()
        try:
            result = await self._run(store_id, request)
        except ReservationServiceError as e:
            self.state = CheckoutState.FAILED
            checkout_failures_total.labels(error_code=e.error_code).inc()
            logger.info("Checkout rejected", store_id=store_id, error_code=e.error_code, params=e.error_params)
            raise
        finally:
            checkout_duration_seconds.observe(time.perf_counter() - started)
        return result

    # -- Validating --------------------------------------------------------

    async def _run(self, store_id: int, request: CheckoutRequest) -> CheckoutResult:
        self.state = CheckoutState.VALIDATING
        store = await self.session.get(Store, store_id)
        if store is None:
            raise StoreNotFoundError(store_id)
        store_settings = store.settings_dict

        items = self._normalize_items(request.items)
        period_start = min(i.start_date for i in items)
        period_end = max(i.end_date for i in items)

        violation = check_rental_policy(
            RentalPolicy.from_store(store_settings, store.timezone), period_start, period_end
        )
        if violation:
            raise ReservationValidationError(violation.error_code, violation.error_params)

        product_ids = sorted({i.product_id for i in items if i.product_id is not None})
        await self._check_products_orderable(store.id, product_ids)

        delivery_settings = DeliverySettings.from_store_settings(store_settings)
        try:
            distance_km = validate_delivery(
                request.delivery.option,
                request.delivery.latitude,
                request.delivery.longitude,
                store.latitude,
                store.longitude,
                delivery_settings,
            )
        except DeliveryValidationError as e:
            raise ReservationValidationError(e.error_code, e.error_params)

        # -- Locking -------------------------------------------------------
        self.state = CheckoutState.LOCKING
        timeout = self.settings.RESERVATION_LOCK_TIMEOUT_SECONDS
        try:
            async with self.lock_manager.hold(product_ids, timeout):
                try:
                    reservation, lines = await self._allocate_and_persist(
                        store, request, items, product_ids, period_start, period_end,
                        delivery_settings, distance_km,
                    )
                    await self.session.commit()
                except BaseException:
                    await self.session.rollback()
                    raise
        except LockTimeoutError as e:
            raise LockContentionError(timeout) from e

        self.state = CheckoutState.COMMITTED
        reservations_created_total.labels(store_id=str(store.id)).inc()
        logger.info(
            "Reservation created",
            reservation_id=reservation.id,
            reservation_number=reservation.number,
            store_id=store.id,
            total=str(reservation.total_amount),
        )

        # -- Post-commit side effects ----------------------------------------
        payload = self._notification_payload(store, reservation, request, lines)
        self.notifier.dispatch(EVENT_REQUEST_RECEIVED, payload)
        self.notifier.dispatch(EVENT_RESERVATION_CREATED, payload)
        result = CheckoutResult(reservation_id=reservation.id, reservation_number=reservation.number)
        result.payment_url = await self._start_payment(store, reservation, request, lines)
        return result

    def _normalize_items(self, items: list[CheckoutItem]) -> list[CheckoutItem]:
        if not items:
            raise ReservationValidationError("empty_cart")
        for item in items:
            if item.quantity is None or item.quantity < 1:
                raise ReservationValidationError("invalid_quantity", {"line_id": item.line_id})
            item.start_date = to_utc_naive(item.start_date)
            item.end_date = to_utc_naive(item.end_date)
            if item.end_date <= item.start_date:
                raise ReservationValidationError("invalid_period", {"line_id": item.line_id})
            if item.product_id is None and item.unit_price is None:
                raise ReservationValidationError("invalid_custom_item", {"line_id": item.line_id})
        return items

    async def _check_products_orderable(self, store_id: int, product_ids: list[int]) -> None:
        if not product_ids:
            return
        rows = await self.session.execute(
            select(Product.id, Product.store_id, Product.status).where(Product.id.in_(product_ids))
        )
        found = {pid: (sid, status) for pid, sid, status in rows.all()}
        for pid in product_ids:
            owner, status = found.get(pid, (None, None))
            if owner != store_id or status != PRODUCT_STATUS_ACTIVE:
                raise ReservationValidationError("product_unavailable", {"product_id": pid})

    # -- Locking / Resolving / Pricing / Persisting --------------------------

    async def _lock_product_rows(self, product_ids: list[int]) -> dict[int, Product]:
        """``SELECT ... FOR UPDATE`` in id order; reloads current product state."""
        if not product_ids:
            return {}
        if self.session.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self.settings.RESERVATION_LOCK_TIMEOUT_SECONDS * 1000)
            await self.session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
        stmt = (
            select(Product)
            .where(Product.id.in_(product_ids))
            .order_by(Product.id)
            .with_for_update()
            .options(selectinload(Product.pricing_tiers))
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.session.execute(stmt)
        except DBAPIError as e:
            if is_lock_timeout_error(e):
                raise LockTimeoutError(product_ids[0], self.settings.RESERVATION_LOCK_TIMEOUT_SECONDS) from e
            raise
        return {p.id: p for p in result.scalars().all()}

    async def _allocate_and_persist(
        self,
        store: Store,
        request: CheckoutRequest,
        items: list[CheckoutItem],
        product_ids: list[int],
        period_start: datetime,
        period_end: datetime,
        delivery_settings: DeliverySettings,
        distance_km: Optional[Decimal],
    ) -> tuple[Reservation, list[_PricedLine]]:
        products = await self._lock_product_rows(product_ids)
        for pid in product_ids:
            product = products.get(pid)
            if product is None or product.status != PRODUCT_STATUS_ACTIVE:
                raise ReservationValidationError("product_unavailable", {"product_id": pid})

        # Resolving
        self.state = CheckoutState.RESOLVING
        resolved = await self._resolve(store, items, products, product_ids, period_start, period_end)

        # Pricing
        self.state = CheckoutState.PRICING
        lines = self._price(store, items, products, resolved)
        subtotal = to_money(sum((line.total_price for line in lines), ZERO))
        deposit = to_money(sum((line.deposit_total for line in lines), ZERO))
        quote = quote_delivery(distance_km, delivery_settings, subtotal)
        delivery_fee = quote.fee if quote else ZERO

        taxed = [line for line in lines if line.tax.get("tax_amount") is not None]
        tax_amount = subtotal_excl_tax = tax_rate = None
        if taxed:
            tax_amount = to_money(sum((line.tax["tax_amount"] for line in taxed), ZERO))
            subtotal_excl_tax = to_money(sum(
                (line.tax["total_excl_tax"] if line.tax.get("total_excl_tax") is not None else line.total_price
                 for line in lines),
                ZERO,
            ))
            rates = {line.tax["tax_rate"] for line in taxed}
            # None when taxed lines use different rates; per-item rates stay on the items
            tax_rate = rates.pop() if len(rates) == 1 else None
        display_mode = (store.settings_dict.get("tax") or {}).get("display_mode", DISPLAY_EXCLUSIVE)
        # Exclusive prices: tax is charged on top of the nominal subtotal
        tax_on_top = tax_amount if (tax_amount is not None and display_mode == DISPLAY_EXCLUSIVE) else ZERO
        total = to_money(subtotal + tax_on_top + deposit + delivery_fee)

        self._log_price_mismatch(request, lines, subtotal, deposit, total)

        # Customer upsert
        try:
            customer = await CustomerService(self.session).upsert(store.id, request.customer)
        except IntegrityError as e:
            raise ReservationIntegrityError("create_customer_error", str(e.orig)) from e

        # Persisting
        self.state = CheckoutState.PERSISTING
        number = await generate_reservation_number(
            self.session, store.id, self.settings.RESERVATION_NUMBER_MAX_RETRIES
        )
        wants_delivery = request.delivery.option == DELIVERY_OPTION_DELIVERY
        reservation = Reservation(
            store_id=store.id,
            customer_id=customer.id,
            number=number,
            status="pending",
            start_date=period_start,
            end_date=period_end,
            subtotal_amount=subtotal,
            deposit_amount=deposit,
            total_amount=total,
            subtotal_excl_tax=subtotal_excl_tax,
            tax_amount=tax_amount,
            tax_rate=tax_rate,
            delivery_option=DELIVERY_OPTION_DELIVERY if wants_delivery else DELIVERY_OPTION_PICKUP,
            delivery_address=request.delivery.address if wants_delivery else None,
            delivery_city=request.delivery.city if wants_delivery else None,
            delivery_postal_code=request.delivery.postal_code if wants_delivery else None,
            delivery_country=request.delivery.country if wants_delivery else None,
            delivery_latitude=_to_decimal(request.delivery.latitude) if wants_delivery else None,
            delivery_longitude=_to_decimal(request.delivery.longitude) if wants_delivery else None,
            delivery_distance_km=quote.distance_km if quote else None,
            delivery_fee=delivery_fee,
            customer_notes=request.customer_notes or None,
            source=RESERVATION_SOURCE_ONLINE,
        )
        for line in lines:
            reservation.items.append(ReservationItem(
                product_id=line.product.id if line.product else None,
                is_custom_item=line.product is None,
                quantity=line.item.quantity,
                unit_price=line.unit_price,
                deposit_per_unit=line.deposit_per_unit,
                total_price=line.total_price,
                tax_rate=line.tax.get("tax_rate"),
                tax_amount=line.tax.get("tax_amount"),
                price_excl_tax=line.tax.get("price_excl_tax"),
                total_excl_tax=line.tax.get("total_excl_tax"),
                pricing_breakdown=line.breakdown,
                product_snapshot=line.snapshot,
                combination_key=line.combination_key,
                selected_attributes=line.selected_attributes,
            ))
        self.session.add(reservation)
        try:
            await self.session.flush()
            self.session.add(ReservationActivity(
                reservation_id=reservation.id,
                activity_type="created",
                description=None,
                details={"source": RESERVATION_SOURCE_ONLINE, "items": len(lines)},
            ))
            await self.session.flush()
        except IntegrityError as e:
            raise ReservationIntegrityError("create_reservation_error", str(e.orig)) from e
        return reservation, lines

    async def _resolve(
        self,
        store: Store,
        items: list[CheckoutItem],
        products: dict[int, Product],
        product_ids: list[int],
        period_start: datetime,
        period_end: datetime,
    ) -> list:
        """Allocation per line (None for custom items), in cart order."""
        if not product_ids:
            return [None] * len(items)

        combinations = await load_combinations(self.session, products.values())

        # Static bound: the cart cannot exceed what the store owns at all
        requested: dict[int, int] = {}
        for item in items:
            if item.product_id is not None:
                requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        for pid, qty in requested.items():
            product = products[pid]
            if product.track_units:
                capacity = sum(c.total_quantity for c in combinations.get(pid, []))
            else:
                capacity = product.quantity
            if qty > capacity:
                raise InsufficientStockError(product.name, capacity)

        reserved = await get_reserved_quantities(
            self.session,
            store.id,
            period_start,
            period_end,
            get_blocking_statuses(store.settings_dict),
            product_ids=product_ids,
        )
        resolver = CombinationResolver(
            reserved_by_product=dict(reserved.by_product),
            reserved_by_combination=dict(reserved.by_combination),
        )

        allocations = []
        try:
            for item in items:
                if item.product_id is None:
                    allocations.append(None)
                    continue
                product = products[item.product_id]
                if product.track_units:
                    allocations.append(resolver.resolve_tracked(
                        product.id,
                        product.name,
                        get_booking_axes(product.booking_attribute_axes),
                        combinations.get(product.id, []),
                        item.selected_attributes,
                        item.quantity,
                    ))
                else:
                    allocations.append(resolver.resolve_untracked(
                        product.id, product.name, product.quantity, item.quantity
                    ))
        except ProductNoLongerAvailable as e:
            raise ProductNoLongerAvailableError(e.product_name) from e
        return allocations

    def _price(self, store: Store, items: list[CheckoutItem], products: dict[int, Product],
               allocations: list) -> list[_PricedLine]:
        store_tax = store.settings_dict.get("tax")
        display_mode = (store_tax or {}).get("display_mode", DISPLAY_EXCLUSIVE)
        lines = []
        for item, allocation in zip(items, allocations):
            if item.product_id is None:
                unit_price = to_money(item.unit_price)
                deposit_per_unit = to_money(item.deposit_per_unit or ZERO)
                lines.append(_PricedLine(
                    item=item,
                    product=None,
                    unit_price=unit_price,
                    deposit_per_unit=deposit_per_unit,
                    total_price=to_money(unit_price * item.quantity),
                    deposit_total=to_money(deposit_per_unit * item.quantity),
                    combination_key=None,
                    selected_attributes=None,
                    tax={},
                    breakdown=None,
                    snapshot={"name": item.name or "Custom item", "is_custom_item": True},
                ))
                continue

            product = products[item.product_id]
            price = calculate_line_price(
                product.price,
                product.deposit,
                product.pricing_mode,
                product.pricing_tiers,
                item.start_date,
                item.end_date,
                item.quantity,
            )
            rate = effective_tax_rate(store_tax, product.tax_settings)
            tax = item_tax_fields(price.effective_unit_price, item.quantity, price.subtotal, rate, display_mode)
            lines.append(_PricedLine(
                item=item,
                product=product,
                unit_price=price.effective_unit_price,
                deposit_per_unit=to_money(product.deposit or ZERO),
                total_price=price.subtotal,
                deposit_total=price.deposit_total,
                combination_key=allocation.combination_key,
                selected_attributes=allocation.selected_attributes or None,
                tax=tax,
                breakdown=pricing_breakdown(price, tax if tax.get("tax_rate") is not None else None),
                snapshot={
                    "name": product.name,
                    "description": product.description,
                    "pricing_mode": product.pricing_mode,
                    "price": str(product.price),
                    "deposit": str(product.deposit),
                    "track_units": product.track_units,
                },
            ))
        return lines

    def _log_price_mismatch(self, request: CheckoutRequest, lines: list[_PricedLine],
                            subtotal: Decimal, deposit: Decimal, total: Decimal) -> None:
        """Client amounts are never trusted; differences are recorded, not rejected."""
        tolerance = self.settings.PRICE_MISMATCH_TOLERANCE
        for line in lines:
            if line.product is None or line.item.subtotal is None:
                continue
            if abs(Decimal(str(line.item.subtotal)) - line.total_price) > tolerance:
                price_mismatches_total.labels(field="item_subtotal").inc()
                logger.warning(
                    "Client item price mismatch",
                    product_id=line.product.id,
                    line_id=line.item.line_id,
                    client_subtotal=str(line.item.subtotal),
                    server_subtotal=str(line.total_price),
                )
        if request.total_amount is not None and abs(Decimal(str(request.total_amount)) - total) > tolerance:
            price_mismatches_total.labels(field="total").inc()
            logger.warning(
                "Client total mismatch",
                client_total=str(request.total_amount),
                server_total=str(total),
                client_subtotal=str(request.subtotal_amount) if request.subtotal_amount is not None else None,
                server_subtotal=str(subtotal),
                client_deposit=str(request.deposit_amount) if request.deposit_amount is not None else None,
                server_deposit=str(deposit),
            )

    # -- Post-commit -------------------------------------------------------

    def _notification_payload(self, store: Store, reservation: Reservation, request: CheckoutRequest,
                              lines: list[_PricedLine]) -> dict[str, Any]:
        return {
            "store_id": store.id,
            "store_name": store.name,
            "store_chat_id": store.notification_chat_id,
            "store_discord_webhook_url": store.discord_webhook_url,
            "reservation_id": reservation.id,
            "reservation_number": reservation.number,
            "customer_name": f"{request.customer.first_name} {request.customer.last_name}".strip(),
            "customer_email": request.customer.email,
            "start_date": reservation.start_date.isoformat(),
            "end_date": reservation.end_date.isoformat(),
            "items": [{"name": line.snapshot.get("name"), "quantity": line.item.quantity} for line in lines],
            "total_amount": str(reservation.total_amount),
            "currency": store.currency,
            "delivery_option": reservation.delivery_option,
            "delivery_address": reservation.delivery_address,
        }

    def _payments_enabled(self, store: Store) -> bool:
        if store.settings_dict.get("reservation_mode") != RESERVATION_MODE_PAYMENT:
            return False
        if not store.payment_account_id:
            return False
        if self._payments is None:
            self._payments = PaymentSessionCreator()
        return self._payments.configured

    async def _start_payment(self, store: Store, reservation: Reservation, request: CheckoutRequest,
                             lines: list[_PricedLine]) -> Optional[str]:
        """Create the online payment; failures are logged and the reservation stands."""
        if not self._payments_enabled(store):
            return None

        # Rollback below expires ORM state; keep plain values
        reservation_id = reservation.id
        subtotal = Decimal(reservation.subtotal_amount)
        percentage = store.settings_dict.get("online_payment_deposit_percentage", 100)
        amount = compute_online_payment_amount(subtotal, percentage)
        is_partial = percentage is not None and int(percentage) < 100
        if is_partial:
            line_items = [PaymentLineItem(
                description=f"Deposit ({percentage}%) for reservation {reservation.number}",
                quantity=1,
                unit_amount=amount,
            )]
        else:
            line_items = [
                PaymentLineItem(
                    description=line.snapshot.get("name") or "Rental",
                    quantity=line.item.quantity,
                    unit_amount=to_money(line.total_price / line.item.quantity),
                )
                for line in lines
            ]
        base_url = f"{self.settings.APP_BASE_URL.rstrip('/')}/{store.slug}"

        try:
            payment = await self._payments.create_session(
                amount=amount,
                currency=store.currency,
                line_items=line_items,
                success_url=f"{base_url}/checkout/success?reservation={reservation.id}",
                cancel_url=f"{base_url}/checkout?cancelled=true",
                description=f"Reservation {reservation.number}",
                metadata={"reservation_id": str(reservation.id), "store_id": str(store.id)},
                customer_email=request.customer.email,
            )
            await record_payment_initiated(
                self.session, reservation.id, amount, store.currency, payment, is_partial
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            side_effect_failures_total.labels(channel="payment").inc()
            logger.error(
                "Payment session creation failed, reservation kept",
                reservation_id=reservation_id,
                error=str(e),
            )
            return None
        return payment.url


def _to_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))

