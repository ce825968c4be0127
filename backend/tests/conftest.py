"""
Test fixtures for the rental backend tests.

Provides:
- In-memory SQLite database for isolated testing (file-backed variant for
  tests that need several independent connections)
- Async test client with session / lock / notifier overrides
- Test data factories for stores, products, units and reservations
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

# DB settings required by Settings validation (tests use SQLite, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RESERVATION_LOCK_BACKEND", "memory")
os.environ.setdefault("CHECKOUT_RATE_LIMIT", "1000/minute")

import pytest
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Iterable, Optional

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import NullPool, StaticPool

from backend.app.core.base import Base
from backend.app.core.locking import InMemoryProductLockManager
from backend.app.main import app
from backend.app.api.deps import get_session, get_product_locks, get_notifier
from backend.app.models.store import Store
from backend.app.models.product import Product, PricingTier, ProductUnit
from backend.app.models.customer import Customer
from backend.app.models.reservation import Reservation, ReservationItem
from backend.app.services.customers import CustomerContact
from backend.app.services.reservations import CheckoutItem, CheckoutRequest, DeliverySelection
from backend.app.services.variants import build_combination_key, get_booking_axes


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# A Monday well in the future so advance-notice rules never interfere
RENTAL_START = datetime(2030, 6, 3, 10, 0)
RENTAL_END = datetime(2030, 6, 6, 10, 0)


class RecordingNotifier:
    """Stands in for NotificationDispatcher; records events instead of sending."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def dispatch(self, event_type: str, payload: dict) -> list:
        self.events.append((event_type, payload))
        return []

    @property
    def event_types(self) -> list[str]:
        return [event for event, _ in self.events]


@pytest.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    File-backed database where every session gets its own connection.

    Used by tests that run several checkouts concurrently.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rental.db'}",
        poolclass=NullPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def lock_manager() -> InMemoryProductLockManager:
    return InMemoryProductLockManager()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(
    session_factory: async_sessionmaker,
    lock_manager: InMemoryProductLockManager,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.

    Every request gets a fresh session from the test database.
    """
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_product_locks] = lambda: lock_manager
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

async def create_store(session: AsyncSession, **overrides) -> Store:
    values = dict(
        name="Alpine Rentals",
        slug="alpine-rentals",
        email="owner@alpine.test",
        currency="EUR",
        timezone="Europe/Paris",
        latitude=Decimal("48.8566000"),
        longitude=Decimal("2.3522000"),
        settings={"reservation_mode": "request", "pending_blocks_availability": True},
    )
    values.update(overrides)
    store = Store(**values)
    session.add(store)
    await session.commit()
    await session.refresh(store)
    return store


async def create_product(
    session: AsyncSession,
    store: Store,
    tiers: Iterable[tuple[int, str]] = (),
    **overrides,
) -> Product:
    values = dict(
        store_id=store.id,
        name="Touring Ski",
        status="active",
        price=Decimal("20.00"),
        deposit=Decimal("0.00"),
        pricing_mode="day",
        quantity=1,
        track_units=False,
    )
    values.update(overrides)
    product = Product(**values)
    for order, (min_duration, discount) in enumerate(tiers):
        product.pricing_tiers.append(PricingTier(
            min_duration=min_duration,
            discount_percent=Decimal(discount),
            display_order=order,
        ))
    session.add(product)
    await session.commit()
    await session.refresh(product)
    return product


async def create_units(
    session: AsyncSession,
    product: Product,
    attributes: Iterable[dict],
    status: str = "available",
) -> list[ProductUnit]:
    axes = get_booking_axes(product.booking_attribute_axes)
    units = []
    for index, attrs in enumerate(attributes):
        unit = ProductUnit(
            product_id=product.id,
            identifier=f"{product.name}-{index + 1}",
            status=status,
            attributes=attrs,
            combination_key=build_combination_key(axes, attrs),
        )
        session.add(unit)
        units.append(unit)
    await session.commit()
    return units


async def create_reservation(
    session: AsyncSession,
    store: Store,
    lines: Iterable[tuple[Optional[Product], int, Optional[str]]],
    start: datetime = RENTAL_START,
    end: datetime = RENTAL_END,
    status: str = "confirmed",
    number: str = "R3006-0001",
) -> Reservation:
    """Existing reservation holding ``(product, quantity, combination_key)`` lines."""
    customer = Customer(
        store_id=store.id,
        email=f"{number.lower()}@example.com",
        first_name="Existing",
        last_name="Customer",
    )
    session.add(customer)
    await session.flush()
    reservation = Reservation(
        store_id=store.id,
        customer_id=customer.id,
        number=number,
        status=status,
        start_date=start,
        end_date=end,
        subtotal_amount=Decimal("0.00"),
        deposit_amount=Decimal("0.00"),
        total_amount=Decimal("0.00"),
    )
    for product, quantity, combination_key in lines:
        reservation.items.append(ReservationItem(
            product_id=product.id if product else None,
            is_custom_item=product is None,
            quantity=quantity,
            unit_price=Decimal("0.00"),
            total_price=Decimal("0.00"),
            combination_key=combination_key,
        ))
    session.add(reservation)
    await session.commit()
    await session.refresh(reservation)
    return reservation


@pytest.fixture
async def test_store(test_session: AsyncSession) -> Store:
    return await create_store(test_session)


@pytest.fixture
async def test_product(test_session: AsyncSession, test_store: Store) -> Product:
    """Untracked product with two items in stock and 3/7-day tiers."""
    return await create_product(
        test_session,
        test_store,
        tiers=[(3, "10"), (7, "20")],
        quantity=2,
        deposit=Decimal("50.00"),
    )


# --- Request builders ---

def cart_line(
    product_id: Optional[int],
    quantity: int = 1,
    start: datetime = RENTAL_START,
    end: datetime = RENTAL_END,
    **kwargs,
) -> CheckoutItem:
    return CheckoutItem(product_id=product_id, quantity=quantity, start_date=start, end_date=end, **kwargs)


def checkout_request(
    items: list[CheckoutItem],
    delivery: Optional[DeliverySelection] = None,
    email: str = "jane@example.com",
    **kwargs,
) -> CheckoutRequest:
    return CheckoutRequest(
        customer=CustomerContact(email=email, first_name="Jane", last_name="Doe", phone="+33100000000"),
        items=items,
        delivery=delivery or DeliverySelection(),
        **kwargs,
    )


def checkout_payload(product_id: Optional[int], quantity: int = 1, **line_overrides) -> dict:
    """JSON body for ``POST /stores/{id}/checkout``."""
    line = {
        "product_id": product_id,
        "quantity": quantity,
        "start_date": RENTAL_START.isoformat() + "Z",
        "end_date": RENTAL_END.isoformat() + "Z",
    }
    line.update(line_overrides)
    return {
        "customer": {"email": "jane@example.com", "first_name": "Jane", "last_name": "Doe"},
        "items": [line],
    }
