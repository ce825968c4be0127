from sqlalchemy import String, ForeignKey, DateTime, DECIMAL, Text, Index, Integer, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from backend.app.core.base import Base


class Reservation(Base):
    __tablename__ = 'reservations'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey('stores.id', ondelete='CASCADE'))
    customer_id: Mapped[int] = mapped_column(ForeignKey('customers.id'))
    number: Mapped[str] = mapped_column(String(20))  # R2610-4821, unique per store
    status: Mapped[str] = mapped_column(String(20), default='pending')
    # Half-open rental period [start_date, end_date), naive UTC
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    subtotal_amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    deposit_amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=0)
    total_amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    # Tax; NULL when tax does not apply (not the same as zero tax)
    subtotal_excl_tax: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(5, 2), nullable=True)
    # Delivery
    delivery_option: Mapped[str] = mapped_column(String(20), default='pickup')  # pickup | delivery
    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delivery_postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    delivery_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    delivery_latitude: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 7), nullable=True)
    delivery_longitude: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 7), nullable=True)
    delivery_distance_km: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    delivery_fee: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=0)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(20), default='online')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    items: Mapped[List["ReservationItem"]] = relationship(
        back_populates="reservation",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('store_id', 'number', name='uq_reservations_store_number'),
        Index('ix_reservations_store_status', 'store_id', 'status'),
        # Overlap scan: status filter plus range bounds
        Index('ix_reservations_store_period', 'store_id', 'start_date', 'end_date'),
        Index('ix_reservations_customer_id', 'customer_id'),
    )


class ReservationItem(Base):
    """Line item; written once by checkout and never updated by the allocation engine."""
    __tablename__ = 'reservation_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey('reservations.id', ondelete='CASCADE'))
    # NULL for free-form custom items
    product_id: Mapped[Optional[int]] = mapped_column(ForeignKey('products.id', ondelete='SET NULL'), nullable=True)
    is_custom_item: Mapped[bool] = mapped_column(Boolean, default=False)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    deposit_per_unit: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=0)
    total_price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(5, 2), nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    price_excl_tax: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    total_excl_tax: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
    pricing_breakdown: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    product_snapshot: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    combination_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    selected_attributes: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)

    reservation: Mapped["Reservation"] = relationship(back_populates="items")

    __table_args__ = (
        Index('ix_reservation_items_reservation_id', 'reservation_id'),
        Index('ix_reservation_items_product_id', 'product_id'),
    )


class ReservationActivity(Base):
    __tablename__ = 'reservation_activity'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey('reservations.id', ondelete='CASCADE'))
    activity_type: Mapped[str] = mapped_column(String(50))  # created | payment_initiated
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict]] = mapped_column('metadata', JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_reservation_activity_reservation_id', 'reservation_id'),
    )


class ReservationPayment(Base):
    __tablename__ = 'payments'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reservation_id: Mapped[int] = mapped_column(ForeignKey('reservations.id', ondelete='CASCADE'))
    amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    currency: Mapped[str] = mapped_column(String(3))
    payment_type: Mapped[str] = mapped_column(String(20), default='rental')
    method: Mapped[str] = mapped_column(String(20), default='yookassa')
    status: Mapped[str] = mapped_column(String(20), default='pending')
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_payments_reservation_id', 'reservation_id'),
        Index('ix_payments_provider_payment_id', 'provider_payment_id'),
    )
