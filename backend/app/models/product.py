from sqlalchemy import String, ForeignKey, DECIMAL, Text, Boolean, Index, Integer, JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from backend.app.core.base import Base


class Product(Base):
    __tablename__ = 'products'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey('stores.id', ondelete='CASCADE'))
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default='active')  # draft | active | archived
    price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))  # base price per pricing unit
    deposit: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=0)  # per unit, not duration-scaled
    pricing_mode: Mapped[str] = mapped_column(String(10), default='day')  # hour | day | week
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    track_units: Mapped[bool] = mapped_column(Boolean, default=False)
    # [{"key": "size", "label": "Size", "position": 0}, ...]
    booking_attribute_axes: Mapped[Optional[list]] = mapped_column(JSON(), nullable=True)
    # {"inherit_from_store": bool, "custom_rate": number}
    tax_settings: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    pricing_tiers: Mapped[List["PricingTier"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="PricingTier.display_order",
    )
    units: Mapped[List["ProductUnit"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('ix_products_store_id', 'store_id'),
        Index('ix_products_store_status', 'store_id', 'status'),
    )


class PricingTier(Base):
    """Duration threshold granting a percentage discount off the base price."""
    __tablename__ = 'product_pricing_tiers'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    min_duration: Mapped[int] = mapped_column(Integer)  # in product pricing units
    discount_percent: Mapped[Decimal] = mapped_column(DECIMAL(5, 2))
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    product: Mapped["Product"] = relationship(back_populates="pricing_tiers")

    __table_args__ = (
        Index('ix_product_pricing_tiers_product_id', 'product_id'),
    )


class ProductUnit(Base):
    """A single physical item of a unit-tracked product."""
    __tablename__ = 'product_units'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    identifier: Mapped[str] = mapped_column(String(255))  # serial number / label
    status: Mapped[str] = mapped_column(String(20), default='available')  # available | maintenance | retired
    attributes: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)  # keyed by axis key
    combination_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    product: Mapped["Product"] = relationship(back_populates="units")

    __table_args__ = (
        Index('ix_product_units_product_status', 'product_id', 'status'),
        Index('ix_product_units_product_combination', 'product_id', 'combination_key'),
    )
