from sqlalchemy import String, Text, DECIMAL, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base


class Store(Base):
    __tablename__ = 'stores'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(100), unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Pickup point, used as the origin for delivery distance
    latitude: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 7), nullable=True)
    longitude: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 7), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default='EUR')
    timezone: Mapped[str] = mapped_column(String(64), default='Europe/Paris')
    # reservation_mode, pending_blocks_availability, business_hours, tax, delivery, rental rules...
    settings: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    # Owner alerts
    notification_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # Telegram chat
    discord_webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Set once the store is onboarded with the payment provider
    payment_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_stores_slug', 'slug'),
    )

    @property
    def settings_dict(self) -> dict:
        return self.settings or {}
