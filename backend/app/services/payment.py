"""
Payment service: YuKassa checkout sessions for reservations.

Only called after the reservation is committed. Creating the session never
changes the reservation; on success a pending payment row and a
``payment_initiated`` activity are recorded in a separate transaction.
"""
import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession

from yookassa import Configuration, Payment as YooPayment

from backend.app.core.constants import ZERO, PERCENT_BASE, MIN_ONLINE_PAYMENT_AMOUNT, to_money
from backend.app.core.exceptions import ServiceError
from backend.app.core.settings import get_settings
from backend.app.core.logging import get_logger
from backend.app.models.reservation import ReservationActivity, ReservationPayment

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PaymentServiceError(ServiceError):
    """Base exception for payment service errors."""


class PaymentNotConfiguredError(PaymentServiceError):
    """YOOKASSA_SHOP_ID / YOOKASSA_SECRET_KEY not set."""

    def __init__(self):
        super().__init__("Payment system is not configured", 503)


class PaymentSessionError(PaymentServiceError):
    def __init__(self, message: str):
        super().__init__(message, 502)


# ---------------------------------------------------------------------------
# Amount helpers
# ---------------------------------------------------------------------------

def compute_online_payment_amount(subtotal: Decimal, deposit_percentage: Optional[int]) -> Decimal:
    """
    Amount charged online for the rental.

    ``deposit_percentage`` < 100 charges part of the subtotal up front; the
    result is at least the provider minimum and never more than the subtotal.
    """
    pct = 100 if deposit_percentage is None else max(0, min(100, int(deposit_percentage)))
    if pct >= 100:
        return to_money(subtotal)
    amount = to_money(Decimal(subtotal) * pct / PERCENT_BASE)
    amount = max(amount, MIN_ONLINE_PAYMENT_AMOUNT)
    return min(amount, to_money(subtotal))


@dataclass
class PaymentLineItem:
    description: str
    quantity: int
    unit_amount: Decimal


@dataclass
class PaymentSession:
    payment_id: str
    url: Optional[str]
    status: str


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PaymentSessionCreator:
    """Creates YuKassa redirect payments."""

    def __init__(self):
        self._configure_sdk()

    def _configure_sdk(self) -> None:
        settings = get_settings()
        if settings.payments_configured:
            Configuration.account_id = settings.YOOKASSA_SHOP_ID
            Configuration.secret_key = settings.YOOKASSA_SECRET_KEY
            self._configured = True
        else:
            self._configured = False

    @property
    def configured(self) -> bool:
        return self._configured

    def _build_receipt(self, line_items: List[PaymentLineItem], currency: str,
                       customer_email: Optional[str]) -> Dict[str, Any]:
        return {
            "customer": {"email": customer_email} if customer_email else {},
            "items": [
                {
                    "description": item.description[:128],  # YuKassa limit 128 chars
                    "quantity": str(item.quantity),
                    "amount": {"value": str(to_money(item.unit_amount)), "currency": currency},
                    "vat_code": 1,
                    "payment_mode": "full_payment",
                    "payment_subject": "service",
                }
                for item in line_items
            ],
        }

    async def create_session(
        self,
        amount: Decimal,
        currency: str,
        line_items: List[PaymentLineItem],
        success_url: str,
        cancel_url: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentSession:
        if not self._configured:
            raise PaymentNotConfiguredError()
        if amount <= ZERO:
            raise PaymentSessionError("Payment amount must be positive")

        payment_params: Dict[str, Any] = {
            "amount": {"value": str(to_money(amount)), "currency": currency},
            "confirmation": {"type": "redirect", "return_url": success_url},
            "capture": True,
            "description": description[:128],
            "receipt": self._build_receipt(line_items, currency, customer_email),
            "metadata": {**(metadata or {}), "cancel_url": cancel_url},
        }
        idempotence_key = str(uuid.uuid4())

        try:
            payment = await asyncio.to_thread(YooPayment.create, payment_params, idempotence_key)
        except Exception as exc:
            logger.error("YuKassa payment creation failed", error=str(exc), metadata=metadata)
            raise PaymentSessionError(f"Payment creation failed: {exc}")

        confirmation_url = payment.confirmation.confirmation_url if payment.confirmation else None
        logger.info(
            "Payment session created",
            payment_id=payment.id,
            amount=str(amount),
            status=payment.status,
        )
        return PaymentSession(payment_id=payment.id, url=confirmation_url, status=payment.status)


async def record_payment_initiated(
    session: AsyncSession,
    reservation_id: int,
    amount: Decimal,
    currency: str,
    payment: PaymentSession,
    is_partial: bool,
) -> None:
    """Store the pending payment and its activity entry. Caller must commit the session."""
    session.add(ReservationPayment(
        reservation_id=reservation_id,
        amount=amount,
        currency=currency,
        payment_type="rental",
        method="yookassa",
        status="pending",
        provider_payment_id=payment.payment_id,
    ))
    session.add(ReservationActivity(
        reservation_id=reservation_id,
        activity_type="payment_initiated",
        description=None,
        details={
            "provider_payment_id": payment.payment_id,
            "amount": str(amount),
            "currency": currency,
            "method": "yookassa",
            "is_partial_payment": is_partial,
        },
    ))
    await session.flush()
