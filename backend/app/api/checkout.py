from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session, get_product_locks, get_notifier
from backend.app.core.limiter import limiter
from backend.app.core.locking import ProductLockManager
from backend.app.core.logging import get_logger, bind_checkout_context, clear_checkout_context
from backend.app.core.settings import get_settings
from backend.app.schemas import CheckoutBody, CheckoutResponse
from backend.app.services.customers import CustomerContact
from backend.app.services.notifications import NotificationDispatcher
from backend.app.services.reservations import (
    CheckoutItem,
    CheckoutRequest,
    DeliverySelection,
    ReservationServiceError,
    ReservationTransaction,
)

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: ReservationServiceError):
    """Convert checkout errors to HTTP errors carrying the storefront error code."""
    headers = {"Retry-After": "1"} if e.retryable else None
    raise HTTPException(status_code=e.status_code, detail=e.to_dict(), headers=headers)


def _to_checkout_request(data: CheckoutBody) -> CheckoutRequest:
    return CheckoutRequest(
        customer=CustomerContact(**data.customer.model_dump()),
        items=[CheckoutItem(**item.model_dump()) for item in data.items],
        delivery=DeliverySelection(**data.delivery.model_dump()),
        customer_notes=data.customer_notes,
        subtotal_amount=data.subtotal_amount,
        deposit_amount=data.deposit_amount,
        total_amount=data.total_amount,
    )


@router.post("/{store_id}/checkout", response_model=CheckoutResponse)
@limiter.limit(lambda: get_settings().CHECKOUT_RATE_LIMIT)
async def create_reservation(
    request: Request,
    store_id: int,
    data: CheckoutBody,
    session: AsyncSession = Depends(get_session),
    locks: ProductLockManager = Depends(get_product_locks),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    Submit a storefront cart.

    Prices, tax and delivery fee are recomputed on the server; amounts sent
    by the client are only compared for logging. Availability errors (409)
    mean the cart must be refreshed; 503 ``lock_timeout`` is safe to retry.
    """
    bind_checkout_context(store_id, request.headers.get("X-Request-ID"))
    logger.info("Checkout submitted", items=len(data.items), delivery=data.delivery.option)
    transaction = ReservationTransaction(session, lock_manager=locks, notifier=notifier)
    try:
        result = await transaction.execute(store_id, _to_checkout_request(data))
    except ReservationServiceError as e:
        await session.rollback()
        logger.warning(
            "Checkout failed",
            error=e.message,
            error_code=e.error_code,
            state=transaction.state.value,
        )
        _handle_service_error(e)
    finally:
        clear_checkout_context()
    return CheckoutResponse(
        reservation_id=result.reservation_id,
        reservation_number=result.reservation_number,
        payment_url=result.payment_url,
    )
