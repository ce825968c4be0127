# backend/app/services/__init__.py
"""
Services layer for business logic.
Keeps API endpoints thin and the reservation engine testable without HTTP.
"""

from backend.app.services.reservations import (
    ReservationTransaction,
    ReservationServiceError,
    ReservationValidationError,
    StoreNotFoundError,
    AvailabilityError,
    ProductNoLongerAvailableError,
    InsufficientStockError,
    LockContentionError,
    ReservationIntegrityError,
    CheckoutRequest,
    CheckoutItem,
    CheckoutResult,
    DeliverySelection,
    generate_reservation_number,
)
from backend.app.services.availability import (
    get_blocking_statuses,
    get_reserved_quantities,
    get_product_availability,
)
from backend.app.services.customers import CustomerService, CustomerContact
from backend.app.services.notifications import NotificationDispatcher
from backend.app.services.payment import PaymentSessionCreator, PaymentServiceError

__all__ = [
    # Checkout
    "ReservationTransaction",
    "ReservationServiceError",
    "ReservationValidationError",
    "StoreNotFoundError",
    "AvailabilityError",
    "ProductNoLongerAvailableError",
    "InsufficientStockError",
    "LockContentionError",
    "ReservationIntegrityError",
    "CheckoutRequest",
    "CheckoutItem",
    "CheckoutResult",
    "DeliverySelection",
    "generate_reservation_number",
    # Availability
    "get_blocking_statuses",
    "get_reserved_quantities",
    "get_product_availability",
    # Customers
    "CustomerService",
    "CustomerContact",
    # Side-effect collaborators
    "NotificationDispatcher",
    "PaymentSessionCreator",
    "PaymentServiceError",
]
