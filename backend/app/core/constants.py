"""
Shared constants for the backend application.
"""
from decimal import Decimal, ROUND_HALF_UP

# ---------------------------------------------------------------------------
# Reservation statuses
# ---------------------------------------------------------------------------
# Statuses that hold inventory. "pending" is included unless the store opts out.
BLOCKING_STATUSES_WITH_PENDING = ("pending", "confirmed", "ongoing")
BLOCKING_STATUSES_CONFIRMED_ONLY = ("confirmed", "ongoing")

RESERVATION_SOURCE_ONLINE = "online"

# ---------------------------------------------------------------------------
# Products / units
# ---------------------------------------------------------------------------
PRODUCT_STATUS_ACTIVE = "active"

UNIT_STATUS_AVAILABLE = "available"

# Combination key for untracked products and units missing an axis value
DEFAULT_COMBINATION_KEY = "__default"

# ---------------------------------------------------------------------------
# Store settings
# ---------------------------------------------------------------------------
RESERVATION_MODE_PAYMENT = "payment"

DELIVERY_MODE_OPTIONAL = "optional"
DELIVERY_MODE_REQUIRED = "required"
DELIVERY_MODE_INCLUDED = "included"
DELIVERY_MODES = (DELIVERY_MODE_OPTIONAL, DELIVERY_MODE_REQUIRED, DELIVERY_MODE_INCLUDED)
DELIVERY_OPTION_PICKUP = "pickup"
DELIVERY_OPTION_DELIVERY = "delivery"

# ---------------------------------------------------------------------------
# Decimal helpers
# ---------------------------------------------------------------------------
ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")
PERCENT_BASE = Decimal("100")

# Minimum amount accepted by the payment provider for a partial charge
MIN_ONLINE_PAYMENT_AMOUNT = Decimal("0.50")


def to_money(value) -> Decimal:
    """Round a numeric value to currency precision (half-up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(ONE_CENT, rounding=ROUND_HALF_UP)
