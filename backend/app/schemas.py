from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal

from backend.app.core.constants import DELIVERY_OPTION_DELIVERY, DELIVERY_OPTION_PICKUP
from backend.app.services.rental_rules import to_utc_naive


def _clean_text(v: Optional[str], max_length: int) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v[:max_length] or None


# --- Checkout ---
class CheckoutCustomer(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    customer_type: str = Field(default="individual", pattern="^(individual|business)$")
    company_name: Optional[str] = Field(default=None, max_length=255)
    address: Optional[str] = None
    city: Optional[str] = Field(default=None, max_length=255)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=2)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("invalid email address")
        return v

    @field_validator("address")
    @classmethod
    def sanitize_address(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v, 1000)


class CheckoutDelivery(BaseModel):
    option: str = Field(
        default=DELIVERY_OPTION_PICKUP,
        pattern=f"^({DELIVERY_OPTION_PICKUP}|{DELIVERY_OPTION_DELIVERY})$",
    )
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=2)
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class CheckoutLineItem(BaseModel):
    product_id: Optional[int] = None  # None = custom line item
    quantity: int = Field(ge=1)
    start_date: datetime
    end_date: datetime
    selected_attributes: Optional[Dict[str, str]] = None
    # Client-computed, advisory for catalogue products
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    subtotal: Optional[Decimal] = Field(default=None, ge=0)
    deposit_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    name: Optional[str] = Field(default=None, max_length=255)
    line_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def check_period(self):
        # Mixed naive / aware pairs are compared in UTC
        if to_utc_naive(self.end_date) <= to_utc_naive(self.start_date):
            raise ValueError("end_date must be after start_date")
        return self


class CheckoutBody(BaseModel):
    customer: CheckoutCustomer
    delivery: CheckoutDelivery = Field(default_factory=CheckoutDelivery)
    items: List[CheckoutLineItem] = Field(min_length=1, max_length=100)
    customer_notes: Optional[str] = None
    subtotal_amount: Optional[Decimal] = None
    deposit_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None

    @field_validator("customer_notes")
    @classmethod
    def sanitize_notes(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v, 5000)


class CheckoutResponse(BaseModel):
    reservation_id: int
    reservation_number: str
    payment_url: Optional[str] = None


# --- Availability preview ---
class CombinationAvailability(BaseModel):
    combination_key: str
    selected_attributes: Dict[str, str]
    total_quantity: int
    reserved: int
    available: int


class ProductAvailability(BaseModel):
    product_id: int
    name: str
    track_units: bool
    total_quantity: int
    reserved: int
    available: int
    combinations: List[CombinationAvailability] = []
