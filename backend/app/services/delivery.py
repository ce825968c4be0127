# backend/app/services/delivery.py
"""
Distance-based delivery fee.

Validation runs before any lock is taken; every failure is a
``DeliveryValidationError`` carrying the storefront error code.
"""
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from backend.app.core.constants import (
    ZERO,
    DELIVERY_MODE_INCLUDED,
    DELIVERY_MODE_OPTIONAL,
    DELIVERY_MODE_REQUIRED,
    DELIVERY_MODES,
    DELIVERY_OPTION_DELIVERY,
    to_money,
)

EARTH_RADIUS_KM = 6371.0


class DeliveryValidationError(Exception):
    def __init__(self, error_code: str, error_params: Optional[dict] = None):
        self.error_code = error_code
        self.error_params = error_params
        super().__init__(error_code)


@dataclass
class DeliverySettings:
    enabled: bool = False
    mode: str = DELIVERY_MODE_OPTIONAL
    price_per_km: Decimal = ZERO
    maximum_distance_km: Optional[Decimal] = None
    free_delivery_threshold: Optional[Decimal] = None
    round_trip: bool = False

    @classmethod
    def from_store_settings(cls, store_settings: Optional[dict]) -> "DeliverySettings":
        raw = (store_settings or {}).get("delivery") or {}

        def _dec(value) -> Optional[Decimal]:
            return None if value is None else Decimal(str(value))

        return cls(
            enabled=bool(raw.get("enabled", False)),
            mode=raw.get("mode") if raw.get("mode") in DELIVERY_MODES else DELIVERY_MODE_OPTIONAL,
            price_per_km=_dec(raw.get("price_per_km")) or ZERO,
            maximum_distance_km=_dec(raw.get("maximum_distance_km")),
            free_delivery_threshold=_dec(raw.get("free_delivery_threshold")),
            round_trip=bool(raw.get("round_trip", False)),
        )

    @property
    def is_forced(self) -> bool:
        return self.enabled and self.mode in (DELIVERY_MODE_REQUIRED, DELIVERY_MODE_INCLUDED)


@dataclass
class DeliveryQuote:
    distance_km: Decimal
    fee: Decimal


def is_valid_coordinates(latitude, longitude) -> bool:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def haversine_km(lat1, lon1, lat2, lon2) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(float(lat1)), math.radians(float(lat2))
    d_phi = math.radians(float(lat2) - float(lat1))
    d_lambda = math.radians(float(lon2) - float(lon1))
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def calculate_delivery_fee(distance_km, settings: DeliverySettings, subtotal) -> Decimal:
    if settings.mode == DELIVERY_MODE_INCLUDED:
        return ZERO
    if settings.free_delivery_threshold is not None and Decimal(str(subtotal)) >= settings.free_delivery_threshold:
        return ZERO
    multiplier = 2 if settings.round_trip else 1
    return to_money(Decimal(str(distance_km)) * settings.price_per_km * multiplier)


def validate_delivery(
    delivery_option: str,
    latitude,
    longitude,
    store_latitude,
    store_longitude,
    settings: DeliverySettings,
) -> Optional[Decimal]:
    """
    Check a delivery selection and return the distance in km.

    Returns None for pickup (when pickup is allowed).
    """
    wants_delivery = delivery_option == DELIVERY_OPTION_DELIVERY
    if wants_delivery and not settings.enabled:
        raise DeliveryValidationError("delivery_not_enabled")
    if not wants_delivery:
        if settings.is_forced:
            raise DeliveryValidationError("delivery_required")
        return None

    if latitude is None or longitude is None:
        raise DeliveryValidationError("delivery_address_required")
    if not is_valid_coordinates(latitude, longitude):
        raise DeliveryValidationError("delivery_address_invalid")
    if store_latitude is None or store_longitude is None:
        raise DeliveryValidationError("store_coordinates_not_configured")
    if not is_valid_coordinates(store_latitude, store_longitude):
        raise DeliveryValidationError("store_coordinates_invalid")

    distance = Decimal(str(round(haversine_km(store_latitude, store_longitude, latitude, longitude), 2)))
    if settings.maximum_distance_km is not None and distance > settings.maximum_distance_km:
        raise DeliveryValidationError(
            "delivery_too_far",
            {"max_distance": str(settings.maximum_distance_km), "distance": str(distance)},
        )
    return distance


def quote_delivery(distance_km: Optional[Decimal], settings: DeliverySettings, subtotal) -> Optional[DeliveryQuote]:
    if distance_km is None:
        return None
    return DeliveryQuote(distance_km=distance_km, fee=calculate_delivery_fee(distance_km, settings, subtotal))
