# backend/app/services/rental_rules.py
"""
Store rental policy checks: business hours, advance notice, rental length.

All datetimes handled by the engine are naive UTC. Business hours are
evaluated in the store's timezone.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.app.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEZONE = "Europe/Paris"


def to_utc_naive(value: datetime) -> datetime:
    """Normalize an incoming datetime to naive UTC (aware values are converted)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _store_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown store timezone, using default", timezone=tz_name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_store_time(value: datetime, tz_name: Optional[str]) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(_store_zone(tz_name))


@dataclass
class BusinessHoursCheck:
    valid: bool
    reason: Optional[str] = None
    closure_period: Optional[dict] = None


def _parse_day(value) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def find_closure_period(local_day: date, closure_periods: Optional[list]) -> Optional[dict]:
    """Closure periods are inclusive date ranges in store-local days."""
    for period in closure_periods or []:
        start = _parse_day(period.get("start_date"))
        end = _parse_day(period.get("end_date"))
        if start is None or end is None:
            logger.warning("Skipping invalid closure period", period=period)
            continue
        if start <= local_day <= end:
            return period
    return None


def _day_schedule(business_hours: dict, local: datetime) -> dict:
    # Schedule is indexed 0 = Sunday .. 6 = Saturday; Python's weekday() is 0 = Monday
    day_index = (local.weekday() + 1) % 7
    schedule = business_hours.get("schedule") or {}
    return schedule.get(str(day_index)) or schedule.get(day_index) or {}


def check_business_hours(moment: datetime, business_hours: Optional[dict],
                         tz_name: Optional[str]) -> BusinessHoursCheck:
    if not business_hours or not business_hours.get("enabled"):
        return BusinessHoursCheck(valid=True)

    local = to_store_time(moment, tz_name)
    closure = find_closure_period(local.date(), business_hours.get("closure_periods"))
    if closure:
        return BusinessHoursCheck(valid=False, reason="closure_period", closure_period=closure)

    day = _day_schedule(business_hours, local)
    if not day.get("is_open"):
        return BusinessHoursCheck(valid=False, reason="day_closed")

    hhmm = local.strftime("%H:%M")
    if hhmm < day.get("open_time", "00:00") or hhmm > day.get("close_time", "23:59"):
        return BusinessHoursCheck(valid=False, reason="outside_hours")
    return BusinessHoursCheck(valid=True)


def validate_rental_period_hours(start: datetime, end: datetime, business_hours: Optional[dict],
                                 tz_name: Optional[str]) -> list[str]:
    """Reasons like ``pickup_day_closed`` / ``return_outside_hours``; empty when valid."""
    errors = []
    for prefix, moment in (("pickup", start), ("return", end)):
        check = check_business_hours(moment, business_hours, tz_name)
        if not check.valid:
            errors.append(f"{prefix}_{check.reason}")
    return errors


@dataclass
class RentalPolicy:
    advance_notice_minutes: int = 0
    min_rental_minutes: int = 0
    max_rental_minutes: Optional[int] = None
    business_hours: Optional[dict] = None
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def from_store(cls, store_settings: Optional[dict], tz_name: Optional[str]) -> "RentalPolicy":
        raw = store_settings or {}
        max_minutes = raw.get("max_rental_minutes")
        return cls(
            advance_notice_minutes=int(raw.get("advance_notice_minutes") or 0),
            min_rental_minutes=int(raw.get("min_rental_minutes") or 0),
            max_rental_minutes=int(max_minutes) if max_minutes else None,
            business_hours=raw.get("business_hours"),
            timezone=tz_name or DEFAULT_TIMEZONE,
        )


@dataclass
class PolicyViolation:
    error_code: str
    error_params: dict = field(default_factory=dict)


def format_duration_minutes(minutes: int) -> str:
    days, rest = divmod(minutes, 1440)
    hours, mins = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if mins or not parts:
        parts.append(f"{mins}min")
    return " ".join(parts)


def check_rental_policy(policy: RentalPolicy, start: datetime, end: datetime,
                        now: Optional[datetime] = None) -> Optional[PolicyViolation]:
    """First violated rule, checked in the order the storefront reports them."""
    hours_errors = validate_rental_period_hours(start, end, policy.business_hours, policy.timezone)
    if hours_errors:
        return PolicyViolation("business_hours_violation", {"reasons": ", ".join(hours_errors)})

    now = now or utc_now()
    if policy.advance_notice_minutes > 0:
        if start < now + timedelta(minutes=policy.advance_notice_minutes):
            return PolicyViolation(
                "advance_notice_violation",
                {"duration": format_duration_minutes(policy.advance_notice_minutes)},
            )

    length_minutes = (end - start).total_seconds() / 60
    if policy.min_rental_minutes > 0 and length_minutes < policy.min_rental_minutes:
        return PolicyViolation(
            "min_rental_duration_violation",
            {"duration": format_duration_minutes(policy.min_rental_minutes)},
        )
    if policy.max_rental_minutes is not None and length_minutes > policy.max_rental_minutes:
        return PolicyViolation(
            "max_rental_duration_violation",
            {"duration": format_duration_minutes(policy.max_rental_minutes)},
        )
    return None
