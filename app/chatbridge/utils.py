"""Common utility helpers."""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from time import perf_counter


_LOCALE_LABELS = {
    "ja": "Japanese",
    "vi": "Vietnamese",
    "en": "English",
    "id": "Indonesian",
    "tl": "Tagalog",
    "fil": "Tagalog",
    "zh": "Chinese",
    "ne": "Nepali",
    "my": "Burmese",
}

EARTH_RADIUS_KM = 6371.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    return int(perf_counter() * 1000.0 - start_ms)


def normalize_locale(locale: str | None) -> str | None:
    """`ja-JP` -> `ja`."""
    if not locale:
        return None
    return locale.split("-")[0].split("_")[0].strip().lower() or None


def locale_label(locale: str | None) -> str:
    normalized = normalize_locale(locale)
    if not normalized:
        return "unknown"
    return _LOCALE_LABELS.get(normalized, locale or "unknown")


def as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_between(earlier: datetime, later: datetime) -> float:
    return (as_aware(later) - as_aware(earlier)).total_seconds() / 86400.0


def calculate_age(date_of_birth: date, *, today: date | None = None) -> int:
    today = today or utc_now().date()
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def years_of_service(hire_date: date, *, today: date | None = None) -> str:
    today = today or utc_now().date()
    total_months = (today.year - hire_date.year) * 12 + (today.month - hire_date.month)
    if today.day < hire_date.day:
        total_months -= 1
    total_months = max(total_months, 0)
    years, months = divmod(total_months, 12)
    if years == 0:
        return f"{months} months"
    if months == 0:
        return f"{years} years"
    return f"{years} years {months} months"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
