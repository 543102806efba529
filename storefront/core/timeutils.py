# storefront/core/timeutils.py

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from storefront.core.config import settings


def store_tz() -> ZoneInfo:
    return ZoneInfo(settings.STORE_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def end_of_day_utc(value: date | datetime | str) -> datetime:
    """
    Normalizes an expiry to the last second of that calendar day in the store
    timezone, expressed in UTC. Codes stay valid up to and including that instant.
    """
    tz = store_tz()
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value) if len(value) == 10 else datetime.fromisoformat(value)
        except ValueError as e:
            raise ValueError(f"Invalid expiry date: {value!r}") from e

    if isinstance(value, datetime):
        local_day = as_utc(value).astimezone(tz).date()
    else:
        local_day = value

    local_end = datetime.combine(local_day, time(23, 59, 59), tzinfo=tz)
    return local_end.astimezone(timezone.utc)


def end_of_day_in_days(days: int, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    local_day = now.astimezone(store_tz()).date() + timedelta(days=days)
    return end_of_day_utc(local_day)
