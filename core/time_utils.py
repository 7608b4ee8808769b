import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from core.config import CLINIC_TIME_ZONE


def clinic_tz() -> ZoneInfo:
    return ZoneInfo(CLINIC_TIME_ZONE)


def now_utc() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Coerce a datetime to aware UTC.

    SQLite hands back naive datetimes; those were written in UTC, so a naive
    value is assumed to be UTC.
    """
    if dt is None:
        return None
    if getattr(dt, "tzinfo", None) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clinic_today(now: datetime | None = None) -> date:
    """Calendar date in the clinic's time zone."""
    return as_utc(now or now_utc()).astimezone(clinic_tz()).date()


def clinic_date_of(dt: datetime) -> date:
    return as_utc(dt).astimezone(clinic_tz()).date()


def clinic_midnight_utc(day: date) -> datetime:
    """UTC instant of 00:00 clinic time on `day`."""
    return datetime.combine(day, time.min, tzinfo=clinic_tz()).astimezone(timezone.utc)


def clinic_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a clinic-time-zone day, as UTC datetimes."""
    return clinic_midnight_utc(day), clinic_midnight_utc(day + timedelta(days=1))


def clinic_month_bounds_utc(year: int, month: int) -> tuple[datetime, datetime]:
    start = date(year, month, 1)
    return clinic_midnight_utc(start), clinic_midnight_utc(add_months(start, 1))


def clinic_year_bounds_utc(year: int) -> tuple[datetime, datetime]:
    return clinic_midnight_utc(date(year, 1, 1)), clinic_midnight_utc(date(year + 1, 1, 1))


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(day: date, months: int) -> date:
    """Shift to the first day of the month `months` away from `day`."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def time_since(dt: datetime) -> timedelta:
    """Return the timedelta between now (UTC) and the provided datetime."""
    return now_utc() - as_utc(dt)
