"""Quota refresh scheduling: when does a tracking roll over next, and is it due.

Refresh points fall at local midnight in the configured timezone and are
returned as aware UTC datetimes. ``date`` and ``activity`` policies are one-shot:
once their point has passed there is no further refresh (``None``).
"""

from datetime import UTC, date, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from db.enums import RefreshType
from rewardquota.services._helpers import now_utc, parse_date, parse_iso

MIN_REFRESH_DAY: int = 1
MAX_REFRESH_DAY: int = 28  # every month has a 28th


def resolve_timezone(tz: tzinfo | str | None) -> tzinfo:
    if tz is None:
        return UTC
    if isinstance(tz, str):
        return UTC if tz.upper() == "UTC" else ZoneInfo(tz)
    return tz


def parse_refresh_type(refresh_type: RefreshType | str | None) -> RefreshType | None:
    """Stored refresh type, or None when unset or unrecognised (never refreshes)."""
    if not refresh_type:
        return None
    try:
        return RefreshType(refresh_type)
    except ValueError:
        return None


def clamp_refresh_day(value: int | None) -> int:
    if value is None:
        return MIN_REFRESH_DAY
    return max(MIN_REFRESH_DAY, min(MAX_REFRESH_DAY, int(value)))


def _local_midnight(day: date, zone: tzinfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=zone).astimezone(UTC)


def _aware(now: datetime | None) -> datetime:
    current: datetime = now or now_utc()
    return current if current.tzinfo is not None else current.replace(tzinfo=UTC)


def next_refresh_time(
    refresh_type: RefreshType | str | None,
    refresh_value: int | None = None,
    refresh_date: str | date | None = None,
    activity_end_date: str | date | None = None,
    now: datetime | None = None,
    tz: tzinfo | str | None = None,
) -> datetime | None:
    """Next refresh point strictly after ``now``, or None if the quota never refreshes again."""
    current: datetime = _aware(now)
    zone: tzinfo = resolve_timezone(tz)

    match parse_refresh_type(refresh_type):
        case RefreshType.MONTHLY:
            day: int = clamp_refresh_day(refresh_value)
            local: datetime = current.astimezone(zone)
            candidate: datetime = _local_midnight(date(local.year, local.month, day), zone)
            if current < candidate:
                return candidate
            year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
            return _local_midnight(date(year, month, day), zone)
        case RefreshType.DATE:
            target: date | None = parse_date(refresh_date)
            if target is None:
                return None
            point: datetime = _local_midnight(target, zone)
            return point if point > current else None
        case RefreshType.ACTIVITY:
            end: date | None = parse_date(activity_end_date)
            if end is None:
                return None
            # The activity runs through its end date; the quota closes at the following midnight.
            point = _local_midnight(end + timedelta(days=1), zone)
            return point if point > current else None
        case _:
            return None


def is_stale(next_refresh_at: datetime | str | None, now: datetime | None = None) -> bool:
    """True iff a refresh point is set and has been reached."""
    due: datetime | None = parse_iso(next_refresh_at)
    if due is None:
        return False
    return _aware(now) >= due


def describe_refresh(
    refresh_type: RefreshType | str | None,
    refresh_value: int | None = None,
    refresh_date: str | date | None = None,
    activity_end_date: str | date | None = None,
) -> str | None:
    """Human-readable refresh policy for quota listings."""
    match parse_refresh_type(refresh_type):
        case RefreshType.MONTHLY:
            return f"Monthly on day {clamp_refresh_day(refresh_value)}"
        case RefreshType.DATE:
            target: date | None = parse_date(refresh_date)
            return f"On {target.isoformat()}" if target else None
        case RefreshType.ACTIVITY:
            end: date | None = parse_date(activity_end_date)
            return f"At activity end ({end.isoformat()})" if end else "At activity end"
        case _:
            return None
