"""Shared utilities for the service layer."""

from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from rewardquota.services.errors import ValidationError

Number = int | float | str | Decimal

ZERO: Decimal = Decimal(0)


def new_id() -> str:
    return str(uuid4())


def now_utc() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize an aware datetime as a UTC ISO string (the DB convention)."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def parse_iso(raw: str | datetime | None) -> datetime | None:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    if raw is None or raw == "":
        return None
    parsed: datetime = raw if isinstance(raw, datetime) else datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_date(raw: str | date | None) -> date | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(raw[:10])


def to_decimal(value: Number | None, field: str = "value") -> Decimal:
    """Coerce a numeric input to Decimal via its string form; ValidationError if unparsable."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result: Decimal = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(f"{field} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def optional_decimal(value: Number | None) -> Decimal | None:
    """DB read helper: NULL stays None, everything else becomes Decimal."""
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))
