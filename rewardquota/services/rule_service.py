"""Reward rule edits that affect quota accounting."""

from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.orm import Session

from config import QuotaSettings, get_settings
from db.enums import RefreshType
from db.models import QuotaTrackings, RewardRules
from rewardquota.services._helpers import (
    now_utc,
    optional_decimal,
    parse_date,
    to_decimal,
)
from rewardquota.services.errors import NotFoundError, ValidationError
from rewardquota.services.quota_engine import Clock
from rewardquota.services.refresh_scheduler import MAX_REFRESH_DAY, MIN_REFRESH_DAY, resolve_timezone
from rewardquota.services.reward_calculator import parse_basis, parse_method
from rewardquota.services.tracking_store import QuotaTrackingStore

logger = structlog.get_logger(__name__)

# Changing any of these invalidates the rule's accumulated used quota.
RECOMPUTE_FIELDS: frozenset[str] = frozenset(
    {"percentage", "calculation_method", "quota_calculation_basis"}
)

# Changing any of these moves the refresh point of every tracking of the rule.
REFRESH_FIELDS: frozenset[str] = frozenset(
    {"quota_refresh_type", "quota_refresh_value", "quota_refresh_date"}
)

EDITABLE_FIELDS: frozenset[str] = RECOMPUTE_FIELDS | REFRESH_FIELDS | {
    "quota_limit",
    "display_order",
}

# Changing any of these rewrites existing tracking rows.
TRACKING_FIELDS: frozenset[str] = REFRESH_FIELDS | {"quota_limit"}


def _require_value(field: str, value: Any) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} must not be empty")


def _clean(field: str, value: Any) -> Any:
    match field:
        case "percentage":
            pct: Decimal = to_decimal(value, "percentage")
            if pct <= 0:
                raise ValidationError("percentage must be greater than 0")
            return pct
        case "calculation_method":
            _require_value(field, value)
            return parse_method(value).value
        case "quota_calculation_basis":
            _require_value(field, value)
            return parse_basis(value).value
        case "quota_limit":
            if value is None or value == "":
                return None
            limit: Decimal = to_decimal(value, "quota_limit")
            if limit < 0:
                raise ValidationError("quota_limit must not be negative")
            return limit
        case "quota_refresh_type":
            if value is None or value == "":
                return None
            try:
                return RefreshType(value).value
            except ValueError as exc:
                raise ValidationError(f"Unknown refresh type '{value}'") from exc
        case "quota_refresh_value":
            if value is None or value == "":
                return None
            day: int = int(to_decimal(value, "quota_refresh_value"))
            if not MIN_REFRESH_DAY <= day <= MAX_REFRESH_DAY:
                raise ValidationError(
                    f"quota_refresh_value must be between {MIN_REFRESH_DAY} and {MAX_REFRESH_DAY}"
                )
            return day
        case "quota_refresh_date":
            if value is None or value == "":
                return None
            try:
                return parse_date(value).isoformat()
            except ValueError as exc:
                raise ValidationError(f"Invalid quota_refresh_date: {value!r}") from exc
        case _:
            return int(value)


class RuleService:
    """Edits reward rules and reports whether their trackings need a recompute."""

    def __init__(
        self,
        session: Session,
        settings: QuotaSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        quota_settings: QuotaSettings = settings or get_settings().quota
        self.session: Session = session
        self.clock: Clock = clock or now_utc
        self.store: QuotaTrackingStore = QuotaTrackingStore(
            session,
            tz=resolve_timezone(quota_settings.timezone),
            reset_adjustment_on_refresh=quota_settings.reset_adjustment_on_refresh,
        )

    def get_rule(self, rule_id: str) -> RewardRules | None:
        return self.session.get(RewardRules, rule_id)

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> tuple[RewardRules, bool]:
        """Apply ``updates``; returns the rule and whether accounting fields changed.

        Limit changes rederive every tracking's remaining quota and refresh
        policy changes reschedule every tracking at once. Accounting changes
        are left to the caller's recompute.
        """
        rule: RewardRules | None = self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Reward rule not found: {rule_id}")

        unknown: set[str] = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unsupported rule fields: {sorted(unknown)}")

        cleaned: dict[str, Any] = {k: _clean(k, v) for k, v in updates.items()}
        changed: set[str] = {
            k for k, v in cleaned.items() if not _same(getattr(rule, k), v)
        }
        for key in changed:
            setattr(rule, key, cleaned[key])

        now: datetime = self.clock()
        trackings: list[QuotaTrackings] = (
            self.store.list_for_rule(rule.id) if changed & TRACKING_FIELDS else []
        )
        if "quota_limit" in changed:
            for tracking in trackings:
                self.store.recompute_remaining(tracking, rule)
        if changed & REFRESH_FIELDS:
            next_refresh_at: str | None = self.store.next_refresh_for(rule, now)
            for tracking in trackings:
                tracking.next_refresh_at = next_refresh_at
                tracking.updated_at = now.isoformat()
        if changed:
            rule.updated_at = now.isoformat()
            self.store.flush()

        needs_recompute: bool = bool(changed & RECOMPUTE_FIELDS)
        logger.info(
            "rule_updated",
            rule_id=rule_id,
            changed=sorted(changed),
            needs_recompute=needs_recompute,
        )
        return rule, needs_recompute


def _same(current: Any, new: Any) -> bool:
    if isinstance(new, Decimal) or isinstance(current, Decimal):
        return optional_decimal(current) == optional_decimal(new)
    return current == new
