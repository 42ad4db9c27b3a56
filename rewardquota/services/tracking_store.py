"""Quota tracking accessor: scoped lookup, lazy creation, rollover and persistence."""

from collections.abc import Sequence
from datetime import datetime, tzinfo
from decimal import Decimal

import structlog
from sqlalchemy import ColumnElement, Select, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from db.models import QuotaTrackings, RewardRules
from rewardquota.services._helpers import ZERO, new_id, optional_decimal, to_iso
from rewardquota.services.errors import ConcurrentUpdateError, PersistenceError
from rewardquota.services.refresh_scheduler import is_stale, next_refresh_time
from rewardquota.services.scope import PaymentMethodScope, SchemeScope, TrackingScope

logger = structlog.get_logger(__name__)


def remaining_quota(
    quota_limit: Decimal | None,
    used_quota: Decimal,
    manual_adjustment: Decimal,
) -> Decimal | None:
    """Derived remaining quota: ``max(0, limit - (used + adjustment))``, None when unlimited."""
    if quota_limit is None:
        return None
    return max(ZERO, quota_limit - (used_quota + manual_adjustment))


def activity_end_date(rule: RewardRules) -> str | None:
    """Promotion end of a scheme rule; payment-method rules have none."""
    if rule.scheme is None:
        return None
    return rule.scheme.activity_end_date


class QuotaTrackingStore:
    """Reads and writes quota tracking rows by explicit scope."""

    def __init__(
        self,
        session: Session,
        tz: tzinfo | str | None = None,
        reset_adjustment_on_refresh: bool = True,
    ) -> None:
        self.session: Session = session
        self.tz: tzinfo | str | None = tz
        self.reset_adjustment_on_refresh: bool = reset_adjustment_on_refresh

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _scope_conditions(scope: TrackingScope) -> list[ColumnElement[bool]]:
        match scope:
            case SchemeScope(scheme_id=scheme_id, payment_method_id=None):
                return [
                    QuotaTrackings.scheme_id == scheme_id,
                    QuotaTrackings.payment_method_id.is_(None),
                ]
            case SchemeScope(scheme_id=scheme_id, payment_method_id=pm_id):
                return [
                    QuotaTrackings.scheme_id == scheme_id,
                    QuotaTrackings.payment_method_id == pm_id,
                ]
            case PaymentMethodScope(payment_method_id=pm_id):
                return [
                    QuotaTrackings.payment_method_id == pm_id,
                    QuotaTrackings.scheme_id.is_(None),
                ]

    def find(
        self,
        scope: TrackingScope,
        rule_id: str,
        lock: bool = False,
    ) -> QuotaTrackings | None:
        """Tracking row of ``rule_id`` in ``scope``; ``lock`` takes a row lock for update."""
        stmt: Select[tuple[QuotaTrackings]] = (
            select(QuotaTrackings)
            .where(
                and_(
                    QuotaTrackings.reward_rule_id == rule_id,
                    *self._scope_conditions(scope),
                )
            )
            .order_by(QuotaTrackings.created_at)
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def list_for_rule(self, rule_id: str, lock: bool = False) -> list[QuotaTrackings]:
        stmt: Select[tuple[QuotaTrackings]] = (
            select(QuotaTrackings)
            .where(QuotaTrackings.reward_rule_id == rule_id)
            .order_by(QuotaTrackings.created_at)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.session.scalars(stmt).all())

    def list_due(self, now: datetime, lock: bool = False) -> Sequence[QuotaTrackings]:
        """Trackings whose refresh point is at or before ``now``.

        Refresh points are stored as UTC ISO strings, so they order as text.
        """
        stmt: Select[tuple[QuotaTrackings]] = (
            select(QuotaTrackings)
            .where(
                QuotaTrackings.next_refresh_at.is_not(None),
                QuotaTrackings.next_refresh_at <= to_iso(now),
            )
            .order_by(QuotaTrackings.next_refresh_at, QuotaTrackings.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).all()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def next_refresh_for(self, rule: RewardRules, now: datetime) -> str | None:
        return to_iso(
            next_refresh_time(
                rule.quota_refresh_type,
                rule.quota_refresh_value,
                rule.quota_refresh_date,
                activity_end_date(rule),
                now=now,
                tz=self.tz,
            )
        )

    def create(self, scope: TrackingScope, rule: RewardRules, now: datetime) -> QuotaTrackings:
        """New empty tracking for ``rule`` in ``scope`` with its first refresh point seeded."""
        ts: str = now.isoformat()
        tracking: QuotaTrackings = QuotaTrackings(
            id=new_id(),
            scheme_id=scope.scheme_id,
            payment_method_id=scope.payment_method_id,
            reward_rule_id=rule.id,
            used_quota=ZERO,
            manual_adjustment=ZERO,
            current_amount=ZERO,
            remaining_quota=remaining_quota(optional_decimal(rule.quota_limit), ZERO, ZERO),
            last_refresh_at=ts,
            next_refresh_at=self.next_refresh_for(rule, now),
            created_at=ts,
            updated_at=ts,
        )
        self.session.add(tracking)
        logger.debug(
            "tracking_created",
            rule_id=rule.id,
            scheme_id=tracking.scheme_id,
            payment_method_id=tracking.payment_method_id,
            next_refresh_at=tracking.next_refresh_at,
        )
        return tracking

    def recompute_remaining(self, tracking: QuotaTrackings, rule: RewardRules) -> None:
        tracking.remaining_quota = remaining_quota(
            optional_decimal(rule.quota_limit),
            optional_decimal(tracking.used_quota) or ZERO,
            optional_decimal(tracking.manual_adjustment) or ZERO,
        )

    def rollover(self, tracking: QuotaTrackings, rule: RewardRules, now: datetime) -> None:
        """Start a new quota period: zero the accumulation and schedule the next refresh."""
        previous: str | None = tracking.next_refresh_at
        tracking.used_quota = ZERO
        tracking.current_amount = ZERO
        if self.reset_adjustment_on_refresh:
            tracking.manual_adjustment = ZERO
        self.recompute_remaining(tracking, rule)
        tracking.last_refresh_at = now.isoformat()
        tracking.next_refresh_at = self.next_refresh_for(rule, now)
        tracking.updated_at = now.isoformat()
        logger.info(
            "tracking_rolled_over",
            tracking_id=tracking.id,
            rule_id=rule.id,
            previous_refresh_at=previous,
            next_refresh_at=tracking.next_refresh_at,
        )

    def refresh_if_stale(self, tracking: QuotaTrackings, rule: RewardRules, now: datetime) -> bool:
        if not is_stale(tracking.next_refresh_at, now):
            return False
        self.rollover(tracking, rule, now)
        return True

    def flush(self) -> None:
        """Write pending changes; version conflicts and DB failures become service errors."""
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConcurrentUpdateError("Quota tracking was modified by another writer") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to persist quota tracking: {exc}") from exc
