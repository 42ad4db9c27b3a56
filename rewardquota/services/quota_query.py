"""Read side: refresh sweep, quota snapshot and reward preview."""

from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import QuotaSettings, get_settings
from db.models import PaymentMethods, QuotaTrackings, RewardRules, Schemes, Transactions
from rewardquota.services._helpers import ZERO, Number, now_utc, optional_decimal
from rewardquota.services.errors import QuotaError, ReferenceNotFoundError
from rewardquota.services.quota_engine import Clock, QuotaEngine, whole_amount
from rewardquota.services.refresh_scheduler import describe_refresh, is_stale, resolve_timezone
from rewardquota.services.reward_calculator import parse_basis, parse_method, raw_reward, rule_reward
from rewardquota.services.schemas.results import QuotaSnapshotEntry, RewardEstimate, RewardLine
from rewardquota.services.scope import TrackingScope, owner_scope, scope_for_rule, scope_of_tracking
from rewardquota.services.tracking_store import QuotaTrackingStore, activity_end_date, remaining_quota

logger = structlog.get_logger(__name__)

_CENT: Decimal = Decimal("0.01")


def reference_amount(remaining: Decimal | None, percentage: Decimal) -> Decimal | None:
    """Spend still available before the cap: ``remaining / percentage * 100``."""
    if remaining is None or percentage <= 0:
        return None
    return (remaining / percentage * 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def owner_name(rule: RewardRules) -> str:
    if rule.scheme is not None:
        return f"{rule.scheme.card_name}-{rule.scheme.name}"
    if rule.payment_method is not None:
        return rule.payment_method.name
    return ""


class QuotaQueryService:
    """Serves quota state, rolling over due trackings before every read."""

    def __init__(
        self,
        session: Session,
        settings: QuotaSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        quota_settings: QuotaSettings = settings or get_settings().quota
        self.session: Session = session
        self.settings: QuotaSettings = quota_settings
        self.clock: Clock = clock or now_utc
        self.store: QuotaTrackingStore = QuotaTrackingStore(
            session,
            tz=resolve_timezone(quota_settings.timezone),
            reset_adjustment_on_refresh=quota_settings.reset_adjustment_on_refresh,
        )

    # ------------------------------------------------------------------
    # Refresh sweep
    # ------------------------------------------------------------------

    def refresh_due(self) -> int:
        """Roll over every due tracking in one transaction; returns how many rolled over.

        A failing sweep is rolled back and logged. Callers then read the
        pre-sweep state instead of failing the read.
        """
        now: datetime = self.clock()
        try:
            due: Sequence[QuotaTrackings] = self.store.list_due(now, lock=True)
            stale: list[QuotaTrackings] = [t for t in due if is_stale(t.next_refresh_at, now)]
            for tracking in stale:
                self.store.rollover(tracking, tracking.rule, now)
            self.store.flush()
            self.session.commit()
        except (QuotaError, SQLAlchemyError):
            self.session.rollback()
            logger.exception("quota_refresh_sweep_failed")
            return 0

        if stale:
            logger.info("quota_refresh_sweep", scanned=len(due), refreshed=len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def _ordered_rules(self) -> list[RewardRules]:
        scheme_stmt: Select[tuple[RewardRules]] = (
            select(RewardRules)
            .join(Schemes, RewardRules.scheme_id == Schemes.id)
            .order_by(Schemes.display_order, Schemes.id, RewardRules.display_order, RewardRules.id)
        )
        payment_stmt: Select[tuple[RewardRules]] = (
            select(RewardRules)
            .join(PaymentMethods, RewardRules.payment_method_id == PaymentMethods.id)
            .order_by(
                PaymentMethods.display_order,
                PaymentMethods.id,
                RewardRules.display_order,
                RewardRules.id,
            )
        )
        return [*self.session.scalars(scheme_stmt).all(), *self.session.scalars(payment_stmt).all()]

    def _trackings_by_rule(self) -> dict[str, list[QuotaTrackings]]:
        stmt: Select[tuple[QuotaTrackings]] = select(QuotaTrackings).order_by(
            QuotaTrackings.created_at, QuotaTrackings.id
        )
        grouped: dict[str, list[QuotaTrackings]] = defaultdict(list)
        for tracking in self.session.scalars(stmt).all():
            grouped[tracking.reward_rule_id].append(tracking)
        return grouped

    def _entry(self, rule: RewardRules, tracking: QuotaTrackings | None) -> QuotaSnapshotEntry:
        limit: Decimal | None = optional_decimal(rule.quota_limit)
        percentage: Decimal = optional_decimal(rule.percentage) or ZERO
        scope: TrackingScope
        if tracking is None:
            scope = owner_scope(rule)
            used, adjustment, current = ZERO, ZERO, ZERO
            last_refresh, next_refresh = None, None
        else:
            scope = scope_of_tracking(tracking)
            used = optional_decimal(tracking.used_quota) or ZERO
            adjustment = optional_decimal(tracking.manual_adjustment) or ZERO
            current = optional_decimal(tracking.current_amount) or ZERO
            last_refresh, next_refresh = tracking.last_refresh_at, tracking.next_refresh_at

        remaining: Decimal | None = remaining_quota(limit, used, adjustment)
        return QuotaSnapshotEntry(
            scope=scope,
            rule_id=rule.id,
            owner_name=owner_name(rule),
            percentage=percentage,
            calculation_method=parse_method(rule.calculation_method).value,
            calculation_basis=parse_basis(rule.quota_calculation_basis).value,
            quota_limit=limit,
            used_quota=used,
            manual_adjustment=adjustment,
            total_used=used + adjustment,
            remaining_quota=remaining,
            current_amount=current,
            last_refresh_at=last_refresh,
            next_refresh_at=next_refresh,
            refresh_label=describe_refresh(
                rule.quota_refresh_type,
                rule.quota_refresh_value,
                rule.quota_refresh_date,
                activity_end_date(rule),
            ),
            reference_amount=reference_amount(remaining, percentage),
            tracking_id=tracking.id if tracking is not None else None,
        )

    def entry_for(self, tracking: QuotaTrackings) -> QuotaSnapshotEntry:
        """Snapshot entry of a single tracking, without running the sweep."""
        return self._entry(tracking.rule, tracking)

    def get_snapshot(self) -> list[QuotaSnapshotEntry]:
        """Current quota state of every rule, after rolling over anything due.

        Rules that were never used appear once with their owner's scope and
        zero usage.
        """
        self.refresh_due()
        by_rule: dict[str, list[QuotaTrackings]] = self._trackings_by_rule()
        entries: list[QuotaSnapshotEntry] = []
        for rule in self._ordered_rules():
            trackings: list[QuotaTrackings | None] = [*by_rule.get(rule.id, [])] or [None]
            entries.extend(self._entry(rule, t) for t in trackings)
        return entries

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def calculate_rewards(
        self,
        amount: Number,
        scheme_id: str | None = None,
        payment_method_id: str | None = None,
    ) -> RewardEstimate:
        """Rewards a transaction of ``amount`` would earn now, without recording it."""
        units: int = whole_amount(amount)
        scheme_id = scheme_id or None
        payment_method_id = payment_method_id or None
        if scheme_id and self.session.get(Schemes, scheme_id) is None:
            raise ReferenceNotFoundError(f"Invalid scheme id: {scheme_id}")
        if payment_method_id and self.session.get(PaymentMethods, payment_method_id) is None:
            raise ReferenceNotFoundError(f"Invalid payment method id: {payment_method_id}")

        self.refresh_due()
        engine: QuotaEngine = QuotaEngine(self.session, settings=self.settings, clock=self.clock)
        lines: list[RewardLine] = []
        for rule in engine.rules_for(scheme_id, payment_method_id):
            scope: TrackingScope = scope_for_rule(rule, payment_method_id)
            tracking: QuotaTrackings | None = self.store.find(scope, rule.id)
            prior: Decimal = ZERO
            used: Decimal = ZERO
            adjustment: Decimal = ZERO
            if tracking is not None:
                prior = optional_decimal(tracking.current_amount) or ZERO
                used = optional_decimal(tracking.used_quota) or ZERO
                adjustment = optional_decimal(tracking.manual_adjustment) or ZERO
            percentage: Decimal = optional_decimal(rule.percentage) or ZERO
            remaining: Decimal | None = remaining_quota(
                optional_decimal(rule.quota_limit), used, adjustment
            )
            lines.append(
                RewardLine(
                    rule_id=rule.id,
                    scope=scope,
                    percentage=percentage,
                    calculation_method=parse_method(rule.calculation_method).value,
                    calculation_basis=parse_basis(rule.quota_calculation_basis).value,
                    original_reward=raw_reward(units, percentage),
                    calculated_reward=rule_reward(
                        rule.quota_calculation_basis,
                        prior,
                        units,
                        percentage,
                        rule.calculation_method,
                    ),
                    quota_limit=optional_decimal(rule.quota_limit),
                    remaining_quota=remaining,
                    reference_amount=reference_amount(remaining, percentage),
                )
            )
        return RewardEstimate(
            amount=units,
            rewards=lines,
            total_reward=sum((line.calculated_reward for line in lines), ZERO),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def list_transactions(self, limit: int = 100) -> Sequence[Transactions]:
        stmt: Select[tuple[Transactions]] = (
            select(Transactions).order_by(Transactions.created_at.desc()).limit(limit)
        )
        return self.session.scalars(stmt).all()
