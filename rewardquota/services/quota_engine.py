"""Quota accounting engine: accumulate and roll back rewards against rule quotas.

Every public operation runs inside the caller's session transaction. Nothing
is committed here; ``db.connection.get_session`` / ``get_db`` commit on success
and roll back on any exception, so a failed rule leaves no partial tracking.
"""

from collections.abc import Callable, Sequence
from datetime import date, datetime
from decimal import Decimal

import structlog
from sqlalchemy import ColumnElement, Select, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import QuotaSettings, get_settings
from db.connection import get_session
from db.enums import CalculationBasis
from db.models import PaymentMethods, QuotaTrackings, RewardRules, Schemes, Transactions
from rewardquota.services._helpers import (
    ZERO,
    Number,
    new_id,
    now_utc,
    optional_decimal,
    parse_date,
    to_decimal,
)
from rewardquota.services.errors import (
    NotFoundError,
    QuotaError,
    ReferenceNotFoundError,
    ValidationError,
)
from rewardquota.services.refresh_scheduler import resolve_timezone
from rewardquota.services.reward_calculator import calculate_reward, parse_basis, rule_reward
from rewardquota.services.schemas.results import QuotaChange, TransactionResult
from rewardquota.services.scope import (
    PaymentMethodScope,
    SchemeScope,
    TrackingScope,
    check_scope_matches_rule,
    scope_for_rule,
    scope_of_tracking,
)
from rewardquota.services.tracking_store import QuotaTrackingStore

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def whole_amount(amount: Number | None) -> int:
    """Transaction amounts are whole, non-negative currency units."""
    value: Decimal = to_decimal(amount, "amount")
    if value != value.to_integral_value():
        raise ValidationError(f"amount must be an integer, got {amount!r}")
    if value < 0:
        raise ValidationError("amount must not be negative")
    return int(value)


def parse_adjustment(value: Number | None) -> Decimal:
    """Manual adjustment input; None or blank clears it to zero."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return ZERO
    return to_decimal(value, "manual_adjustment")


class QuotaEngine:
    """Applies and rolls back transactions against quota trackings."""

    def __init__(
        self,
        session: Session,
        settings: QuotaSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        quota_settings: QuotaSettings = settings or get_settings().quota
        self.session: Session = session
        self.tz = resolve_timezone(quota_settings.timezone)
        self.clock: Clock = clock or now_utc
        self.store: QuotaTrackingStore = QuotaTrackingStore(
            session,
            tz=self.tz,
            reset_adjustment_on_refresh=quota_settings.reset_adjustment_on_refresh,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_reference(self, model: type[Schemes] | type[PaymentMethods], pk: str) -> None:
        if self.session.get(model, pk) is None:
            label: str = "scheme" if model is Schemes else "payment method"
            raise ReferenceNotFoundError(f"Invalid {label} id: {pk}")

    def _require_rule(self, rule_id: str) -> RewardRules:
        rule: RewardRules | None = self.session.get(RewardRules, rule_id)
        if rule is None:
            raise NotFoundError(f"Reward rule not found: {rule_id}")
        return rule

    def rules_for(self, scheme_id: str | None, payment_method_id: str | None) -> list[RewardRules]:
        """Scheme rules then payment-method rules; two independent sets."""
        rules: list[RewardRules] = []
        if scheme_id:
            rules.extend(self._owned_rules(RewardRules.scheme_id == scheme_id))
        if payment_method_id:
            rules.extend(self._owned_rules(RewardRules.payment_method_id == payment_method_id))
        return rules

    def _owned_rules(self, owner: ColumnElement[bool]) -> Sequence[RewardRules]:
        stmt: Select[tuple[RewardRules]] = (
            select(RewardRules).where(owner).order_by(RewardRules.display_order, RewardRules.id)
        )
        return self.session.scalars(stmt).all()

    def _transaction_date(self, value: str | date | None, now: datetime) -> str:
        if value is None or value == "":
            return now.astimezone(self.tz).date().isoformat()
        try:
            parsed: date | None = parse_date(value)
        except ValueError as exc:
            raise ValidationError(f"Invalid transaction date: {value!r}") from exc
        return parsed.isoformat() if parsed else now.astimezone(self.tz).date().isoformat()

    # ------------------------------------------------------------------
    # Per-rule accounting
    # ------------------------------------------------------------------

    def _accumulate(
        self,
        rule: RewardRules,
        scope: TrackingScope,
        amount: Decimal,
        now: datetime,
    ) -> QuotaChange:
        tracking: QuotaTrackings | None = self.store.find(scope, rule.id, lock=True)
        refreshed: bool = False
        if tracking is None:
            tracking = self.store.create(scope, rule, now)
        else:
            refreshed = self.store.refresh_if_stale(tracking, rule, now)

        prior: Decimal = optional_decimal(tracking.current_amount) or ZERO
        reward: Decimal = rule_reward(
            rule.quota_calculation_basis,
            prior,
            amount,
            rule.percentage,
            rule.calculation_method,
        )
        tracking.used_quota = (optional_decimal(tracking.used_quota) or ZERO) + reward
        tracking.current_amount = prior + amount
        self.store.recompute_remaining(tracking, rule)
        tracking.updated_at = now.isoformat()
        return QuotaChange(
            rule_id=rule.id,
            scope=scope,
            reward=reward,
            used_quota=tracking.used_quota,
            current_amount=tracking.current_amount,
            remaining_quota=tracking.remaining_quota,
            refreshed=refreshed,
        )

    def _release(
        self,
        rule: RewardRules,
        scope: TrackingScope,
        amount: Decimal,
        now: datetime,
    ) -> QuotaChange | None:
        tracking: QuotaTrackings | None = self.store.find(scope, rule.id, lock=True)
        if tracking is None:
            return None
        refreshed: bool = self.store.refresh_if_stale(tracking, rule, now)

        current: Decimal = optional_decimal(tracking.current_amount) or ZERO
        remaining_total: Decimal = max(ZERO, current - amount)
        # Statement basis: reward attributable to the removed amount on top of what is left.
        reward: Decimal = rule_reward(
            rule.quota_calculation_basis,
            remaining_total,
            amount,
            rule.percentage,
            rule.calculation_method,
        )
        used: Decimal = optional_decimal(tracking.used_quota) or ZERO
        tracking.used_quota = max(ZERO, used - reward)
        tracking.current_amount = remaining_total
        self.store.recompute_remaining(tracking, rule)
        tracking.updated_at = now.isoformat()
        return QuotaChange(
            rule_id=rule.id,
            scope=scope,
            reward=tracking.used_quota - used,
            used_quota=tracking.used_quota,
            current_amount=tracking.current_amount,
            remaining_quota=tracking.remaining_quota,
            refreshed=refreshed,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def apply_transaction(
        self,
        amount: Number,
        scheme_id: str | None = None,
        payment_method_id: str | None = None,
        transaction_date: str | date | None = None,
        reason: str | None = None,
        note: str | None = None,
    ) -> TransactionResult:
        """Record a transaction and accumulate its reward into every applicable rule."""
        units: int = whole_amount(amount)
        scheme_id = scheme_id or None
        payment_method_id = payment_method_id or None
        if scheme_id:
            self._require_reference(Schemes, scheme_id)
        if payment_method_id:
            self._require_reference(PaymentMethods, payment_method_id)

        now: datetime = self.clock()
        transaction: Transactions = Transactions(
            id=new_id(),
            transaction_date=self._transaction_date(transaction_date, now),
            reason=reason,
            amount=units,
            note=note or None,
            scheme_id=scheme_id,
            payment_method_id=payment_method_id,
            created_at=now.isoformat(),
        )
        self.session.add(transaction)

        changes: list[QuotaChange] = []
        if units > 0:
            for rule in self.rules_for(scheme_id, payment_method_id):
                scope: TrackingScope = scope_for_rule(rule, payment_method_id)
                changes.append(self._accumulate(rule, scope, Decimal(units), now))
        self.store.flush()

        logger.info(
            "transaction_applied",
            transaction_id=transaction.id,
            amount=units,
            scheme_id=scheme_id,
            payment_method_id=payment_method_id,
            rules_updated=len(changes),
            total_reward=str(sum((c.reward for c in changes), ZERO)),
        )
        return TransactionResult(transaction=transaction, changes=changes)

    def rollback_transaction(self, transaction_id: str) -> TransactionResult:
        """Delete a transaction and give back the quota it consumed."""
        transaction: Transactions | None = self.session.get(Transactions, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        now: datetime = self.clock()
        amount: Decimal = Decimal(transaction.amount or 0)
        changes: list[QuotaChange] = []
        if amount > 0:
            for rule in self.rules_for(transaction.scheme_id, transaction.payment_method_id):
                scope: TrackingScope = scope_for_rule(rule, transaction.payment_method_id)
                change: QuotaChange | None = self._release(rule, scope, amount, now)
                if change is not None:
                    changes.append(change)

        self.session.delete(transaction)
        self.store.flush()

        logger.info(
            "transaction_rolled_back",
            transaction_id=transaction_id,
            amount=str(amount),
            rules_updated=len(changes),
        )
        return TransactionResult(transaction=transaction, changes=changes)

    def set_manual_adjustment(
        self,
        scope: TrackingScope,
        rule_id: str,
        value: Number | None,
    ) -> QuotaTrackings:
        """Overwrite the manual adjustment of one tracking (absolute, not additive)."""
        if not rule_id:
            raise ValidationError("rule id is required")
        adjustment: Decimal = parse_adjustment(value)
        rule: RewardRules = self._require_rule(rule_id)
        check_scope_matches_rule(scope, rule)
        if isinstance(scope, SchemeScope) and scope.payment_method_id:
            if self.session.get(PaymentMethods, scope.payment_method_id) is None:
                raise NotFoundError(f"Payment method not found: {scope.payment_method_id}")

        now: datetime = self.clock()
        tracking: QuotaTrackings | None = self.store.find(scope, rule.id, lock=True)
        if tracking is None:
            tracking = self.store.create(scope, rule, now)
        else:
            self.store.refresh_if_stale(tracking, rule, now)

        tracking.manual_adjustment = adjustment
        self.store.recompute_remaining(tracking, rule)
        tracking.updated_at = now.isoformat()
        self.store.flush()

        logger.info(
            "manual_adjustment_set",
            rule_id=rule.id,
            scheme_id=scope.scheme_id,
            payment_method_id=scope.payment_method_id,
            manual_adjustment=str(adjustment),
            remaining_quota=str(tracking.remaining_quota),
        )
        return tracking

    def recompute_rule(self, rule_id: str) -> list[QuotaTrackings]:
        """Rebuild a rule's trackings from the transactions of their current period.

        Used after the rule's percentage, method or basis changes. The manual
        adjustment is kept; rules that were never tracked are left alone.
        """
        rule: RewardRules = self._require_rule(rule_id)
        basis: CalculationBasis = parse_basis(rule.quota_calculation_basis)
        now: datetime = self.clock()

        trackings: list[QuotaTrackings] = self.store.list_for_rule(rule.id, lock=True)
        for tracking in trackings:
            self.store.refresh_if_stale(tracking, rule, now)
            since: str = tracking.last_refresh_at or tracking.created_at
            amounts: list[int] = self._window_amounts(scope_of_tracking(tracking), since)
            total: Decimal = Decimal(sum(amounts))
            if basis is CalculationBasis.STATEMENT:
                used: Decimal = calculate_reward(total, rule.percentage, rule.calculation_method)
            else:
                used = sum(
                    (calculate_reward(a, rule.percentage, rule.calculation_method) for a in amounts),
                    ZERO,
                )
            tracking.used_quota = used
            tracking.current_amount = total
            self.store.recompute_remaining(tracking, rule)
            tracking.updated_at = now.isoformat()
        self.store.flush()

        logger.info("rule_recomputed", rule_id=rule.id, trackings=len(trackings))
        return trackings

    def _window_amounts(self, scope: TrackingScope, since: str) -> list[int]:
        conditions: list[ColumnElement[bool]] = [Transactions.created_at >= since]
        match scope:
            case SchemeScope(scheme_id=scheme_id, payment_method_id=None):
                conditions += [
                    Transactions.scheme_id == scheme_id,
                    Transactions.payment_method_id.is_(None),
                ]
            case SchemeScope(scheme_id=scheme_id, payment_method_id=pm_id):
                conditions += [
                    Transactions.scheme_id == scheme_id,
                    Transactions.payment_method_id == pm_id,
                ]
            case PaymentMethodScope(payment_method_id=pm_id):
                conditions.append(Transactions.payment_method_id == pm_id)
        stmt: Select[tuple[int]] = (
            select(Transactions.amount).where(and_(*conditions)).order_by(Transactions.created_at)
        )
        return [int(a) for a in self.session.scalars(stmt).all() if a]


def recompute_rule_in_background(rule_id: str) -> None:
    """Best-effort recompute in its own session; failures are logged, never raised."""
    try:
        with get_session() as session:
            QuotaEngine(session).recompute_rule(rule_id)
    except (QuotaError, SQLAlchemyError):
        logger.exception("rule_recompute_failed", rule_id=rule_id)
