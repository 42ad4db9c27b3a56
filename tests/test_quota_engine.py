"""Tests for rewardquota.services.quota_engine."""

from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from structlog.testing import capture_logs

from config import QuotaSettings
from db.models import PaymentMethods, QuotaTrackings, RewardRules, Schemes, Transactions
from rewardquota.services.errors import (
    NotFoundError,
    ReferenceNotFoundError,
    ValidationError,
)
from rewardquota.services import quota_engine
from rewardquota.services.quota_engine import QuotaEngine, recompute_rule_in_background, whole_amount
from rewardquota.services.schemas.results import TransactionResult
from rewardquota.services.scope import PaymentMethodScope, SchemeScope

RuleFactory = Callable[..., RewardRules]

T0: datetime = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _engine(session: Session, settings: QuotaSettings, when: datetime = T0) -> QuotaEngine:
    return QuotaEngine(session, settings=settings, clock=lambda: when)


def _tracking(session: Session, rule: RewardRules) -> QuotaTrackings:
    return session.scalars(
        select(QuotaTrackings).where(QuotaTrackings.reward_rule_id == rule.id)
    ).one()


class TestWholeAmount:
    def test_accepts_integral_values(self) -> None:
        assert whole_amount("1500") == 1500
        assert whole_amount(Decimal("1500.00")) == 1500

    def test_rejects_fractions_and_negatives(self) -> None:
        with pytest.raises(ValidationError):
            whole_amount("10.5")
        with pytest.raises(ValidationError):
            whole_amount(-1)
        with pytest.raises(ValidationError):
            whole_amount(None)


class TestApplyTransaction:
    def test_transaction_basis_accumulates_rounded_rewards(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)

        first: TransactionResult = engine.apply_transaction(1500, scheme_id=scheme.id)
        engine.apply_transaction(1000, scheme_id=scheme.id)

        assert first.changes[0].reward == Decimal(41)
        tracking: QuotaTrackings = _tracking(session, rule)
        assert tracking.used_quota == Decimal(68)
        assert tracking.current_amount == Decimal(2500)
        assert tracking.remaining_quota == Decimal(32)

    def test_statement_basis_rewards_running_total(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_calculation_basis="statement")
        engine: QuotaEngine = _engine(session, quota_settings)

        first: TransactionResult = engine.apply_transaction(100, scheme_id=scheme.id)
        second: TransactionResult = engine.apply_transaction(100, scheme_id=scheme.id)

        # 2.7 -> 3, then 5.4 -> 5 for the total: the second earns 2, not 3.
        assert first.changes[0].reward == Decimal(3)
        assert second.changes[0].reward == Decimal(2)
        assert _tracking(session, rule).used_quota == Decimal(5)

    def test_records_transaction(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        payment_method: PaymentMethods,
    ) -> None:
        result: TransactionResult = _engine(session, quota_settings).apply_transaction(
            250,
            scheme_id=scheme.id,
            payment_method_id=payment_method.id,
            reason="dinner",
            note="",
        )
        txn: Transactions = result.transaction
        assert txn.amount == 250
        assert txn.transaction_date == "2026-03-10"
        assert txn.note is None
        assert txn.created_at == T0.isoformat()
        assert session.get(Transactions, txn.id) is txn

    def test_scheme_and_payment_method_rules_both_apply(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        payment_method: PaymentMethods,
        make_rule: RuleFactory,
    ) -> None:
        scheme_rule: RewardRules = make_rule(scheme, percentage="3")
        pm_rule: RewardRules = make_rule(payment_method=payment_method, percentage="1")

        result: TransactionResult = _engine(session, quota_settings).apply_transaction(
            1000, scheme_id=scheme.id, payment_method_id=payment_method.id
        )

        assert [c.rule_id for c in result.changes] == [scheme_rule.id, pm_rule.id]
        assert result.changes[0].scope == SchemeScope(scheme.id, payment_method.id)
        assert result.changes[1].scope == PaymentMethodScope(payment_method.id)
        assert _tracking(session, scheme_rule).used_quota == Decimal(30)
        pm_tracking: QuotaTrackings = _tracking(session, pm_rule)
        assert pm_tracking.used_quota == Decimal(10)
        assert pm_tracking.scheme_id is None

    def test_scheme_tracking_split_by_payment_method(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        payment_method: PaymentMethods,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, percentage="10")
        engine: QuotaEngine = _engine(session, quota_settings)

        engine.apply_transaction(100, scheme_id=scheme.id)
        engine.apply_transaction(200, scheme_id=scheme.id, payment_method_id=payment_method.id)

        count: int = session.scalar(
            select(func.count()).select_from(QuotaTrackings).where(
                QuotaTrackings.reward_rule_id == rule.id
            )
        )
        assert count == 2
        assert engine.store.find(SchemeScope(scheme.id), rule.id).used_quota == Decimal(10)
        assert engine.store.find(
            SchemeScope(scheme.id, payment_method.id), rule.id
        ).used_quota == Decimal(20)

    def test_zero_amount_touches_no_tracking(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        make_rule(scheme)
        result: TransactionResult = _engine(session, quota_settings).apply_transaction(
            0, scheme_id=scheme.id
        )
        assert result.changes == []
        assert session.scalar(select(func.count()).select_from(QuotaTrackings)) == 0

    def test_unknown_scheme_rejected(
        self, session: Session, quota_settings: QuotaSettings
    ) -> None:
        with pytest.raises(ReferenceNotFoundError):
            _engine(session, quota_settings).apply_transaction(100, scheme_id="nope")
        assert session.scalar(select(func.count()).select_from(Transactions)) == 0

    def test_negative_amount_rejected(
        self, session: Session, quota_settings: QuotaSettings, scheme: Schemes
    ) -> None:
        with pytest.raises(ValidationError):
            _engine(session, quota_settings).apply_transaction(-100, scheme_id=scheme.id)

    def test_stale_tracking_rolls_over_before_accumulating(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(
            scheme,
            percentage="10",
            quota_limit=Decimal(100),
            quota_refresh_type="monthly",
            quota_refresh_value=15,
        )
        _engine(session, quota_settings).apply_transaction(500, scheme_id=scheme.id)

        later: datetime = datetime(2026, 3, 20, tzinfo=UTC)
        result: TransactionResult = _engine(session, quota_settings, later).apply_transaction(
            100, scheme_id=scheme.id
        )

        assert result.changes[0].refreshed is True
        tracking: QuotaTrackings = _tracking(session, rule)
        assert tracking.used_quota == Decimal(10)
        assert tracking.remaining_quota == Decimal(90)
        assert tracking.next_refresh_at == "2026-04-15T00:00:00+00:00"


class TestRollbackTransaction:
    def test_restores_quota_and_deletes(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(1500, scheme_id=scheme.id)
        second: TransactionResult = engine.apply_transaction(1000, scheme_id=scheme.id)

        result: TransactionResult = engine.rollback_transaction(second.transaction.id)

        assert result.changes[0].reward == Decimal(-27)
        tracking: QuotaTrackings = _tracking(session, rule)
        assert tracking.used_quota == Decimal(41)
        assert tracking.current_amount == Decimal(1500)
        assert session.get(Transactions, second.transaction.id) is None

    def test_statement_basis_rollback(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_calculation_basis="statement")
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(100, scheme_id=scheme.id)
        second: TransactionResult = engine.apply_transaction(100, scheme_id=scheme.id)

        engine.rollback_transaction(second.transaction.id)

        assert _tracking(session, rule).used_quota == Decimal(3)

    def test_apply_then_rollback_is_neutral(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(700, scheme_id=scheme.id)
        before: Decimal = _tracking(session, rule).used_quota

        txn: TransactionResult = engine.apply_transaction(333, scheme_id=scheme.id)
        engine.rollback_transaction(txn.transaction.id)

        assert _tracking(session, rule).used_quota == before

    @pytest.mark.parametrize("basis", ["transaction", "statement"])
    def test_rollback_restores_every_quota_field(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
        basis: str,
    ) -> None:
        rule: RewardRules = make_rule(
            scheme, quota_limit=Decimal(100), quota_calculation_basis=basis
        )
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(700, scheme_id=scheme.id)
        tracking: QuotaTrackings = _tracking(session, rule)
        before: tuple[Decimal, Decimal, Decimal] = (
            tracking.used_quota,
            tracking.current_amount,
            tracking.remaining_quota,
        )

        txn: TransactionResult = engine.apply_transaction(333, scheme_id=scheme.id)
        assert tracking.current_amount == Decimal(1033)
        engine.rollback_transaction(txn.transaction.id)

        tracking = _tracking(session, rule)
        assert (
            tracking.used_quota,
            tracking.current_amount,
            tracking.remaining_quota,
        ) == before
        assert before == (Decimal(19), Decimal(700), Decimal(81))

    def test_used_quota_never_negative(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme)
        engine: QuotaEngine = _engine(session, quota_settings)
        txn: TransactionResult = engine.apply_transaction(1000, scheme_id=scheme.id)
        _tracking(session, rule).used_quota = Decimal(5)

        engine.rollback_transaction(txn.transaction.id)

        assert _tracking(session, rule).used_quota == Decimal(0)

    def test_unknown_transaction(self, session: Session, quota_settings: QuotaSettings) -> None:
        with pytest.raises(NotFoundError):
            _engine(session, quota_settings).rollback_transaction("missing")


class TestManualAdjustment:
    def test_adjustment_reduces_remaining(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(1500, scheme_id=scheme.id)

        tracking: QuotaTrackings = engine.set_manual_adjustment(
            SchemeScope(scheme.id), rule.id, 10
        )

        assert tracking.used_quota == Decimal(41)
        assert tracking.manual_adjustment == Decimal(10)
        assert tracking.remaining_quota == Decimal(49)

    def test_later_transactions_compose_with_adjustment(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.set_manual_adjustment(SchemeScope(scheme.id), rule.id, 10)

        engine.apply_transaction(1500, scheme_id=scheme.id)
        tracking: QuotaTrackings = _tracking(session, rule)
        assert tracking.used_quota == Decimal(41)
        assert tracking.manual_adjustment == Decimal(10)
        assert tracking.remaining_quota == Decimal(49)

        engine.apply_transaction(1000, scheme_id=scheme.id)
        assert tracking.used_quota == Decimal(68)
        assert tracking.remaining_quota == Decimal(22)

    def test_adjustment_is_absolute(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(100))
        engine: QuotaEngine = _engine(session, quota_settings)

        engine.set_manual_adjustment(SchemeScope(scheme.id), rule.id, 10)
        tracking: QuotaTrackings = engine.set_manual_adjustment(
            SchemeScope(scheme.id), rule.id, "5"
        )
        assert tracking.manual_adjustment == Decimal(5)
        assert tracking.remaining_quota == Decimal(95)

        cleared: QuotaTrackings = engine.set_manual_adjustment(
            SchemeScope(scheme.id), rule.id, None
        )
        assert cleared.manual_adjustment == Decimal(0)

    def test_creates_tracking_when_missing(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        payment_method: PaymentMethods,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(payment_method=payment_method, quota_limit=Decimal(50))

        tracking: QuotaTrackings = _engine(session, quota_settings).set_manual_adjustment(
            PaymentMethodScope(payment_method.id), rule.id, 20
        )

        assert tracking.scheme_id is None
        assert tracking.remaining_quota == Decimal(30)

    def test_scope_must_match_rule_owner(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        payment_method: PaymentMethods,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme)
        with pytest.raises(ValidationError):
            _engine(session, quota_settings).set_manual_adjustment(
                PaymentMethodScope(payment_method.id), rule.id, 1
            )

    def test_unknown_rule(
        self, session: Session, quota_settings: QuotaSettings, scheme: Schemes
    ) -> None:
        with pytest.raises(NotFoundError):
            _engine(session, quota_settings).set_manual_adjustment(
                SchemeScope(scheme.id), "missing", 1
            )

    def test_non_numeric_value(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme)
        with pytest.raises(ValidationError):
            _engine(session, quota_settings).set_manual_adjustment(
                SchemeScope(scheme.id), rule.id, "ten"
            )


class TestRecomputeRule:
    def test_recompute_after_percentage_change(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(200))
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(1500, scheme_id=scheme.id)
        engine.apply_transaction(1000, scheme_id=scheme.id)
        engine.set_manual_adjustment(SchemeScope(scheme.id), rule.id, 10)

        rule.percentage = Decimal(5)
        session.flush()
        trackings: list[QuotaTrackings] = engine.recompute_rule(rule.id)

        assert len(trackings) == 1
        assert trackings[0].used_quota == Decimal(125)
        assert trackings[0].manual_adjustment == Decimal(10)
        assert trackings[0].remaining_quota == Decimal(65)

    def test_recompute_switch_to_statement(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme)
        engine: QuotaEngine = _engine(session, quota_settings)
        engine.apply_transaction(100, scheme_id=scheme.id)
        engine.apply_transaction(100, scheme_id=scheme.id)
        assert _tracking(session, rule).used_quota == Decimal(6)

        rule.quota_calculation_basis = "statement"
        session.flush()
        engine.recompute_rule(rule.id)

        assert _tracking(session, rule).used_quota == Decimal(5)

    def test_untracked_rule_left_alone(
        self,
        session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme)
        assert _engine(session, quota_settings).recompute_rule(rule.id) == []

    def test_unknown_rule(self, session: Session, quota_settings: QuotaSettings) -> None:
        with pytest.raises(NotFoundError):
            _engine(session, quota_settings).recompute_rule("missing")


class TestRecomputeInBackground:
    @pytest.fixture()
    def shared_session(self, session: Session, monkeypatch: pytest.MonkeyPatch) -> Session:
        @contextmanager
        def _get_session() -> Generator[Session, None, None]:
            yield session

        monkeypatch.setattr(quota_engine, "get_session", _get_session)
        return session

    def test_recomputes_in_own_session(
        self,
        shared_session: Session,
        quota_settings: QuotaSettings,
        scheme: Schemes,
        make_rule: RuleFactory,
    ) -> None:
        rule: RewardRules = make_rule(scheme, quota_limit=Decimal(200))
        engine: QuotaEngine = _engine(shared_session, quota_settings)
        engine.apply_transaction(1500, scheme_id=scheme.id)
        engine.apply_transaction(1000, scheme_id=scheme.id)
        rule.percentage = Decimal(5)
        shared_session.flush()

        recompute_rule_in_background(rule.id)

        tracking: QuotaTrackings = _tracking(shared_session, rule)
        assert tracking.used_quota == Decimal(125)
        assert tracking.remaining_quota == Decimal(75)

    def test_unknown_rule_is_logged_not_raised(self, shared_session: Session) -> None:
        with capture_logs() as logs:
            recompute_rule_in_background("missing")

        failures = [e for e in logs if e["event"] == "rule_recompute_failed"]
        assert len(failures) == 1
        assert failures[0]["rule_id"] == "missing"
        assert failures[0]["log_level"] == "error"

    def test_database_failure_is_logged_not_raised(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        @contextmanager
        def _broken_session() -> Generator[Session, None, None]:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            yield  # pragma: no cover

        monkeypatch.setattr(quota_engine, "get_session", _broken_session)

        with capture_logs() as logs:
            recompute_rule_in_background("rule-1")

        assert [e["event"] for e in logs] == ["rule_recompute_failed"]
