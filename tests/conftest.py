"""Shared fixtures: in-memory SQLite DB with all tables, plus seeded owners."""

from collections.abc import Callable, Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import QuotaSettings
from db.models import Base, PaymentMethods, RewardRules, Schemes

RuleFactory = Callable[..., RewardRules]


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng: Engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine: Engine) -> Generator[Session, None, None]:
    factory: sessionmaker[Session] = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    sess: Session = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture()
def quota_settings() -> QuotaSettings:
    return QuotaSettings(timezone="UTC", reset_adjustment_on_refresh=True)


@pytest.fixture()
def scheme(session: Session) -> Schemes:
    s: Schemes = Schemes(
        id="scheme-1",
        card_name="cube",
        name="travel",
        activity_start_date="2026-01-01",
        activity_end_date="2026-06-30",
    )
    session.add(s)
    session.flush()
    return s


@pytest.fixture()
def payment_method(session: Session) -> PaymentMethods:
    pm: PaymentMethods = PaymentMethods(id="pm-1", name="LINE Pay")
    session.add(pm)
    session.flush()
    return pm


@pytest.fixture()
def make_rule(session: Session) -> RuleFactory:
    """Build a reward rule owned by ``scheme`` or ``payment_method``."""
    counter: list[int] = [0]

    def _make(
        scheme: Schemes | None = None,
        payment_method: PaymentMethods | None = None,
        percentage: str = "2.7",
        **kwargs: object,
    ) -> RewardRules:
        counter[0] += 1
        rule: RewardRules = RewardRules(
            id=str(kwargs.pop("id", f"rule-{counter[0]}")),
            scheme_id=scheme.id if scheme is not None else None,
            payment_method_id=payment_method.id if payment_method is not None else None,
            percentage=Decimal(percentage),
            display_order=counter[0],
            **kwargs,
        )
        session.add(rule)
        session.flush()
        return rule

    return _make
