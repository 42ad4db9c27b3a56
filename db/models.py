"""SQLAlchemy ORM models for schemes, reward rules, quota trackings and transactions."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    MetaData,
    Numeric,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Money columns: whole currency units with room for fractional limits/adjustments.
Money = Numeric(14, 2)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)


def generate_uuid() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class Schemes(Base):
    __tablename__ = "card_schemes"

    id: Mapped[str] = mapped_column(primary_key=True, default=generate_uuid)
    card_name: Mapped[str] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(nullable=False)
    activity_start_date: Mapped[str | None] = mapped_column()
    activity_end_date: Mapped[str | None] = mapped_column()
    display_order: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)
    rules = relationship(
        "RewardRules",
        back_populates="scheme",
        cascade="all, delete-orphan",
        order_by="RewardRules.display_order",
    )


class PaymentMethods(Base):
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(nullable=False)
    display_order: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)
    rules = relationship(
        "RewardRules",
        back_populates="payment_method",
        cascade="all, delete-orphan",
        order_by="RewardRules.display_order",
    )


class RewardRules(Base):
    __tablename__ = "reward_rules"

    id: Mapped[str] = mapped_column(primary_key=True, default=generate_uuid)
    scheme_id: Mapped[str | None] = mapped_column(
        ForeignKey("card_schemes.id", ondelete="CASCADE"),
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="CASCADE"),
    )
    percentage: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    calculation_method: Mapped[str] = mapped_column(nullable=False, default="round")
    quota_limit: Mapped[Decimal | None] = mapped_column(Money)
    quota_calculation_basis: Mapped[str] = mapped_column(nullable=False, default="transaction")
    quota_refresh_type: Mapped[str | None] = mapped_column()
    quota_refresh_value: Mapped[int | None] = mapped_column()
    quota_refresh_date: Mapped[str | None] = mapped_column()
    display_order: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)

    __table_args__ = (
        CheckConstraint(
            "(scheme_id IS NULL) <> (payment_method_id IS NULL)",
            name="single_owner",
        ),
    )
    scheme = relationship("Schemes", back_populates="rules")
    payment_method = relationship("PaymentMethods", back_populates="rules")
    trackings = relationship(
        "QuotaTrackings",
        back_populates="rule",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class QuotaTrackings(Base):
    __tablename__ = "quota_trackings"

    id: Mapped[str] = mapped_column(primary_key=True, default=generate_uuid)
    scheme_id: Mapped[str | None] = mapped_column(
        ForeignKey("card_schemes.id", ondelete="CASCADE"),
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="CASCADE"),
    )
    reward_rule_id: Mapped[str] = mapped_column(
        ForeignKey("reward_rules.id", ondelete="CASCADE"),
        nullable=False,
    )
    used_quota: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal(0))
    manual_adjustment: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal(0))
    current_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal(0))
    remaining_quota: Mapped[Decimal | None] = mapped_column(Money)
    last_refresh_at: Mapped[str | None] = mapped_column()
    next_refresh_at: Mapped[str | None] = mapped_column()
    version: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)
    updated_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("ix_quota_trackings_scope", "reward_rule_id", "scheme_id", "payment_method_id"),
        Index("ix_quota_trackings_next_refresh_at", "next_refresh_at"),
    )
    __mapper_args__ = {"version_id_col": version}
    rule = relationship("RewardRules", back_populates="trackings")


class Transactions(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(primary_key=True, default=generate_uuid)
    transaction_date: Mapped[str] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column()
    amount: Mapped[int] = mapped_column(nullable=False)
    note: Mapped[str | None] = mapped_column()
    scheme_id: Mapped[str | None] = mapped_column(
        ForeignKey("card_schemes.id", ondelete="SET NULL"),
    )
    payment_method_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
    )
    created_at: Mapped[str] = mapped_column(nullable=False, default=utc_now_iso)
