"""Enumeration types for the Reward Quota Engine."""

from enum import Enum


class CalculationMethod(str, Enum):
    """How a raw reward is rounded to whole currency units."""

    ROUND = "round"
    FLOOR = "floor"
    CEIL = "ceil"


class CalculationBasis(str, Enum):
    """What amount a reward percentage is applied to."""

    TRANSACTION = "transaction"
    STATEMENT = "statement"  # Billing-cycle total, credited marginally


class RefreshType(str, Enum):
    """Quota refresh policy of a reward rule."""

    MONTHLY = "monthly"
    DATE = "date"
    ACTIVITY = "activity"


class ScopeKind(str, Enum):
    """Which owner a quota tracking belongs to."""

    SCHEME = "scheme"
    PAYMENT_METHOD = "payment_method"
