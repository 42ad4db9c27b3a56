"""Reward arithmetic: percentage of an amount, rounded to whole currency units.

All math is done in ``Decimal`` so that e.g. 1500 * 2.7% is exactly 40.5 and
rounds half-up to 41, never 40 through float error.

Sign handling: a zero or negative amount earns nothing (``Decimal(0)``). The
engine never feeds negative amounts in; rollback subtracts a positive reward.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from db.enums import CalculationBasis, CalculationMethod
from rewardquota.services._helpers import ZERO, Number, to_decimal
from rewardquota.services.errors import ValidationError

_HUNDRED: Decimal = Decimal(100)
_UNIT: Decimal = Decimal(1)

_ROUNDING: dict[CalculationMethod, str] = {
    CalculationMethod.ROUND: ROUND_HALF_UP,
    CalculationMethod.FLOOR: ROUND_FLOOR,
    CalculationMethod.CEIL: ROUND_CEILING,
}


def parse_method(method: CalculationMethod | str | None) -> CalculationMethod:
    """Unset means ``round``; anything else must name a known method."""
    if method is None or method == "":
        return CalculationMethod.ROUND
    try:
        return CalculationMethod(method)
    except ValueError as exc:
        raise ValidationError(f"Unknown calculation method '{method}'") from exc


def raw_reward(amount: Number, percentage: Number) -> Decimal:
    """Unrounded reward ``amount * percentage / 100``."""
    pct: Decimal = to_decimal(percentage, "percentage")
    if pct < 0:
        raise ValidationError("percentage must not be negative")
    base: Decimal = to_decimal(amount, "amount")
    if base <= 0:
        return ZERO
    return base * pct / _HUNDRED


def calculate_reward(
    amount: Number,
    percentage: Number,
    method: CalculationMethod | str | None = CalculationMethod.ROUND,
) -> Decimal:
    """Reward for ``amount`` at ``percentage`` percent, rounded per ``method``."""
    rounding: str = _ROUNDING[parse_method(method)]
    return raw_reward(amount, percentage).quantize(_UNIT, rounding=rounding)


def calculate_marginal_reward(
    prior_amount: Number,
    delta_amount: Number,
    percentage: Number,
    method: CalculationMethod | str | None = CalculationMethod.ROUND,
) -> Decimal:
    """Extra reward earned when a running total grows from ``prior`` by ``delta``.

    Statement-basis rules reward the billing-cycle total, so each transaction
    is credited the difference between the rounded rewards of the totals
    after and before it. Recomputing from totals avoids rounding drift.
    """
    prior: Decimal = to_decimal(prior_amount, "prior_amount")
    delta: Decimal = to_decimal(delta_amount, "delta_amount")
    return calculate_reward(prior + delta, percentage, method) - calculate_reward(
        prior, percentage, method
    )


def parse_basis(basis: CalculationBasis | str | None) -> CalculationBasis:
    """Unset means per-transaction; anything else must name a known basis."""
    if basis is None or basis == "":
        return CalculationBasis.TRANSACTION
    try:
        return CalculationBasis(basis)
    except ValueError as exc:
        raise ValidationError(f"Unknown calculation basis '{basis}'") from exc


def rule_reward(
    basis: CalculationBasis | str | None,
    prior_amount: Number,
    delta_amount: Number,
    percentage: Number,
    method: CalculationMethod | str | None,
) -> Decimal:
    """Reward credited for ``delta`` under ``basis``; ``prior`` only matters for statement basis."""
    if parse_basis(basis) is CalculationBasis.STATEMENT:
        return calculate_marginal_reward(prior_amount, delta_amount, percentage, method)
    return calculate_reward(delta_amount, percentage, method)
