"""Tracking scopes: which owner a quota tracking row accumulates for.

A scheme rule's tracking is keyed by the scheme and, separately, by the
payment method the scheme transaction also used (``None`` when there was
none). A payment-method rule's tracking is keyed by the payment method alone
and is stored with ``scheme_id`` NULL. The two never share rows.
"""

from dataclasses import dataclass

from db.enums import ScopeKind
from db.models import QuotaTrackings, RewardRules
from rewardquota.services.errors import ValidationError


@dataclass(frozen=True, slots=True)
class SchemeScope:
    scheme_id: str
    payment_method_id: str | None = None

    kind = ScopeKind.SCHEME

    @property
    def owner_id(self) -> str:
        return self.scheme_id


@dataclass(frozen=True, slots=True)
class PaymentMethodScope:
    payment_method_id: str

    kind = ScopeKind.PAYMENT_METHOD

    @property
    def owner_id(self) -> str:
        return self.payment_method_id

    @property
    def scheme_id(self) -> None:
        return None


TrackingScope = SchemeScope | PaymentMethodScope


def scope_for_rule(rule: RewardRules, payment_method_id: str | None) -> TrackingScope:
    """Scope a transaction paid with ``payment_method_id`` accumulates into for ``rule``."""
    if rule.scheme_id is not None:
        return SchemeScope(scheme_id=rule.scheme_id, payment_method_id=payment_method_id)
    return owner_scope(rule)


def scope_of_tracking(tracking: QuotaTrackings) -> TrackingScope:
    if tracking.scheme_id is not None:
        return SchemeScope(tracking.scheme_id, tracking.payment_method_id)
    if tracking.payment_method_id is None:
        raise ValidationError(f"Tracking {tracking.id} has no owner")
    return PaymentMethodScope(tracking.payment_method_id)


def owner_scope(rule: RewardRules) -> TrackingScope:
    """Scope of a rule's own owner with no incidental payment method."""
    if rule.scheme_id is not None:
        return SchemeScope(rule.scheme_id)
    if rule.payment_method_id is None:
        raise ValidationError(f"Rule {rule.id} has no owner")
    return PaymentMethodScope(rule.payment_method_id)


def check_scope_matches_rule(scope: TrackingScope, rule: RewardRules) -> None:
    """Reject a scope that does not belong to the rule's owner."""
    match scope:
        case SchemeScope(scheme_id=scheme_id):
            if rule.scheme_id != scheme_id:
                raise ValidationError(f"Rule {rule.id} does not belong to scheme {scheme_id}")
        case PaymentMethodScope(payment_method_id=pm_id):
            if rule.scheme_id is not None or rule.payment_method_id != pm_id:
                raise ValidationError(
                    f"Rule {rule.id} does not belong to payment method {pm_id}"
                )


def scope_from_ids(scheme_id: str | None, payment_method_id: str | None) -> TrackingScope:
    """Scope named by request ids: a scheme id wins, else the payment method alone."""
    if scheme_id:
        return SchemeScope(scheme_id=scheme_id, payment_method_id=payment_method_id or None)
    if payment_method_id:
        return PaymentMethodScope(payment_method_id=payment_method_id)
    raise ValidationError("A scheme id or payment method id is required")
