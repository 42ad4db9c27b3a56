"""Quota request/response schemas."""

from decimal import Decimal

from pydantic import Field

from app.schemas.common import CamelModel, Money, ScopeFields


class QuotaEntryResponse(ScopeFields):
    rule_id: str
    tracking_id: str | None
    name: str
    percentage: Money
    calculation_method: str
    calculation_basis: str
    quota_limit: Money | None
    used_quota: Money
    manual_adjustment: Money
    total_used: Money
    remaining_quota: Money | None
    current_amount: Money
    reference_amount: Money | None
    last_refresh_at: str | None
    next_refresh_at: str | None
    refresh_time: str | None


class ManualAdjustmentRequest(CamelModel):
    rule_id: str = Field(..., min_length=1)
    scheme_id: str | None = None
    payment_method_id: str | None = None
    manual_adjustment: Decimal | None = Field(
        None, description="Absolute adjustment for the current period; null clears it"
    )


class RefreshResponse(CamelModel):
    refreshed: int


class CalculateRequest(CamelModel):
    amount: Decimal
    scheme_id: str | None = None
    payment_method_id: str | None = None


class RewardLineResponse(ScopeFields):
    rule_id: str
    percentage: Money
    calculation_method: str
    calculation_basis: str
    original_reward: Money
    calculated_reward: Money
    quota_limit: Money | None
    remaining_quota: Money | None
    reference_amount: Money | None


class RewardEstimateResponse(CamelModel):
    amount: int
    rewards: list[RewardLineResponse]
    total_reward: Money
