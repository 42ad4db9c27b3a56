"""Reward rule request/response schemas."""

from decimal import Decimal

from pydantic import Field

from app.schemas.common import CamelModel, Money


class RuleUpdate(CamelModel):
    percentage: Decimal | None = Field(None, gt=0)
    calculation_method: str | None = Field(None, description="round | floor | ceil")
    quota_limit: Decimal | None = Field(None, ge=0)
    quota_calculation_basis: str | None = Field(None, description="transaction | statement")
    quota_refresh_type: str | None = Field(None, description="monthly | date | activity")
    quota_refresh_value: int | None = Field(None, ge=1, le=28)
    quota_refresh_date: str | None = None
    display_order: int | None = None


class RuleResponse(CamelModel):
    id: str
    scheme_id: str | None
    payment_method_id: str | None
    percentage: Money
    calculation_method: str
    quota_limit: Money | None
    quota_calculation_basis: str
    quota_refresh_type: str | None
    quota_refresh_value: int | None
    quota_refresh_date: str | None
    display_order: int
    updated_at: str


class RuleUpdateResponse(CamelModel):
    rule: RuleResponse
    recompute_scheduled: bool
