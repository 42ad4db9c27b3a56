"""Transaction request/response schemas."""

from datetime import date
from decimal import Decimal

from pydantic import Field

from app.schemas.common import CamelModel, Money, ScopeFields


class TransactionCreate(CamelModel):
    amount: Decimal = Field(..., description="Whole currency units")
    scheme_id: str | None = None
    payment_method_id: str | None = None
    transaction_date: date | None = None
    reason: str | None = Field(None, max_length=255)
    note: str | None = Field(None, max_length=1000)


class TransactionResponse(CamelModel):
    id: str
    transaction_date: str
    reason: str | None
    amount: int
    note: str | None
    scheme_id: str | None
    payment_method_id: str | None
    created_at: str


class QuotaChangeResponse(ScopeFields):
    rule_id: str
    reward: Money
    used_quota: Money
    current_amount: Money
    remaining_quota: Money | None
    refreshed: bool


class TransactionResultResponse(CamelModel):
    transaction: TransactionResponse
    quota_changes: list[QuotaChangeResponse] = []
