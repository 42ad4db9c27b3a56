"""Result dataclasses returned by service operations."""

from dataclasses import dataclass, field
from decimal import Decimal

from db.models import Transactions
from rewardquota.services.scope import TrackingScope


@dataclass
class QuotaChange:
    rule_id: str
    scope: TrackingScope
    reward: Decimal  # Signed change applied to used_quota
    used_quota: Decimal
    current_amount: Decimal
    remaining_quota: Decimal | None
    refreshed: bool = False


@dataclass
class TransactionResult:
    transaction: Transactions
    changes: list[QuotaChange] = field(default_factory=list)


@dataclass
class QuotaSnapshotEntry:
    scope: TrackingScope
    rule_id: str
    owner_name: str
    percentage: Decimal
    calculation_method: str
    calculation_basis: str
    quota_limit: Decimal | None
    used_quota: Decimal
    manual_adjustment: Decimal
    total_used: Decimal
    remaining_quota: Decimal | None
    current_amount: Decimal
    last_refresh_at: str | None
    next_refresh_at: str | None
    refresh_label: str | None
    reference_amount: Decimal | None
    tracking_id: str | None = None


@dataclass
class RewardLine:
    rule_id: str
    scope: TrackingScope
    percentage: Decimal
    calculation_method: str
    calculation_basis: str
    original_reward: Decimal
    calculated_reward: Decimal
    quota_limit: Decimal | None
    remaining_quota: Decimal | None
    reference_amount: Decimal | None


@dataclass
class RewardEstimate:
    amount: int
    rewards: list[RewardLine]
    total_reward: Decimal
