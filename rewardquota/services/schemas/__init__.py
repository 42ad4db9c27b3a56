"""Shared dataclasses for quota services."""

from rewardquota.services.schemas.results import (
    QuotaChange,
    QuotaSnapshotEntry,
    RewardEstimate,
    RewardLine,
    TransactionResult,
)

__all__ = [
    "QuotaChange",
    "QuotaSnapshotEntry",
    "RewardEstimate",
    "RewardLine",
    "TransactionResult",
]
