"""Quota endpoints: snapshot, refresh sweep, manual adjustment and reward preview."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.dependencies import get_api_key, get_db
from app.schemas.common import scope_fields
from app.schemas.quota import (
    CalculateRequest,
    ManualAdjustmentRequest,
    QuotaEntryResponse,
    RefreshResponse,
    RewardEstimateResponse,
    RewardLineResponse,
)
from db.models import QuotaTrackings
from rewardquota.services.quota_engine import QuotaEngine
from rewardquota.services.quota_query import QuotaQueryService
from rewardquota.services.schemas.results import QuotaSnapshotEntry
from rewardquota.services.scope import scope_from_ids

router = APIRouter(prefix="/api", tags=["quota"])


def _entry(entry: QuotaSnapshotEntry) -> QuotaEntryResponse:
    return QuotaEntryResponse(
        **scope_fields(entry.scope),
        rule_id=entry.rule_id,
        tracking_id=entry.tracking_id,
        name=entry.owner_name,
        percentage=entry.percentage,
        calculation_method=entry.calculation_method,
        calculation_basis=entry.calculation_basis,
        quota_limit=entry.quota_limit,
        used_quota=entry.used_quota,
        manual_adjustment=entry.manual_adjustment,
        total_used=entry.total_used,
        remaining_quota=entry.remaining_quota,
        current_amount=entry.current_amount,
        reference_amount=entry.reference_amount,
        last_refresh_at=entry.last_refresh_at,
        next_refresh_at=entry.next_refresh_at,
        refresh_time=entry.refresh_label,
    )


@router.get("/quota", response_model=list[QuotaEntryResponse])
def get_quota(db: Session = Depends(get_db)):
    svc = QuotaQueryService(db)
    return [_entry(e) for e in svc.get_snapshot()]


@router.post("/quota/refresh", response_model=RefreshResponse)
def refresh_quota(
    db: Session = Depends(get_db),
    _key: str = Depends(get_api_key),
):
    svc = QuotaQueryService(db)
    return RefreshResponse(refreshed=svc.refresh_due())


@router.put("/quota/adjustment", response_model=QuotaEntryResponse)
def set_manual_adjustment(
    body: ManualAdjustmentRequest,
    db: Session = Depends(get_db),
    _key: str = Depends(get_api_key),
):
    scope = scope_from_ids(body.scheme_id, body.payment_method_id)
    engine = QuotaEngine(db)
    tracking: QuotaTrackings = engine.set_manual_adjustment(
        scope, body.rule_id, body.manual_adjustment
    )
    svc = QuotaQueryService(db)
    return _entry(svc.entry_for(tracking))


@router.post("/calculate", response_model=RewardEstimateResponse)
def calculate(body: CalculateRequest, db: Session = Depends(get_db)):
    svc = QuotaQueryService(db)
    estimate = svc.calculate_rewards(
        body.amount,
        scheme_id=body.scheme_id,
        payment_method_id=body.payment_method_id,
    )
    return RewardEstimateResponse(
        amount=estimate.amount,
        total_reward=estimate.total_reward,
        rewards=[
            RewardLineResponse(
                **scope_fields(line.scope),
                rule_id=line.rule_id,
                percentage=line.percentage,
                calculation_method=line.calculation_method,
                calculation_basis=line.calculation_basis,
                original_reward=line.original_reward,
                calculated_reward=line.calculated_reward,
                quota_limit=line.quota_limit,
                remaining_quota=line.remaining_quota,
                reference_amount=line.reference_amount,
            )
            for line in estimate.rewards
        ],
    )
