"""Transaction endpoints: record and roll back spend."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.dependencies import get_api_key, get_db
from app.schemas.common import scope_fields
from app.schemas.transactions import (
    QuotaChangeResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionResultResponse,
)
from rewardquota.services.quota_engine import QuotaEngine
from rewardquota.services.quota_query import QuotaQueryService
from rewardquota.services.schemas.results import QuotaChange, TransactionResult

router = APIRouter(prefix="/api", tags=["transactions"])


def _change(change: QuotaChange) -> QuotaChangeResponse:
    return QuotaChangeResponse(
        **scope_fields(change.scope),
        rule_id=change.rule_id,
        reward=change.reward,
        used_quota=change.used_quota,
        current_amount=change.current_amount,
        remaining_quota=change.remaining_quota,
        refreshed=change.refreshed,
    )


def _result(result: TransactionResult) -> TransactionResultResponse:
    return TransactionResultResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        quota_changes=[_change(c) for c in result.changes],
    )


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(limit: int = 100, db: Session = Depends(get_db)):
    svc = QuotaQueryService(db)
    return [TransactionResponse.model_validate(t) for t in svc.list_transactions(limit=limit)]


@router.post("/transactions", response_model=TransactionResultResponse, status_code=201)
def create_transaction(
    body: TransactionCreate,
    db: Session = Depends(get_db),
    _key: str = Depends(get_api_key),
):
    engine = QuotaEngine(db)
    result = engine.apply_transaction(
        body.amount,
        scheme_id=body.scheme_id,
        payment_method_id=body.payment_method_id,
        transaction_date=body.transaction_date,
        reason=body.reason,
        note=body.note,
    )
    return _result(result)


@router.delete("/transactions/{transaction_id}", response_model=TransactionResultResponse)
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    _key: str = Depends(get_api_key),
):
    engine = QuotaEngine(db)
    return _result(engine.rollback_transaction(transaction_id))
