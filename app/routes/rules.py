"""Reward rule endpoints."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from app.dependencies import get_api_key, get_db
from app.schemas.rules import RuleResponse, RuleUpdate, RuleUpdateResponse
from rewardquota.services.quota_engine import recompute_rule_in_background
from rewardquota.services.rule_service import RuleService

router = APIRouter(prefix="/api", tags=["rules"])


@router.get("/rules/{rule_id}", response_model=RuleResponse)
def get_rule(rule_id: str, db: Session = Depends(get_db)):
    rule = RuleService(db).get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Reward rule not found")
    return RuleResponse.model_validate(rule)


@router.put("/rules/{rule_id}", response_model=RuleUpdateResponse)
def update_rule(
    rule_id: str,
    body: RuleUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _key: str = Depends(get_api_key),
):
    svc = RuleService(db)
    rule, needs_recompute = svc.update_rule(rule_id, body.model_dump(exclude_unset=True))
    response = RuleUpdateResponse(
        rule=RuleResponse.model_validate(rule),
        recompute_scheduled=needs_recompute,
    )
    if needs_recompute:
        # The recompute runs in its own session and must see the new rule.
        db.commit()
        background_tasks.add_task(recompute_rule_in_background, rule_id)
    return response
