from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from aura_coach.api.auth import get_current_user
from aura_coach.core.plans import PlanTier, plan_limit, resolve_tier
from aura_coach.db.models import User
from aura_coach.db.session import get_db
from aura_coach.services.usage_ledger import LedgerUnavailable, UsageLedger

router = APIRouter(prefix="/usage", tags=["usage"])


class UsageTodayResponse(BaseModel):
    tier: PlanTier
    used: int
    cap: int
    remaining: int
    date_key: str


@router.get("/today", response_model=UsageTodayResponse)
def usage_today(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> UsageTodayResponse:
    tier = resolve_tier(user.plan_tier)
    cap = plan_limit(tier).daily_message_cap
    try:
        snapshot = UsageLedger(db).peek(user.id)
    except LedgerUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ledger_unavailable", "message": "Usage could not be read. Please retry."},
        ) from exc
    return UsageTodayResponse(
        tier=tier,
        used=snapshot.used,
        cap=cap,
        remaining=max(0, cap - snapshot.used),
        date_key=snapshot.date_key,
    )
