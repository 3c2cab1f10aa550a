from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from aura_coach.api.auth import get_current_user
from aura_coach.db.models import User
from aura_coach.db.session import get_db
from aura_coach.services.conversation_log import recent_exchanges

router = APIRouter(prefix="/coach", tags=["chat"])


class ExchangeItem(BaseModel):
    id: int
    lang: str
    user_message: str
    assistant_text: str
    tool_name: Optional[str] = None
    created_at: str


class HistoryResponse(BaseModel):
    items: list[ExchangeItem]


@router.get("/history", response_model=HistoryResponse)
def list_history(
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HistoryResponse:
    rows = recent_exchanges(db, user.id, limit=limit)
    items = [
        ExchangeItem(
            id=row.id,
            lang=row.lang,
            user_message=row.user_message,
            assistant_text=row.assistant_text,
            tool_name=row.tool_name,
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]
    return HistoryResponse(items=items)
