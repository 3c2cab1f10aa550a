from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aura_coach.db import session as db_session
from aura_coach.db.models import ConversationLog


class PersistenceFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class ExchangeRecord:
    user_id: int
    lang: str
    user_message: str
    assistant_text: str
    tool_name: Optional[str] = None


def persist_exchange(record: ExchangeRecord, session_factory: Optional[Callable[[], Session]] = None) -> None:
    """Write one finished exchange using its own session.

    Streaming bodies outlive the request-scoped session, so this never reuses it.
    """
    db = (session_factory or db_session.SessionLocal)()
    try:
        db.add(
            ConversationLog(
                user_id=record.user_id,
                created_at=datetime.now(timezone.utc),
                lang=record.lang[:16],
                user_message=record.user_message[:8000],
                assistant_text=record.assistant_text[:20000],
                tool_name=record.tool_name,
            )
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceFailure(f"Conversation log write failed: {str(exc)[:200]}") from exc
    finally:
        db.close()


def recent_exchanges(db: Session, user_id: int, limit: int = 20) -> list[ConversationLog]:
    return (
        db.query(ConversationLog)
        .filter(ConversationLog.user_id == user_id)
        .order_by(ConversationLog.created_at.desc(), ConversationLog.id.desc())
        .limit(limit)
        .all()
    )
