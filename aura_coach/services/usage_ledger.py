"""Per-user, per-day message quota.

The counter row for ``(user_id, date_key)`` is created lazily and consumed with a
single conditional UPDATE, so two concurrent admissions can never both take the
last remaining slot.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from aura_coach.core.plans import PlanTier, plan_limit
from aura_coach.db.models import UsageCounter

LEDGER_TIMEZONE = os.getenv("LEDGER_TIMEZONE", "UTC")


class LedgerUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class Admission:
    allowed: bool
    used_after: int
    cap: int
    date_key: str

    @property
    def remaining(self) -> int:
        return max(0, self.cap - self.used_after)


class AdmissionDenied(RuntimeError):
    def __init__(self, admission: Admission):
        super().__init__(f"Daily message limit reached ({admission.used_after}/{admission.cap})")
        self.admission = admission


@dataclass(frozen=True)
class UsageSnapshot:
    used: int
    date_key: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = _utc_now,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self._tz = tz or ZoneInfo(LEDGER_TIMEZONE)

    def date_key(self) -> str:
        return self._clock().astimezone(self._tz).date().isoformat()

    def _counter_filter(self, user_id: int, date_key: str):
        return (UsageCounter.user_id == user_id, UsageCounter.date_key == date_key)

    def _ensure_counter(self, user_id: int, date_key: str) -> None:
        existing = self.db.execute(
            select(UsageCounter.id).where(*self._counter_filter(user_id, date_key))
        ).first()
        if existing:
            return
        try:
            self.db.add(UsageCounter(user_id=user_id, date_key=date_key, count=0))
            self.db.commit()
        except IntegrityError:
            # Another request created today's row first.
            self.db.rollback()

    def check_and_consume(self, user_id: int, tier: PlanTier) -> Admission:
        cap = plan_limit(tier).daily_message_cap
        date_key = self.date_key()
        try:
            self._ensure_counter(user_id, date_key)
            result = self.db.execute(
                update(UsageCounter)
                .where(*self._counter_filter(user_id, date_key), UsageCounter.count < cap)
                .values(count=UsageCounter.count + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            allowed = result.rowcount == 1
            used = self.db.execute(
                select(UsageCounter.count).where(*self._counter_filter(user_id, date_key))
            ).scalar_one()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LedgerUnavailable(f"Usage ledger unavailable: {str(exc)[:200]}") from exc
        return Admission(allowed=allowed, used_after=int(used), cap=cap, date_key=date_key)

    def peek(self, user_id: int) -> UsageSnapshot:
        date_key = self.date_key()
        try:
            used = self.db.execute(
                select(UsageCounter.count).where(*self._counter_filter(user_id, date_key))
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise LedgerUnavailable(f"Usage ledger unavailable: {str(exc)[:200]}") from exc
        return UsageSnapshot(used=int(used or 0), date_key=date_key)

    def reset_today(self, user_id: int) -> None:
        self.db.query(UsageCounter).filter(*self._counter_filter(user_id, self.date_key())).delete()
        self.db.commit()
