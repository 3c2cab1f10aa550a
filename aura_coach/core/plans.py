from dataclasses import dataclass
from enum import Enum


class PlanTier(str, Enum):
    free = "free"
    plus = "plus"
    pro = "pro"


@dataclass(frozen=True)
class PlanLimit:
    tier: PlanTier
    daily_message_cap: int


# pro is capped high enough to be unlimited in practice while keeping the ledger math uniform.
PLAN_LIMITS: dict[PlanTier, PlanLimit] = {
    PlanTier.free: PlanLimit(PlanTier.free, 20),
    PlanTier.plus: PlanLimit(PlanTier.plus, 200),
    PlanTier.pro: PlanLimit(PlanTier.pro, 9999),
}


def resolve_tier(raw: object) -> PlanTier:
    """Map a stored tier value onto a known tier; anything unknown is treated as free."""
    if isinstance(raw, PlanTier):
        return raw
    try:
        return PlanTier(str(raw or "").strip().lower())
    except ValueError:
        return PlanTier.free


def plan_limit(tier: object) -> PlanLimit:
    return PLAN_LIMITS[resolve_tier(tier)]
