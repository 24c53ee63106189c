"""
Account tier policy: garment limits, check-in cadence and generation pricing.

Everything here is pure. The orchestrator prices a request with these helpers
before it touches the ledger.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional


class Tier(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


class Cadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


MODE_SINGLE = "single"
MODE_BATCH = "batch"


@dataclass(frozen=True)
class TierLimits:
    max_garments: int
    checkin_cadence: Cadence
    single_cost: int
    batch_cost: int
    can_batch: bool


DEFAULT_TIER_LIMITS: Dict[Tier, TierLimits] = {
    Tier.FREE: TierLimits(max_garments=1, checkin_cadence=Cadence.WEEKLY, single_cost=2, batch_cost=2, can_batch=False),
    # Plus may upload 3 items but is still billed per single generation.
    Tier.PLUS: TierLimits(max_garments=3, checkin_cadence=Cadence.DAILY, single_cost=2, batch_cost=2, can_batch=False),
    Tier.PRO: TierLimits(max_garments=10, checkin_cadence=Cadence.DAILY, single_cost=2, batch_cost=20, can_batch=True),
}

_DISPLAY_NAMES = {Tier.FREE: "Free", Tier.PLUS: "Plus", Tier.PRO: "Pro"}
_HIERARCHY = [Tier.FREE, Tier.PLUS, Tier.PRO]


def parse_tier(value) -> Tier:
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown tier: {value!r}")


def get_tier_limits(tier: Tier, table: Optional[Mapping[Tier, TierLimits]] = None) -> TierLimits:
    limits = (table or DEFAULT_TIER_LIMITS).get(tier)
    return limits if limits is not None else DEFAULT_TIER_LIMITS[tier]


def is_batch(limits: TierLimits, garment_count: int) -> bool:
    return limits.can_batch and garment_count > 1


def required_credits(tier: Tier, garment_count: int, table: Optional[Mapping[Tier, TierLimits]] = None) -> int:
    limits = get_tier_limits(tier, table)
    return limits.batch_cost if is_batch(limits, garment_count) else limits.single_cost


def resolve_mode(tier: Tier, garment_count: int, table: Optional[Mapping[Tier, TierLimits]] = None) -> str:
    return MODE_BATCH if is_batch(get_tier_limits(tier, table), garment_count) else MODE_SINGLE


def display_name(tier: Tier) -> str:
    return _DISPLAY_NAMES[tier]


def next_tier(tier: Tier) -> Optional[Tier]:
    idx = _HIERARCHY.index(tier)
    if idx == len(_HIERARCHY) - 1:
        return None
    return _HIERARCHY[idx + 1]
