"""
Credit top-ups and account history: periodic check-ins, the package catalogue,
operator grants for offline payments, history listings and usage stats.
"""
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from services.config import Settings
from services.errors import ConflictError, ValidationError
from services.ledger import STATUS_COMPLETED, STATUS_FAILED, CreditPackage, LedgerBackend, PurchaseRecord
from services.tiers import Cadence

logger = logging.getLogger(__name__)

CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage("Starter", 6, 10, 2, 12, "Try it out"),
    CreditPackage("Basic", 30, 50, 15, 65, "Light use"),
    CreditPackage("Popular", 98, 170, 50, 220, "Regular use"),
    CreditPackage("Professional", 198, 350, 100, 450, "Heavy use"),
    CreditPackage("Business", 328, 600, 180, 780, "Business accounts"),
    CreditPackage("Enterprise", 648, 1300, 400, 1700, "Enterprise accounts"),
]

HISTORY_KINDS = ("generation", "checkin", "purchase")


@dataclass
class CheckinResult:
    credits_awarded: int
    cadence: str
    period: str
    balance: int


@dataclass
class CheckinStatus:
    can_check_in: bool
    cadence: str
    period: str
    next_checkin_time: Optional[datetime]


def week_number(moment: datetime) -> int:
    jan1 = moment.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    past_days = (moment - jan1).total_seconds() / 86400
    # Sunday = 0
    jan1_weekday = (jan1.weekday() + 1) % 7
    return math.ceil((past_days + jan1_weekday + 1) / 7)


def checkin_period(cadence: Cadence, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if Cadence(cadence) == Cadence.WEEKLY:
        return f"{now.year}-W{week_number(now):02d}"
    return now.strftime("%Y-%m-%d")


def _period_word(cadence: Cadence) -> str:
    return "this week" if cadence == Cadence.WEEKLY else "today"


async def check_in(ledger: LedgerBackend, settings: Settings, account_id: int, now: Optional[datetime] = None) -> CheckinResult:
    account = await ledger.get_account(account_id)
    cadence = settings.limits_for(account.tier).checkin_cadence
    period = checkin_period(cadence, now)

    record = await ledger.add_checkin(account_id, cadence.value, period, settings.checkin_credits)
    if record is None:
        raise ConflictError(f"You have already checked in {_period_word(cadence)}.")

    account = await ledger.get_account(account_id)
    logger.info(f"Account {account_id} checked in for {period} (+{record.credits_awarded})")
    return CheckinResult(
        credits_awarded=record.credits_awarded,
        cadence=cadence.value,
        period=period,
        balance=account.credits,
    )


async def checkin_status(ledger: LedgerBackend, settings: Settings, account_id: int, now: Optional[datetime] = None) -> CheckinStatus:
    now = now or datetime.now(timezone.utc)
    account = await ledger.get_account(account_id)
    cadence = settings.limits_for(account.tier).checkin_cadence
    period = checkin_period(cadence, now)

    checkins = await ledger.list_checkins(account_id)
    used = any(c.period == period for c in checkins)
    next_time = None
    if used:
        next_time = now + (timedelta(days=7) if cadence == Cadence.WEEKLY else timedelta(days=1))
    return CheckinStatus(can_check_in=not used, cadence=cadence.value, period=period, next_checkin_time=next_time)


def list_packages() -> List[CreditPackage]:
    return list(CREDIT_PACKAGES)


def find_package(name: str) -> Optional[CreditPackage]:
    wanted = (name or "").strip().lower()
    for package in CREDIT_PACKAGES:
        if package.name.lower() == wanted:
            return package
    return None


async def grant_package(ledger: LedgerBackend, account_id: int, package_name: str, note: str = "") -> PurchaseRecord:
    """Credit a package paid for offline and upgrade the account to pro."""
    package = find_package(package_name)
    if package is None:
        raise ValidationError(
            f"Unknown credit package: {package_name!r}.",
            details=[{"code": "VALIDATION_ERROR", "field": "packageName", "value": package_name}],
        )
    await ledger.get_account(account_id)
    purchase = await ledger.add_purchase(account_id, package, note or "")
    logger.info(f"Granted package {package.name} (+{package.total_credits}) to account {account_id}")
    return purchase


async def history(ledger: LedgerBackend, account_id: int, kind: str = "generation", limit: int = 30) -> List[Any]:
    if kind not in HISTORY_KINDS:
        raise ValidationError(
            f"Unknown history type: {kind!r}.",
            details=[{"code": "VALIDATION_ERROR", "field": "type", "value": kind}],
        )
    await ledger.get_account(account_id)
    if kind == "generation":
        return await ledger.list_records(account_id, limit)
    if kind == "checkin":
        return await ledger.list_checkins(account_id, limit)
    return await ledger.list_purchases(account_id, limit)


async def credit_stats(ledger: LedgerBackend, account_id: int) -> Dict[str, int]:
    account = await ledger.get_account(account_id)
    records = await ledger.list_records(account_id)
    checkins = await ledger.list_checkins(account_id)
    purchases = await ledger.list_purchases(account_id)

    completed = [r for r in records if r.status == STATUS_COMPLETED]
    return {
        "totalGenerations": len(records),
        "successfulGenerations": len(completed),
        "failedGenerations": sum(1 for r in records if r.status == STATUS_FAILED),
        # failed generations were refunded
        "totalCreditsUsed": sum(r.credits_used for r in completed),
        "totalCheckins": len(checkins),
        "checkinCredits": sum(c.credits_awarded for c in checkins),
        "totalPurchases": len(purchases),
        "purchasedCredits": sum(p.total_credits for p in purchases),
        "currentCredits": account.credits,
    }


def to_camel_dict(item) -> Dict[str, Any]:
    """Dataclass -> JSON-friendly dict with camelCase keys."""
    out = {}
    for key, value in asdict(item).items():
        head, *rest = key.split("_")
        name = head + "".join(p.title() for p in rest)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        out[name] = value
    return out
