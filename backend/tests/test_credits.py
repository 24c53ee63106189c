from datetime import datetime, timedelta, timezone

import pytest

from services import credits
from services.errors import ConflictError, NotFoundError, ValidationError
from services.ledger import STATUS_COMPLETED, STATUS_FAILED
from services.tiers import Cadence, Tier


def test_daily_period_key():
    now = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
    assert credits.checkin_period(Cadence.DAILY, now) == "2026-10-17"


@pytest.mark.parametrize(
    "moment,expected",
    [
        (datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc), "2026-W01"),
        (datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc), "2026-W43"),
        (datetime(2025, 1, 5, 12, 0, tzinfo=timezone.utc), "2025-W02"),
    ],
)
def test_weekly_period_key(moment, expected):
    assert credits.checkin_period(Cadence.WEEKLY, moment) == expected


def test_package_catalogue():
    packages = credits.list_packages()
    assert [p.name for p in packages] == ["Starter", "Basic", "Popular", "Professional", "Business", "Enterprise"]
    for p in packages:
        assert p.base_credits + p.bonus_credits == p.total_credits
    assert credits.find_package("enterprise").total_credits == 1700
    assert credits.find_package("nope") is None


@pytest.mark.asyncio
async def test_check_in_awards_once_per_period(settings, ledger):
    account = await ledger.create_account(tier=Tier.PLUS, credits=0)
    now = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)

    result = await credits.check_in(ledger, settings, account.id, now=now)
    assert result.credits_awarded == 6
    assert result.cadence == "daily"
    assert result.period == "2026-10-17"
    assert result.balance == 6

    with pytest.raises(ConflictError) as exc_info:
        await credits.check_in(ledger, settings, account.id, now=now)
    assert "today" in exc_info.value.message
    assert (await ledger.get_account(account.id)).credits == 6

    status = await credits.checkin_status(ledger, settings, account.id, now=now)
    assert status.can_check_in is False
    assert status.next_checkin_time == now + timedelta(days=1)

    tomorrow = now + timedelta(days=1)
    assert (await credits.checkin_status(ledger, settings, account.id, now=tomorrow)).can_check_in is True
    assert (await credits.check_in(ledger, settings, account.id, now=tomorrow)).balance == 12


@pytest.mark.asyncio
async def test_free_tier_checks_in_weekly(settings, ledger):
    account = await ledger.create_account(tier=Tier.FREE)
    monday = datetime(2026, 10, 12, 10, 0, tzinfo=timezone.utc)

    result = await credits.check_in(ledger, settings, account.id, now=monday)
    assert result.cadence == "weekly"
    assert result.period.startswith("2026-W")

    with pytest.raises(ConflictError) as exc_info:
        await credits.check_in(ledger, settings, account.id, now=monday + timedelta(days=2))
    assert "this week" in exc_info.value.message

    status = await credits.checkin_status(ledger, settings, account.id, now=monday)
    assert status.next_checkin_time == monday + timedelta(days=7)


@pytest.mark.asyncio
async def test_check_in_unknown_account(settings, ledger):
    with pytest.raises(NotFoundError):
        await credits.check_in(ledger, settings, 77)


@pytest.mark.asyncio
async def test_grant_package(ledger):
    account = await ledger.create_account()

    purchase = await credits.grant_package(ledger, account.id, "Basic", "paid in store")
    assert purchase.total_credits == 65

    account = await ledger.get_account(account.id)
    assert account.credits == 71
    assert account.tier == Tier.PRO

    with pytest.raises(ValidationError):
        await credits.grant_package(ledger, account.id, "Platinum")
    assert (await ledger.get_account(account.id)).credits == 71


@pytest.mark.asyncio
async def test_history_kinds(ledger):
    account = await ledger.create_account()
    await ledger.create_record(account.id, 2, 1, "single")
    await ledger.add_checkin(account.id, "weekly", "2026-W42", 6)

    assert len(await credits.history(ledger, account.id, "generation")) == 1
    assert len(await credits.history(ledger, account.id, "checkin")) == 1
    assert await credits.history(ledger, account.id, "purchase") == []
    with pytest.raises(ValidationError):
        await credits.history(ledger, account.id, "refund")


@pytest.mark.asyncio
async def test_stats_exclude_refunded_generations(ledger):
    account = await ledger.create_account(tier=Tier.PRO, credits=100)
    ok = await ledger.create_record(account.id, 20, 3, "batch")
    failed = await ledger.create_record(account.id, 2, 1, "single")
    await ledger.create_record(account.id, 2, 1, "single")
    await ledger.set_record_status(ok, STATUS_COMPLETED)
    await ledger.set_record_status(failed, STATUS_FAILED, "boom")
    await ledger.add_checkin(account.id, "daily", "2026-10-17", 6)
    await credits.grant_package(ledger, account.id, "Starter")

    stats = await credits.credit_stats(ledger, account.id)
    assert stats == {
        "totalGenerations": 3,
        "successfulGenerations": 1,
        "failedGenerations": 1,
        "totalCreditsUsed": 20,
        "totalCheckins": 1,
        "checkinCredits": 6,
        "totalPurchases": 1,
        "purchasedCredits": 12,
        "currentCredits": 118,
    }


def test_to_camel_dict():
    package = credits.find_package("Starter")
    assert credits.to_camel_dict(package) == {
        "name": "Starter",
        "price": 6,
        "baseCredits": 10,
        "bonusCredits": 2,
        "totalCredits": 12,
        "description": "Try it out",
    }
