import asyncio

import pytest

from services.config import Settings
from services.credits import find_package
from services.errors import ConflictError, InsufficientCreditsError, InternalError, NotFoundError
from services.ledger import (
    InMemoryLedger,
    SQLLedger,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    get_ledger_backend,
)
from services.tiers import Tier

BACKENDS = ["memory", "sql"]


async def make_ledger(kind, tmp_path):
    if kind == "memory":
        ledger = InMemoryLedger(signup_bonus=6)
    else:
        ledger = SQLLedger(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", signup_bonus=6)
    await ledger.init()
    return ledger


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_account_lifecycle(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account(email="a@example.com")
        assert account.credits == 6
        assert account.tier == Tier.FREE

        account = await ledger.adjust_credits(account.id, -4)
        assert account.credits == 2

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.adjust_credits(account.id, -3)
        assert exc_info.value.current == 2
        assert (await ledger.get_account(account.id)).credits == 2

        account = await ledger.set_tier(account.id, Tier.PLUS)
        assert account.tier == Tier.PLUS

        with pytest.raises(NotFoundError):
            await ledger.get_account(9999)
        with pytest.raises(NotFoundError):
            await ledger.adjust_credits(9999, -1)
    finally:
        await ledger.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_record_status_is_terminal_once(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account()
        record_id = await ledger.create_record(account.id, 2, 1, "single")
        record = await ledger.get_record(record_id)
        assert record.status == STATUS_PENDING
        assert record.completed_at is None

        await ledger.set_record_status(record_id, STATUS_FAILED, "AI service error: boom")
        record = await ledger.get_record(record_id)
        assert record.status == STATUS_FAILED
        assert record.error_message == "AI service error: boom"
        assert record.completed_at is not None

        with pytest.raises(InternalError):
            await ledger.set_record_status(record_id, STATUS_COMPLETED)
        with pytest.raises(NotFoundError):
            await ledger.set_record_status(12345, STATUS_COMPLETED)
    finally:
        await ledger.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_records_listed_newest_first(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account()
        other = await ledger.create_account()
        ids = [await ledger.create_record(account.id, 2, 1, "single") for _ in range(3)]
        await ledger.create_record(other.id, 2, 1, "single")

        records = await ledger.list_records(account.id)
        assert [r.id for r in records] == list(reversed(ids))
        assert len(await ledger.list_records(account.id, limit=2)) == 2
    finally:
        await ledger.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_checkin_period_is_unique(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account()
        first = await ledger.add_checkin(account.id, "weekly", "2026-W42", 6)
        assert first is not None
        assert first.credits_awarded == 6

        assert await ledger.add_checkin(account.id, "weekly", "2026-W42", 6) is None
        assert (await ledger.get_account(account.id)).credits == 12

        assert await ledger.add_checkin(account.id, "weekly", "2026-W43", 6) is not None
        assert (await ledger.get_account(account.id)).credits == 18
        assert [c.period for c in await ledger.list_checkins(account.id)] == ["2026-W43", "2026-W42"]
    finally:
        await ledger.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_purchase_credits_and_upgrades(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account()
        purchase = await ledger.add_purchase(account.id, find_package("Business"), "wire transfer")
        assert purchase.total_credits == 780
        assert purchase.payment_method == "offline"

        account = await ledger.get_account(account.id)
        assert account.credits == 6 + 780
        assert account.tier == Tier.PRO

        purchases = await ledger.list_purchases(account.id)
        assert len(purchases) == 1
        assert purchases[0].admin_note == "wire transfer"
        assert purchases[0].package_price == 328

        with pytest.raises(NotFoundError):
            await ledger.add_purchase(9999, find_package("Starter"))
    finally:
        await ledger.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_concurrent_debits_never_go_negative(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        account = await ledger.create_account(credits=5)
        results = await asyncio.gather(
            *(ledger.adjust_credits(account.id, -2) for _ in range(6)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 2
        assert all(isinstance(r, InsufficientCreditsError) for r in results if isinstance(r, Exception))
        assert (await ledger.get_account(account.id)).credits == 1
    finally:
        await ledger.close()


def test_backend_selection():
    assert isinstance(get_ledger_backend(Settings(ledger_type="memory")), InMemoryLedger)
    assert isinstance(get_ledger_backend(Settings(ledger_type="sql", database_url="sqlite+aiosqlite:///:memory:")), SQLLedger)
    with pytest.raises(ValueError):
        get_ledger_backend(Settings(ledger_type="redis"))


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_duplicate_email_is_a_conflict(kind, tmp_path):
    ledger = await make_ledger(kind, tmp_path)
    try:
        await ledger.create_account(email="dup@example.com")
        with pytest.raises(ConflictError):
            await ledger.create_account(email="dup@example.com")

        # accounts without an email never collide
        first = await ledger.create_account()
        second = await ledger.create_account()
        assert first.id != second.id
    finally:
        await ledger.close()
