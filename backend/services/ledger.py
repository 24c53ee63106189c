"""
Ledger abstraction: account balances plus the append-only history tables
(generations, check-ins, credit purchases).

Two backends share one interface:
- InMemoryLedger (tests and local development)
- SQLLedger (SQLAlchemy async Core; SQLite via aiosqlite by default, any async driver works)

Every mutation that touches a balance is atomic: a debit is a conditional
decrement that refuses to go below zero instead of a read-then-write.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from services.config import Settings
from services.errors import ConflictError, InsufficientCreditsError, InternalError, NotFoundError
from services.tiers import Tier, parse_tier

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    email: Optional[str]
    tier: Tier
    credits: int
    created_at: datetime
    updated_at: datetime


@dataclass
class GenerationRecord:
    id: int
    account_id: int
    credits_used: int
    garment_count: int
    mode: str
    status: str
    error_message: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime] = None


@dataclass
class CheckinRecord:
    id: int
    account_id: int
    cadence: str
    period: str
    credits_awarded: int
    created_at: datetime


@dataclass(frozen=True)
class CreditPackage:
    name: str
    price: float
    base_credits: int
    bonus_credits: int
    total_credits: int
    description: str


@dataclass
class PurchaseRecord:
    id: int
    account_id: int
    package_name: str
    package_price: float
    base_credits: int
    bonus_credits: int
    total_credits: int
    payment_method: str
    transaction_status: str
    admin_note: str
    created_at: datetime


class LedgerBackend:
    """Abstract base class for ledger backends."""

    async def init(self) -> None:
        """Prepare storage (create tables etc.). Safe to call more than once."""

    async def close(self) -> None:
        """Release connections."""

    async def create_account(self, email: Optional[str] = None, tier: Tier = Tier.FREE, credits: Optional[int] = None) -> Account:
        raise NotImplementedError

    async def get_account(self, account_id: int) -> Account:
        """Raises NotFoundError if the account does not exist."""
        raise NotImplementedError

    async def adjust_credits(self, account_id: int, delta: int) -> Account:
        """
        Atomically add delta (negative to debit) to the balance.
        Raises InsufficientCreditsError if the balance would go negative, NotFoundError if absent.
        """
        raise NotImplementedError

    async def set_tier(self, account_id: int, tier: Tier) -> Account:
        raise NotImplementedError

    async def create_record(self, account_id: int, cost: int, garment_count: int, mode: str) -> int:
        """Append a pending generation record and return its id."""
        raise NotImplementedError

    async def set_record_status(self, record_id: int, status: str, error_text: Optional[str] = None) -> None:
        """
        Move a pending record to a terminal status. Raises NotFoundError for unknown ids
        and InternalError if the record is already terminal.
        """
        raise NotImplementedError

    async def get_record(self, record_id: int) -> GenerationRecord:
        raise NotImplementedError

    async def list_records(self, account_id: int, limit: Optional[int] = None) -> List[GenerationRecord]:
        raise NotImplementedError

    async def add_checkin(self, account_id: int, cadence: str, period: str, amount: int) -> Optional[CheckinRecord]:
        """Credit the account and record the check-in together. Returns None if the period is already used."""
        raise NotImplementedError

    async def list_checkins(self, account_id: int, limit: Optional[int] = None) -> List[CheckinRecord]:
        raise NotImplementedError

    async def add_purchase(self, account_id: int, package: CreditPackage, note: str = "") -> PurchaseRecord:
        """Credit the package total, upgrade the account to pro and record the purchase together."""
        raise NotImplementedError

    async def list_purchases(self, account_id: int, limit: Optional[int] = None) -> List[PurchaseRecord]:
        raise NotImplementedError


def _check_status(status: str) -> None:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Invalid terminal status: {status!r}")


def _newest_first(items: list, limit: Optional[int]) -> list:
    ordered = sorted(items, key=lambda r: (r.created_at, r.id), reverse=True)
    return ordered[:limit] if limit else ordered


class InMemoryLedger(LedgerBackend):
    """Process-local ledger. One asyncio.Lock serializes every mutation."""

    def __init__(self, signup_bonus: int = 6):
        self.signup_bonus = signup_bonus
        self._lock = asyncio.Lock()
        self._accounts: Dict[int, Account] = {}
        self._records: Dict[int, GenerationRecord] = {}
        self._checkins: List[CheckinRecord] = []
        self._purchases: List[PurchaseRecord] = []
        self._account_ids = itertools.count(1)
        self._record_ids = itertools.count(1)
        self._checkin_ids = itertools.count(1)
        self._purchase_ids = itertools.count(1)

    def _account(self, account_id: int) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found.")
        return account

    async def create_account(self, email=None, tier=Tier.FREE, credits=None):
        async with self._lock:
            if email is not None and any(a.email == email for a in self._accounts.values()):
                raise ConflictError(f"An account with email {email} already exists.")
            now = _now()
            account = Account(
                id=next(self._account_ids),
                email=email,
                tier=parse_tier(tier),
                credits=self.signup_bonus if credits is None else int(credits),
                created_at=now,
                updated_at=now,
            )
            self._accounts[account.id] = account
            return replace(account)

    async def get_account(self, account_id):
        return replace(self._account(account_id))

    async def adjust_credits(self, account_id, delta):
        async with self._lock:
            account = self._account(account_id)
            if account.credits + delta < 0:
                raise InsufficientCreditsError(required=-delta, current=account.credits)
            account.credits += delta
            account.updated_at = _now()
            return replace(account)

    async def set_tier(self, account_id, tier):
        async with self._lock:
            account = self._account(account_id)
            account.tier = parse_tier(tier)
            account.updated_at = _now()
            return replace(account)

    async def create_record(self, account_id, cost, garment_count, mode):
        async with self._lock:
            self._account(account_id)
            record = GenerationRecord(
                id=next(self._record_ids),
                account_id=account_id,
                credits_used=cost,
                garment_count=garment_count,
                mode=mode,
                status=STATUS_PENDING,
                error_message=None,
                created_at=_now(),
            )
            self._records[record.id] = record
            return record.id

    async def set_record_status(self, record_id, status, error_text=None):
        _check_status(status)
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise NotFoundError(f"Generation record {record_id} not found.")
            if record.status in TERMINAL_STATUSES:
                raise InternalError(f"Generation record {record_id} is already {record.status}.")
            record.status = status
            record.completed_at = _now()
            if error_text:
                record.error_message = error_text

    async def get_record(self, record_id):
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Generation record {record_id} not found.")
        return replace(record)

    async def list_records(self, account_id, limit=None):
        items = [replace(r) for r in self._records.values() if r.account_id == account_id]
        return _newest_first(items, limit)

    async def add_checkin(self, account_id, cadence, period, amount):
        async with self._lock:
            account = self._account(account_id)
            if any(c.account_id == account_id and c.period == period for c in self._checkins):
                return None
            now = _now()
            checkin = CheckinRecord(
                id=next(self._checkin_ids),
                account_id=account_id,
                cadence=cadence,
                period=period,
                credits_awarded=amount,
                created_at=now,
            )
            self._checkins.append(checkin)
            account.credits += amount
            account.updated_at = now
            return replace(checkin)

    async def list_checkins(self, account_id, limit=None):
        items = [replace(c) for c in self._checkins if c.account_id == account_id]
        return _newest_first(items, limit)

    async def add_purchase(self, account_id, package, note=""):
        async with self._lock:
            account = self._account(account_id)
            now = _now()
            purchase = PurchaseRecord(
                id=next(self._purchase_ids),
                account_id=account_id,
                package_name=package.name,
                package_price=package.price,
                base_credits=package.base_credits,
                bonus_credits=package.bonus_credits,
                total_credits=package.total_credits,
                payment_method="offline",
                transaction_status="completed",
                admin_note=note or "",
                created_at=now,
            )
            self._purchases.append(purchase)
            account.credits += package.total_credits
            account.tier = Tier.PRO
            account.updated_at = now
            return replace(purchase)

    async def list_purchases(self, account_id, limit=None):
        items = [replace(p) for p in self._purchases if p.account_id == account_id]
        return _newest_first(items, limit)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=True),
    Column("user_level", String(16), nullable=False, default=Tier.FREE.value),
    Column("credits", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
)

generation_history = Table(
    "generation_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("credits_used", Integer, nullable=False),
    Column("clothing_count", Integer, nullable=False, default=1),
    Column("generation_type", String(16), nullable=False, default="single"),
    Column("status", String(16), nullable=False, default=STATUS_PENDING),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

user_checkins = Table(
    "user_checkins",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("checkin_type", String(16), nullable=False),
    Column("checkin_period", String(16), nullable=False),
    Column("credits_awarded", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "checkin_period", name="uq_checkin_period"),
)

credit_purchases = Table(
    "credit_purchases",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("package_name", String(64), nullable=False),
    Column("package_price", Numeric(10, 2), nullable=False),
    Column("base_credits", Integer, nullable=False),
    Column("bonus_credits", Integer, nullable=False, default=0),
    Column("total_credits", Integer, nullable=False),
    Column("payment_method", String(32), nullable=False, default="offline"),
    Column("transaction_status", String(32), nullable=False, default="completed"),
    Column("admin_note", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def _row_to_account(row) -> Account:
    m = row._mapping
    return Account(
        id=m["id"],
        email=m["email"],
        tier=parse_tier(m["user_level"]),
        credits=m["credits"],
        created_at=m["created_at"],
        updated_at=m["updated_at"],
    )


def _row_to_record(row) -> GenerationRecord:
    m = row._mapping
    return GenerationRecord(
        id=m["id"],
        account_id=m["user_id"],
        credits_used=m["credits_used"],
        garment_count=m["clothing_count"],
        mode=m["generation_type"],
        status=m["status"],
        error_message=m["error_message"],
        created_at=m["created_at"],
        completed_at=m["completed_at"],
    )


def _row_to_checkin(row) -> CheckinRecord:
    m = row._mapping
    return CheckinRecord(
        id=m["id"],
        account_id=m["user_id"],
        cadence=m["checkin_type"],
        period=m["checkin_period"],
        credits_awarded=m["credits_awarded"],
        created_at=m["created_at"],
    )


def _row_to_purchase(row) -> PurchaseRecord:
    m = row._mapping
    return PurchaseRecord(
        id=m["id"],
        account_id=m["user_id"],
        package_name=m["package_name"],
        package_price=float(m["package_price"]),
        base_credits=m["base_credits"],
        bonus_credits=m["bonus_credits"],
        total_credits=m["total_credits"],
        payment_method=m["payment_method"],
        transaction_status=m["transaction_status"],
        admin_note=m["admin_note"] or "",
        created_at=m["created_at"],
    )


class SQLLedger(LedgerBackend):
    """SQLAlchemy async Core ledger."""

    def __init__(self, database_url: str, signup_bonus: int = 6, engine: Optional[AsyncEngine] = None):
        self.database_url = database_url
        self.signup_bonus = signup_bonus
        self.engine = engine or create_async_engine(database_url)
        logger.info(f"Initialized SQL ledger at: {self.engine.url.render_as_string(hide_password=True)}")

    async def init(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def _fetch_account(self, conn, account_id: int) -> Account:
        row = (await conn.execute(select(users).where(users.c.id == account_id))).first()
        if row is None:
            raise NotFoundError(f"Account {account_id} not found.")
        return _row_to_account(row)

    async def create_account(self, email=None, tier=Tier.FREE, credits=None):
        now = _now()
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    insert(users).values(
                        email=email,
                        user_level=parse_tier(tier).value,
                        credits=self.signup_bonus if credits is None else int(credits),
                        created_at=now,
                        updated_at=now,
                    )
                )
                return await self._fetch_account(conn, result.inserted_primary_key[0])
        except IntegrityError:
            raise ConflictError(f"An account with email {email} already exists.")

    async def get_account(self, account_id):
        async with self.engine.connect() as conn:
            return await self._fetch_account(conn, account_id)

    async def adjust_credits(self, account_id, delta):
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(users)
                .where(users.c.id == account_id, users.c.credits + delta >= 0)
                .values(credits=users.c.credits + delta, updated_at=_now())
            )
            if result.rowcount == 0:
                current = await self._fetch_account(conn, account_id)
                raise InsufficientCreditsError(required=-delta, current=current.credits)
            return await self._fetch_account(conn, account_id)

    async def set_tier(self, account_id, tier):
        async with self.engine.begin() as conn:
            await conn.execute(
                update(users).where(users.c.id == account_id).values(user_level=parse_tier(tier).value, updated_at=_now())
            )
            return await self._fetch_account(conn, account_id)

    async def create_record(self, account_id, cost, garment_count, mode):
        async with self.engine.begin() as conn:
            result = await conn.execute(
                insert(generation_history).values(
                    user_id=account_id,
                    credits_used=cost,
                    clothing_count=garment_count,
                    generation_type=mode,
                    status=STATUS_PENDING,
                    created_at=_now(),
                )
            )
            return result.inserted_primary_key[0]

    async def set_record_status(self, record_id, status, error_text=None):
        _check_status(status)
        values = {"status": status, "completed_at": _now()}
        if error_text:
            values["error_message"] = error_text
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(generation_history)
                .where(generation_history.c.id == record_id, generation_history.c.status == STATUS_PENDING)
                .values(**values)
            )
            if result.rowcount == 0:
                row = (await conn.execute(
                    select(generation_history.c.status).where(generation_history.c.id == record_id)
                )).first()
                if row is None:
                    raise NotFoundError(f"Generation record {record_id} not found.")
                raise InternalError(f"Generation record {record_id} is already {row.status}.")

    async def get_record(self, record_id):
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(generation_history).where(generation_history.c.id == record_id))).first()
        if row is None:
            raise NotFoundError(f"Generation record {record_id} not found.")
        return _row_to_record(row)

    async def _list(self, table, account_id, limit, convert):
        stmt = (
            select(table)
            .where(table.c.user_id == account_id)
            .order_by(table.c.created_at.desc(), table.c.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [convert(r) for r in rows]

    async def list_records(self, account_id, limit=None):
        return await self._list(generation_history, account_id, limit, _row_to_record)

    async def add_checkin(self, account_id, cadence, period, amount):
        now = _now()
        try:
            async with self.engine.begin() as conn:
                credited = await conn.execute(
                    update(users)
                    .where(users.c.id == account_id)
                    .values(credits=users.c.credits + amount, updated_at=now)
                )
                if credited.rowcount == 0:
                    raise NotFoundError(f"Account {account_id} not found.")
                result = await conn.execute(
                    insert(user_checkins).values(
                        user_id=account_id,
                        checkin_type=cadence,
                        checkin_period=period,
                        credits_awarded=amount,
                        created_at=now,
                    )
                )
                checkin_id = result.inserted_primary_key[0]
        except IntegrityError:
            logger.info(f"Check-in for account {account_id} already recorded for period {period}")
            return None
        return CheckinRecord(
            id=checkin_id,
            account_id=account_id,
            cadence=cadence,
            period=period,
            credits_awarded=amount,
            created_at=now,
        )

    async def list_checkins(self, account_id, limit=None):
        return await self._list(user_checkins, account_id, limit, _row_to_checkin)

    async def add_purchase(self, account_id, package, note=""):
        now = _now()
        async with self.engine.begin() as conn:
            credited = await conn.execute(
                update(users)
                .where(users.c.id == account_id)
                .values(credits=users.c.credits + package.total_credits, user_level=Tier.PRO.value, updated_at=now)
            )
            if credited.rowcount == 0:
                raise NotFoundError(f"Account {account_id} not found.")
            result = await conn.execute(
                insert(credit_purchases).values(
                    user_id=account_id,
                    package_name=package.name,
                    package_price=package.price,
                    base_credits=package.base_credits,
                    bonus_credits=package.bonus_credits,
                    total_credits=package.total_credits,
                    payment_method="offline",
                    transaction_status="completed",
                    admin_note=note or "",
                    created_at=now,
                )
            )
            purchase_id = result.inserted_primary_key[0]
        return PurchaseRecord(
            id=purchase_id,
            account_id=account_id,
            package_name=package.name,
            package_price=package.price,
            base_credits=package.base_credits,
            bonus_credits=package.bonus_credits,
            total_credits=package.total_credits,
            payment_method="offline",
            transaction_status="completed",
            admin_note=note or "",
            created_at=now,
        )

    async def list_purchases(self, account_id, limit=None):
        return await self._list(credit_purchases, account_id, limit, _row_to_purchase)


def get_ledger_backend(settings: Settings) -> LedgerBackend:
    """Pick the ledger backend from settings.ledger_type ('memory' or 'sql')."""
    ledger_type = (settings.ledger_type or "memory").lower()
    if ledger_type == "memory":
        logger.info("Using in-memory ledger (balances are lost on restart)")
        return InMemoryLedger(signup_bonus=settings.signup_bonus_credits)
    if ledger_type == "sql":
        return SQLLedger(settings.database_url, signup_bonus=settings.signup_bonus_credits)
    raise ValueError(f"Unknown LEDGER_TYPE: {settings.ledger_type!r} (expected 'memory' or 'sql')")
