"""PostgreSQL-backed payment repository (asyncpg)."""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from .exceptions import CardNotFoundError, InvalidMerchantError, PersistenceUnavailableError
from .models import (
    CardType,
    Merchant,
    SpendingCard,
    Transaction,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    User,
)
from .repository import (
    HourlyBucket,
    MerchantBucket,
    MonthlyBucket,
    PaymentAggregate,
    PaymentRepository,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cardpay_users (
    user_id TEXT PRIMARY KEY,
    wallet_address TEXT,
    encrypted_key_handle TEXT,
    daily_limit NUMERIC(78, 18) NOT NULL,
    monthly_limit NUMERIC(78, 18) NOT NULL,
    email TEXT,
    full_name TEXT
);

CREATE TABLE IF NOT EXISTS cardpay_cards (
    card_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    card_type TEXT NOT NULL DEFAULT 'virtual',
    last4 TEXT NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_expired BOOLEAN NOT NULL DEFAULT FALSE,
    blocked_at TIMESTAMPTZ,
    blocked_reason TEXT,
    daily_spent NUMERIC(78, 18) NOT NULL DEFAULT 0 CHECK (daily_spent >= 0),
    monthly_spent NUMERIC(78, 18) NOT NULL DEFAULT 0 CHECK (monthly_spent >= 0),
    last_reset_date TIMESTAMPTZ NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 0,
    last_used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS cardpay_merchants (
    merchant_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    total_transactions INTEGER NOT NULL DEFAULT 0,
    total_volume NUMERIC(78, 18) NOT NULL DEFAULT 0,
    webhook_url TEXT
);

CREATE TABLE IF NOT EXISTS cardpay_transactions (
    tx_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount NUMERIC(78, 18) NOT NULL,
    currency TEXT NOT NULL,
    chain_key TEXT NOT NULL,
    chain_id BIGINT NOT NULL,
    chain_name TEXT NOT NULL,
    merchant_id TEXT NOT NULL,
    merchant_name TEXT NOT NULL,
    from_address TEXT NOT NULL,
    to_address TEXT NOT NULL,
    status TEXT NOT NULL,
    tx_hash TEXT,
    block_number BIGINT,
    fee_paid NUMERIC(78, 18),
    total_debited NUMERIC(78, 18),
    explorer_url TEXT,
    failure_reason TEXT,
    failure_code TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    refunded_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_cardpay_tx_user_created
    ON cardpay_transactions (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_cardpay_tx_user_status_completed
    ON cardpay_transactions (user_id, status, completed_at);
CREATE INDEX IF NOT EXISTS idx_cardpay_tx_pending
    ON cardpay_transactions (created_at) WHERE status = 'pending';
"""

_TX_COLUMNS = (
    "tx_id", "user_id", "card_id", "type", "amount", "currency", "chain_key",
    "chain_id", "chain_name", "merchant_id", "merchant_name", "from_address",
    "to_address", "status", "tx_hash", "block_number", "fee_paid",
    "total_debited", "explorer_url", "failure_reason", "failure_code",
    "metadata", "created_at", "updated_at", "completed_at", "refunded_at",
)


class PostgresPaymentRepository(PaymentRepository):
    """asyncpg implementation of PaymentRepository.

    Spend and merchant counters are updated with ``SET x = x + $n`` so
    concurrent settlements cannot lose increments.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            dsn = self._dsn
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            try:
                self._pool = await asyncpg.create_pool(
                    dsn, min_size=self._min_size, max_size=self._max_size
                )
            except (OSError, asyncpg.PostgresError) as e:
                raise PersistenceUnavailableError(f"Database unavailable: {e}")
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Pooled connection; driver and socket failures become PersistenceUnavailableError."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceUnavailableError(f"Database error: {e}")

    async def ensure_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute(SCHEMA)

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _card_from_row(row: Any) -> SpendingCard:
        return SpendingCard(
            card_id=row["card_id"],
            user_id=row["user_id"],
            card_type=CardType(row["card_type"]),
            last4=row["last4"],
            is_active=row["is_active"],
            is_expired=row["is_expired"],
            blocked_at=row["blocked_at"],
            blocked_reason=row["blocked_reason"],
            daily_spent=Decimal(row["daily_spent"]),
            monthly_spent=Decimal(row["monthly_spent"]),
            last_reset_date=row["last_reset_date"],
            usage_count=row["usage_count"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _user_from_row(row: Any) -> User:
        return User(
            user_id=row["user_id"],
            wallet_address=row["wallet_address"],
            encrypted_key_handle=row["encrypted_key_handle"],
            daily_limit=Decimal(row["daily_limit"]),
            monthly_limit=Decimal(row["monthly_limit"]),
            email=row["email"],
            full_name=row["full_name"],
        )

    @staticmethod
    def _merchant_from_row(row: Any) -> Merchant:
        return Merchant(
            merchant_id=row["merchant_id"],
            name=row["name"],
            wallet_address=row["wallet_address"],
            is_active=row["is_active"],
            total_transactions=row["total_transactions"],
            total_volume=Decimal(row["total_volume"]),
            webhook_url=row["webhook_url"],
        )

    @staticmethod
    def _tx_from_row(row: Any) -> Transaction:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Transaction(
            tx_id=row["tx_id"],
            user_id=row["user_id"],
            card_id=row["card_id"],
            type=TransactionType(row["type"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            chain_key=row["chain_key"],
            chain_id=row["chain_id"],
            chain_name=row["chain_name"],
            merchant_id=row["merchant_id"],
            merchant_name=row["merchant_name"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            status=TransactionStatus(row["status"]),
            tx_hash=row["tx_hash"],
            block_number=row["block_number"],
            fee_paid=Decimal(row["fee_paid"]) if row["fee_paid"] is not None else None,
            total_debited=(
                Decimal(row["total_debited"]) if row["total_debited"] is not None else None
            ),
            explorer_url=row["explorer_url"],
            failure_reason=row["failure_reason"],
            failure_code=row["failure_code"],
            metadata=metadata or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            refunded_at=row["refunded_at"],
        )

    @staticmethod
    def _tx_values(tx: Transaction) -> list:
        return [
            tx.tx_id, tx.user_id, tx.card_id, tx.type.value, tx.amount, tx.currency,
            tx.chain_key, tx.chain_id, tx.chain_name, tx.merchant_id,
            tx.merchant_name, tx.from_address, tx.to_address, tx.status.value,
            tx.tx_hash, tx.block_number, tx.fee_paid, tx.total_debited,
            tx.explorer_url, tx.failure_reason, tx.failure_code,
            json.dumps(tx.metadata, default=str), tx.created_at, tx.updated_at,
            tx.completed_at, tx.refunded_at,
        ]

    # =========================================================================
    # Cards / users / merchants
    # =========================================================================

    async def get_card(self, card_id: str) -> Optional[SpendingCard]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM cardpay_cards WHERE card_id = $1", card_id)
        return self._card_from_row(row) if row else None

    async def save_card(self, card: SpendingCard) -> SpendingCard:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO cardpay_cards (
                    card_id, user_id, card_type, last4, is_active, is_expired,
                    blocked_at, blocked_reason, daily_spent, monthly_spent,
                    last_reset_date, usage_count, last_used_at, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (card_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    card_type = EXCLUDED.card_type,
                    last4 = EXCLUDED.last4,
                    is_active = EXCLUDED.is_active,
                    is_expired = EXCLUDED.is_expired,
                    blocked_at = EXCLUDED.blocked_at,
                    blocked_reason = EXCLUDED.blocked_reason,
                    daily_spent = EXCLUDED.daily_spent,
                    monthly_spent = EXCLUDED.monthly_spent,
                    last_reset_date = EXCLUDED.last_reset_date,
                    usage_count = EXCLUDED.usage_count,
                    last_used_at = EXCLUDED.last_used_at
                """,
                card.card_id, card.user_id, card.card_type.value, card.last4,
                card.is_active, card.is_expired, card.blocked_at, card.blocked_reason,
                card.daily_spent, card.monthly_spent, card.last_reset_date,
                card.usage_count, card.last_used_at, card.created_at,
            )
        return card

    async def record_card_usage(
        self, card_id: str, amount: Decimal, used_at: datetime
    ) -> SpendingCard:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE cardpay_cards SET
                    daily_spent = daily_spent + $2,
                    monthly_spent = monthly_spent + $2,
                    usage_count = usage_count + 1,
                    last_used_at = $3
                WHERE card_id = $1
                RETURNING *
                """,
                card_id, amount, used_at,
            )
        if row is None:
            raise CardNotFoundError(card_id)
        return self._card_from_row(row)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM cardpay_users WHERE user_id = $1", user_id)
        return self._user_from_row(row) if row else None

    async def save_user(self, user: User) -> User:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO cardpay_users (
                    user_id, wallet_address, encrypted_key_handle,
                    daily_limit, monthly_limit, email, full_name
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id) DO UPDATE SET
                    wallet_address = EXCLUDED.wallet_address,
                    encrypted_key_handle = EXCLUDED.encrypted_key_handle,
                    daily_limit = EXCLUDED.daily_limit,
                    monthly_limit = EXCLUDED.monthly_limit,
                    email = EXCLUDED.email,
                    full_name = EXCLUDED.full_name
                """,
                user.user_id, user.wallet_address, user.encrypted_key_handle,
                user.daily_limit, user.monthly_limit, user.email, user.full_name,
            )
        return user

    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM cardpay_merchants WHERE merchant_id = $1", merchant_id
            )
        return self._merchant_from_row(row) if row else None

    async def save_merchant(self, merchant: Merchant) -> Merchant:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO cardpay_merchants (
                    merchant_id, name, wallet_address, is_active,
                    total_transactions, total_volume, webhook_url
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (merchant_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    wallet_address = EXCLUDED.wallet_address,
                    is_active = EXCLUDED.is_active,
                    webhook_url = EXCLUDED.webhook_url
                """,
                merchant.merchant_id, merchant.name, merchant.wallet_address,
                merchant.is_active, merchant.total_transactions,
                merchant.total_volume, merchant.webhook_url,
            )
        return merchant

    async def increment_merchant_totals(self, merchant_id: str, amount: Decimal) -> None:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE cardpay_merchants SET
                    total_transactions = total_transactions + 1,
                    total_volume = total_volume + $2
                WHERE merchant_id = $1
                """,
                merchant_id, amount,
            )
        if result.endswith(" 0"):
            raise InvalidMerchantError(merchant_id)

    # =========================================================================
    # Transactions
    # =========================================================================

    async def create_transaction(self, tx: Transaction) -> Transaction:
        placeholders = ", ".join(
            f"${i}" + ("::jsonb" if col == "metadata" else "")
            for i, col in enumerate(_TX_COLUMNS, start=1)
        )
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO cardpay_transactions ({', '.join(_TX_COLUMNS)}) "
                f"VALUES ({placeholders})",
                *self._tx_values(tx),
            )
        return tx

    async def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM cardpay_transactions WHERE tx_id = $1", tx_id
            )
        return self._tx_from_row(row) if row else None

    async def save_transaction(self, tx: Transaction) -> Transaction:
        assignments = ", ".join(
            f"{col} = ${i}" + ("::jsonb" if col == "metadata" else "")
            for i, col in enumerate(_TX_COLUMNS, start=1)
            if col != "tx_id"
        )
        async with self._connection() as conn:
            await conn.execute(
                f"UPDATE cardpay_transactions SET {assignments} WHERE tx_id = $1",
                *self._tx_values(tx),
            )
        return tx

    async def list_user_transactions(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> TransactionPage:
        offset = (page - 1) * limit
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM cardpay_transactions
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                user_id, limit, offset,
            )
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM cardpay_transactions WHERE user_id = $1", user_id
            )
        return TransactionPage(
            transactions=[self._tx_from_row(r) for r in rows],
            total=int(total or 0),
            page=page,
            limit=limit,
        )

    async def list_pending(self, older_than: datetime) -> List[Transaction]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM cardpay_transactions
                WHERE status = 'pending' AND created_at < $1
                ORDER BY created_at
                """,
                older_than,
            )
        return [self._tx_from_row(r) for r in rows]

    # =========================================================================
    # Stats
    # =========================================================================

    async def aggregate_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
        trend_since: Optional[datetime] = None,
    ) -> PaymentAggregate:
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        window = (user_id, since or epoch, card_id)
        where = (
            "user_id = $1 AND status = 'completed' AND completed_at >= $2 "
            "AND ($3::text IS NULL OR card_id = $3)"
        )
        async with self._connection() as conn:
            overview = await conn.fetchrow(
                f"""
                SELECT COUNT(*) AS n,
                       COALESCE(SUM(amount), 0) AS volume,
                       COALESCE(SUM(fee_paid), 0) AS fees,
                       COALESCE(MIN(amount), 0) AS min_amount,
                       COALESCE(MAX(amount), 0) AS max_amount,
                       COUNT(DISTINCT merchant_id) AS merchants
                FROM cardpay_transactions WHERE {where}
                """,
                *window,
            )
            failed = await conn.fetchval(
                """
                SELECT COUNT(*) FROM cardpay_transactions
                WHERE user_id = $1 AND status = 'failed' AND updated_at >= $2
                  AND ($3::text IS NULL OR card_id = $3)
                """,
                *window,
            )
            hourly = await conn.fetch(
                f"""
                SELECT EXTRACT(HOUR FROM completed_at AT TIME ZONE 'UTC')::int AS hour,
                       COUNT(*) AS n, SUM(amount) AS volume
                FROM cardpay_transactions WHERE {where}
                GROUP BY 1 ORDER BY 1
                """,
                *window,
            )
            merchants = await conn.fetch(
                f"""
                SELECT merchant_id, MAX(merchant_name) AS merchant_name,
                       COUNT(*) AS n, SUM(amount) AS spent, AVG(amount) AS average
                FROM cardpay_transactions WHERE {where}
                GROUP BY merchant_id ORDER BY spent DESC LIMIT 10
                """,
                *window,
            )
            monthly = await conn.fetch(
                f"""
                SELECT TO_CHAR(completed_at AT TIME ZONE 'UTC', 'YYYY-MM') AS month,
                       COUNT(*) AS n, SUM(amount) AS volume,
                       COALESCE(SUM(fee_paid), 0) AS fees
                FROM cardpay_transactions WHERE {where}
                GROUP BY 1 ORDER BY 1
                """,
                user_id, trend_since or epoch, card_id,
            )

        return PaymentAggregate(
            total_transactions=int(overview["n"]),
            total_volume=Decimal(overview["volume"]),
            total_fees=Decimal(overview["fees"]),
            min_transaction=Decimal(overview["min_amount"]),
            max_transaction=Decimal(overview["max_amount"]),
            failed_transactions=int(failed or 0),
            unique_merchants=int(overview["merchants"]),
            hourly=[
                HourlyBucket(hour=r["hour"], transactions=int(r["n"]), volume=Decimal(r["volume"]))
                for r in hourly
            ],
            top_merchants=[
                MerchantBucket(
                    merchant_id=r["merchant_id"],
                    merchant_name=r["merchant_name"],
                    transactions=int(r["n"]),
                    total_spent=Decimal(r["spent"]),
                    average_transaction=Decimal(r["average"]),
                )
                for r in merchants
            ],
            monthly=[
                MonthlyBucket(
                    month=r["month"],
                    transactions=int(r["n"]),
                    volume=Decimal(r["volume"]),
                    fees=Decimal(r["fees"]),
                )
                for r in monthly
            ],
        )

    async def list_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
    ) -> List[Transaction]:
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM cardpay_transactions
                WHERE user_id = $1 AND status = 'completed' AND completed_at >= $2
                  AND ($3::text IS NULL OR card_id = $3)
                """,
                user_id, since or epoch, card_id,
            )
        return [self._tx_from_row(r) for r in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
