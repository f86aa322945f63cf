"""Integration tests for the asyncpg repository.

Run against a scratch database:

    CARDPAY_TEST_DATABASE_URL=postgresql://localhost/cardpay_test pytest -m postgres
"""
from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from cardpay.exceptions import CardNotFoundError, InvalidMerchantError
from cardpay.models import Merchant, SpendingCard, Transaction, TransactionStatus, User
from cardpay.repository_postgres import PostgresPaymentRepository

DATABASE_URL = os.environ.get("CARDPAY_TEST_DATABASE_URL", "")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not DATABASE_URL, reason="CARDPAY_TEST_DATABASE_URL not set"),
]


def _suffix() -> str:
    return uuid.uuid4().hex[:10]


@pytest_asyncio.fixture
async def pg_repo():
    repo = PostgresPaymentRepository(DATABASE_URL, max_size=5)
    await repo.ensure_schema()
    yield repo
    await repo.close()


def _tx(user_id: str, card_id: str, merchant_id: str, amount: str, **kwargs) -> Transaction:
    return Transaction(
        user_id=user_id,
        card_id=card_id,
        amount=Decimal(amount),
        currency="U2U",
        chain_key="u2u_testnet",
        chain_id=2484,
        chain_name="U2U Testnet",
        merchant_id=merchant_id,
        merchant_name="Corner Coffee",
        from_address="0x" + "ab" * 20,
        to_address="0x" + "22" * 20,
        **kwargs,
    )


class TestCards:
    @pytest.mark.asyncio
    async def test_round_trip(self, pg_repo):
        card = SpendingCard(card_id=f"card_{_suffix()}", user_id="usr_pg", last4="4242")
        card.block("fraud")
        await pg_repo.save_card(card)

        stored = await pg_repo.get_card(card.card_id)
        assert stored.user_id == "usr_pg"
        assert stored.blocked_reason == "fraud"
        assert stored.is_blocked
        assert await pg_repo.get_card("card_missing_" + _suffix()) is None

    @pytest.mark.asyncio
    async def test_concurrent_usage_is_not_lost(self, pg_repo):
        card = SpendingCard(card_id=f"card_{_suffix()}", user_id="usr_pg")
        await pg_repo.save_card(card)
        now = datetime.now(timezone.utc)

        await asyncio.gather(*[
            pg_repo.record_card_usage(card.card_id, Decimal("1.5"), now) for _ in range(10)
        ])

        stored = await pg_repo.get_card(card.card_id)
        assert stored.daily_spent == Decimal("15")
        assert stored.monthly_spent == Decimal("15")
        assert stored.usage_count == 10

    @pytest.mark.asyncio
    async def test_usage_on_unknown_card(self, pg_repo):
        with pytest.raises(CardNotFoundError):
            await pg_repo.record_card_usage(
                "card_missing_" + _suffix(), Decimal("1"), datetime.now(timezone.utc)
            )


class TestUsersAndMerchants:
    @pytest.mark.asyncio
    async def test_user_round_trip(self, pg_repo):
        user = User(
            user_id=f"usr_{_suffix()}",
            wallet_address="0x" + "ab" * 20,
            encrypted_key_handle="fernet:token",
            daily_limit=Decimal("250.5"),
        )
        await pg_repo.save_user(user)
        stored = await pg_repo.get_user(user.user_id)
        assert stored.daily_limit == Decimal("250.5")
        assert stored.has_wallet

    @pytest.mark.asyncio
    async def test_merchant_totals(self, pg_repo):
        merchant = Merchant(
            merchant_id=f"mch_{_suffix()}", name="Corner Coffee", wallet_address="0x" + "22" * 20
        )
        await pg_repo.save_merchant(merchant)

        await asyncio.gather(*[
            pg_repo.increment_merchant_totals(merchant.merchant_id, Decimal("2")) for _ in range(4)
        ])

        stored = await pg_repo.get_merchant(merchant.merchant_id)
        assert stored.total_transactions == 4
        assert stored.total_volume == Decimal("8")

    @pytest.mark.asyncio
    async def test_totals_for_unknown_merchant(self, pg_repo):
        with pytest.raises(InvalidMerchantError):
            await pg_repo.increment_merchant_totals("mch_missing_" + _suffix(), Decimal("1"))


class TestTransactions:
    @pytest.mark.asyncio
    async def test_create_save_and_page(self, pg_repo):
        user_id = f"usr_{_suffix()}"
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        first = _tx(user_id, "card_pg", "mch_pg", "10", metadata={"order": "A-1"},
                    created_at=base, updated_at=base)
        second = _tx(user_id, "card_pg", "mch_pg", "20",
                     created_at=base + timedelta(minutes=1), updated_at=base)
        await pg_repo.create_transaction(first)
        await pg_repo.create_transaction(second)

        first.status = TransactionStatus.COMPLETED
        first.tx_hash = "0x" + "cd" * 32
        first.fee_paid = Decimal("0.000021")
        first.completed_at = datetime.now(timezone.utc)
        await pg_repo.save_transaction(first)

        stored = await pg_repo.get_transaction(first.tx_id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.metadata == {"order": "A-1"}
        assert stored.fee_paid == Decimal("0.000021")

        page = await pg_repo.list_user_transactions(user_id, page=1, limit=1)
        assert page.total == 2
        assert page.transactions[0].tx_id == second.tx_id

        pending = await pg_repo.list_pending(datetime.now(timezone.utc))
        assert second.tx_id in {t.tx_id for t in pending}
        assert first.tx_id not in {t.tx_id for t in pending}

    @pytest.mark.asyncio
    async def test_aggregate_completed(self, pg_repo):
        user_id = f"usr_{_suffix()}"
        now = datetime.now(timezone.utc)
        for amount in ("10", "30"):
            await pg_repo.create_transaction(_tx(
                user_id, "card_pg", "mch_pg", amount,
                status=TransactionStatus.COMPLETED,
                fee_paid=Decimal("0.5"),
                completed_at=now,
            ))
        await pg_repo.create_transaction(
            _tx(user_id, "card_pg", "mch_pg", "99", status=TransactionStatus.FAILED)
        )

        agg = await pg_repo.aggregate_completed(user_id, since=now - timedelta(days=1))

        assert agg.total_transactions == 2
        assert agg.total_volume == Decimal("40")
        assert agg.total_fees == Decimal("1.0")
        assert agg.max_transaction == Decimal("30")
        assert agg.failed_transactions == 1
        assert agg.unique_merchants == 1
