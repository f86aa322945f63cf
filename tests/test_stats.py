"""Tests for payment statistics."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from cardpay.exceptions import InvalidPeriodError
from cardpay.models import SpendingCard, Transaction, TransactionStatus
from cardpay.stats import StatsAggregator, period_start, stats_cache_key

NOW = datetime(2026, 5, 20, 15, 0, tzinfo=timezone.utc)


def _tx(
    amount: str,
    completed_at: datetime,
    merchant_id: str = "mch_coffee",
    merchant_name: str = "Corner Coffee",
    status: TransactionStatus = TransactionStatus.COMPLETED,
    card_id: str = "card_alice",
    user_id: str = "usr_alice",
) -> Transaction:
    completed = status == TransactionStatus.COMPLETED
    return Transaction(
        user_id=user_id,
        card_id=card_id,
        amount=Decimal(amount),
        merchant_id=merchant_id,
        merchant_name=merchant_name,
        status=status,
        fee_paid=Decimal("0.1") if completed else None,
        created_at=completed_at,
        updated_at=completed_at,
        completed_at=completed_at if completed else None,
    )


@pytest.fixture
def aggregator(repo, cache):
    return StatsAggregator(repo, cache, ttl_seconds=300, clock=lambda: NOW)


@pytest_asyncio.fixture
async def history(repo):
    rows = [
        _tx("10", NOW.replace(day=2, hour=9)),
        _tx("20", NOW.replace(day=10, hour=9)),
        _tx("15", NOW.replace(day=18, hour=14), merchant_id="mch_books", merchant_name="Books"),
        _tx("99", NOW.replace(day=19, hour=9), status=TransactionStatus.FAILED),
        # Previous months: outside the "month" window, inside the trend window
        _tx("40", datetime(2026, 3, 5, 9, tzinfo=timezone.utc)),
        # Somebody else's payment
        _tx("500", NOW.replace(day=3), user_id="usr_bob", card_id="card_bob"),
    ]
    for tx in rows:
        await repo.create_transaction(tx)
    return rows


class TestPeriodStart:
    def test_periods(self):
        assert period_start("day", NOW) == datetime(2026, 5, 20, tzinfo=timezone.utc)
        assert period_start("week", NOW) == NOW - timedelta(days=7)
        assert period_start("month", NOW) == datetime(2026, 5, 1, tzinfo=timezone.utc)
        assert period_start("quarter", NOW) == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert period_start("year", NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert period_start("all", NOW) is None

    def test_unknown_period(self):
        with pytest.raises(InvalidPeriodError):
            period_start("fortnight", NOW)


class TestStatsAggregator:
    @pytest.mark.asyncio
    async def test_invalid_period(self, aggregator):
        with pytest.raises(InvalidPeriodError):
            await aggregator.get_payment_stats("usr_alice", period="decade")

    @pytest.mark.asyncio
    async def test_overview_for_month(self, aggregator, history):
        stats = await aggregator.get_payment_stats("usr_alice", period="month")

        overview = stats.overview
        assert overview.total_transactions == 3
        assert overview.total_volume == Decimal("45")
        assert overview.total_fees == Decimal("0.3")
        assert overview.average_transaction == Decimal("15")
        assert overview.min_transaction == Decimal("10")
        assert overview.max_transaction == Decimal("20")
        assert overview.success_rate == 0.75
        assert stats.date_range.start == datetime(2026, 5, 1, tzinfo=timezone.utc)
        assert not stats.cached
        assert not stats.fallback

    @pytest.mark.asyncio
    async def test_trends(self, aggregator, history):
        stats = await aggregator.get_payment_stats("usr_alice", period="month")

        hourly = stats.trends.hourly
        assert [h.hour for h in hourly] == list(range(24))
        assert hourly[9].transactions == 2
        assert hourly[9].volume == Decimal("30")
        assert hourly[14].transactions == 1
        assert hourly[0].transactions == 0

        monthly = {m.month: m for m in stats.trends.monthly}
        assert set(monthly) == {"2026-03", "2026-05"}
        assert monthly["2026-05"].transactions == 3
        assert monthly["2026-03"].volume == Decimal("40")

    @pytest.mark.asyncio
    async def test_top_merchants(self, aggregator, history):
        stats = await aggregator.get_payment_stats("usr_alice", period="month")

        top = stats.merchants.top
        assert [m.merchant_id for m in top] == ["mch_coffee", "mch_books"]
        assert top[0].total_spent == Decimal("30")
        assert top[0].average_transaction == Decimal("15")
        assert stats.merchants.total_unique == 2

    @pytest.mark.asyncio
    async def test_all_period_includes_history(self, aggregator, history):
        stats = await aggregator.get_payment_stats("usr_alice", period="all")
        assert stats.overview.total_transactions == 4
        assert stats.date_range.start is None

    @pytest.mark.asyncio
    async def test_empty_history(self, aggregator):
        stats = await aggregator.get_payment_stats("usr_nobody", period="week")
        assert stats.overview.total_transactions == 0
        assert stats.overview.success_rate == 0.0
        assert stats.merchants.top == []
        assert len(stats.trends.hourly) == 24

    @pytest.mark.asyncio
    async def test_card_snapshot_only_for_owner(self, aggregator, repo, history):
        await repo.save_card(SpendingCard(card_id="card_alice", user_id="usr_alice", usage_count=3))
        await repo.save_card(SpendingCard(card_id="card_bob", user_id="usr_bob"))

        own = await aggregator.get_payment_stats("usr_alice", card_id="card_alice")
        assert own.card is not None
        assert own.card.usage_count == 3

        foreign = await aggregator.get_payment_stats("usr_alice", card_id="card_bob")
        assert foreign.card is None
        assert foreign.overview.total_transactions == 0

    @pytest.mark.asyncio
    async def test_results_are_cached(self, aggregator, cache, history):
        first = await aggregator.get_payment_stats("usr_alice", period="month")
        assert await cache.get_json(stats_cache_key("usr_alice", "month", None)) is not None

        second = await aggregator.get_payment_stats("usr_alice", period="month")
        assert second.cached
        assert second.overview == first.overview

    @pytest.mark.asyncio
    async def test_invalidate(self, aggregator, history):
        await aggregator.get_payment_stats("usr_alice", period="month")
        await aggregator.invalidate("usr_alice", "card_alice")
        again = await aggregator.get_payment_stats("usr_alice", period="month")
        assert not again.cached

    @pytest.mark.asyncio
    async def test_fallback_when_aggregation_fails(self, aggregator, repo, cache, history):
        repo.aggregate_completed = AsyncMock(side_effect=RuntimeError("query failed"))

        stats = await aggregator.get_payment_stats("usr_alice", period="month")

        assert stats.fallback
        assert stats.overview.total_transactions == 3
        assert stats.overview.total_volume == Decimal("45")
        assert stats.trends.hourly == []
        assert await cache.get(stats_cache_key("usr_alice", "month", None)) is None
