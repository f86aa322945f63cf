"""Payment statistics for a user over a calendar period."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from .cache import CacheBackend
from .exceptions import InvalidPeriodError
from .models import CardType
from .repository import PaymentAggregate, PaymentRepository

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month", "quarter", "year", "all")
TREND_WINDOW = timedelta(days=180)
TOP_MERCHANTS = 10


def period_start(period: str, now: datetime) -> Optional[datetime]:
    """Start of the reporting window, or None for "all"."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return midnight
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return midnight.replace(day=1)
    if period == "quarter":
        return midnight.replace(month=((now.month - 1) // 3) * 3 + 1, day=1)
    if period == "year":
        return midnight.replace(month=1, day=1)
    if period == "all":
        return None
    raise InvalidPeriodError(period)


def stats_cache_key(user_id: str, period: str, card_id: Optional[str]) -> str:
    return f"payment_stats:{user_id}:{period}:{card_id or 'all'}"


class DateRange(BaseModel):
    start: Optional[datetime] = None
    end: datetime


class Overview(BaseModel):
    total_transactions: int = 0
    total_volume: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    average_transaction: Decimal = Decimal("0")
    min_transaction: Decimal = Decimal("0")
    max_transaction: Decimal = Decimal("0")
    success_rate: float = 0.0


class MonthlyTrend(BaseModel):
    month: str
    transactions: int
    volume: Decimal
    fees: Decimal


class HourlyTrend(BaseModel):
    hour: int
    transactions: int = 0
    volume: Decimal = Decimal("0")


class Trends(BaseModel):
    monthly: List[MonthlyTrend] = Field(default_factory=list)
    hourly: List[HourlyTrend] = Field(default_factory=list)


class MerchantStat(BaseModel):
    merchant_id: str
    merchant_name: str
    transactions: int
    total_spent: Decimal
    average_transaction: Decimal


class MerchantStats(BaseModel):
    top: List[MerchantStat] = Field(default_factory=list)
    total_unique: int = 0


class CardStats(BaseModel):
    card_id: str
    card_type: CardType
    daily_spent: Decimal
    monthly_spent: Decimal
    usage_count: int
    last_used_at: Optional[datetime] = None
    is_active: bool


class PaymentStats(BaseModel):
    user_id: str
    period: str
    date_range: DateRange
    overview: Overview
    trends: Trends = Field(default_factory=Trends)
    merchants: MerchantStats = Field(default_factory=MerchantStats)
    card: Optional[CardStats] = None
    generated_at: datetime
    cached: bool = False
    fallback: bool = False


def _success_rate(completed: int, failed: int) -> float:
    attempts = completed + failed
    if not attempts:
        return 0.0
    return round(completed / attempts, 4)


class StatsAggregator:
    """Builds PaymentStats from repository aggregates, cached per key."""

    def __init__(
        self,
        repository: PaymentRepository,
        cache: CacheBackend,
        ttl_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repo = repository
        self._cache = cache
        self._ttl = ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_payment_stats(
        self,
        user_id: str,
        period: str = "month",
        card_id: Optional[str] = None,
    ) -> PaymentStats:
        if period not in PERIODS:
            raise InvalidPeriodError(period)

        key = stats_cache_key(user_id, period, card_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            stats = PaymentStats.model_validate(cached)
            stats.cached = True
            return stats

        now = self._clock()
        since = period_start(period, now)
        date_range = DateRange(start=since, end=now)

        try:
            aggregate = await self._repo.aggregate_completed(
                user_id, since, card_id, trend_since=now - TREND_WINDOW
            )
        except Exception:
            logger.exception("Payment stats aggregation failed for %s, using fallback", user_id)
            return await self._fallback(user_id, period, card_id, since, date_range, now)

        stats = PaymentStats(
            user_id=user_id,
            period=period,
            date_range=date_range,
            overview=self._overview(aggregate),
            trends=self._trends(aggregate),
            merchants=MerchantStats(
                top=[
                    MerchantStat(
                        merchant_id=m.merchant_id,
                        merchant_name=m.merchant_name,
                        transactions=m.transactions,
                        total_spent=m.total_spent,
                        average_transaction=m.average_transaction,
                    )
                    for m in aggregate.top_merchants[:TOP_MERCHANTS]
                ],
                total_unique=aggregate.unique_merchants,
            ),
            card=await self._card_stats(user_id, card_id),
            generated_at=now,
        )

        await self._cache.set_json(key, stats.model_dump(mode="json"), ttl=self._ttl)
        logger.info(
            "Payment stats generated for %s period=%s card=%s total=%d",
            user_id, period, card_id or "all", stats.overview.total_transactions,
        )
        return stats

    async def invalidate(self, user_id: str, card_id: Optional[str] = None) -> None:
        """Drop cached reports touched by a new settlement."""
        for period in PERIODS:
            await self._cache.delete(stats_cache_key(user_id, period, None))
            if card_id:
                await self._cache.delete(stats_cache_key(user_id, period, card_id))

    @staticmethod
    def _overview(aggregate: PaymentAggregate) -> Overview:
        return Overview(
            total_transactions=aggregate.total_transactions,
            total_volume=aggregate.total_volume,
            total_fees=aggregate.total_fees,
            average_transaction=aggregate.average_transaction,
            min_transaction=aggregate.min_transaction,
            max_transaction=aggregate.max_transaction,
            success_rate=_success_rate(
                aggregate.total_transactions, aggregate.failed_transactions
            ),
        )

    @staticmethod
    def _trends(aggregate: PaymentAggregate) -> Trends:
        by_hour = {bucket.hour: bucket for bucket in aggregate.hourly}
        hourly = []
        for hour in range(24):
            bucket = by_hour.get(hour)
            if bucket is None:
                hourly.append(HourlyTrend(hour=hour))
            else:
                hourly.append(
                    HourlyTrend(hour=hour, transactions=bucket.transactions, volume=bucket.volume)
                )
        return Trends(
            monthly=[
                MonthlyTrend(month=m.month, transactions=m.transactions, volume=m.volume, fees=m.fees)
                for m in aggregate.monthly
            ],
            hourly=hourly,
        )

    async def _card_stats(self, user_id: str, card_id: Optional[str]) -> Optional[CardStats]:
        if not card_id:
            return None
        card = await self._repo.get_card(card_id)
        if card is None or card.user_id != user_id:
            return None
        return CardStats(
            card_id=card.card_id,
            card_type=card.card_type,
            daily_spent=card.daily_spent,
            monthly_spent=card.monthly_spent,
            usage_count=card.usage_count,
            last_used_at=card.last_used_at,
            is_active=card.is_active,
        )

    async def _fallback(
        self,
        user_id: str,
        period: str,
        card_id: Optional[str],
        since: Optional[datetime],
        date_range: DateRange,
        now: datetime,
    ) -> PaymentStats:
        rows = await self._repo.list_completed(user_id, since, card_id)
        total = len(rows)
        volume = sum((tx.amount for tx in rows), Decimal("0"))
        fees = sum((tx.fee_paid or Decimal("0") for tx in rows), Decimal("0"))
        return PaymentStats(
            user_id=user_id,
            period=period,
            date_range=date_range,
            overview=Overview(
                total_transactions=total,
                total_volume=volume,
                total_fees=fees,
                average_transaction=volume / total if total else Decimal("0"),
            ),
            generated_at=now,
            fallback=True,
        )
