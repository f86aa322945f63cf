"""Persistence port for cards, users, merchants and transactions."""
from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .exceptions import CardNotFoundError, InvalidMerchantError
from .models import (
    Merchant,
    SpendingCard,
    Transaction,
    TransactionPage,
    TransactionStatus,
    User,
)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class MonthlyBucket:
    month: str
    transactions: int
    volume: Decimal
    fees: Decimal


@dataclass(slots=True)
class HourlyBucket:
    hour: int
    transactions: int
    volume: Decimal


@dataclass(slots=True)
class MerchantBucket:
    merchant_id: str
    merchant_name: str
    transactions: int
    total_spent: Decimal
    average_transaction: Decimal


@dataclass(slots=True)
class PaymentAggregate:
    """Completed-payment aggregates for one user/window/card filter."""

    total_transactions: int = 0
    total_volume: Decimal = field(default_factory=lambda: Decimal("0"))
    total_fees: Decimal = field(default_factory=lambda: Decimal("0"))
    min_transaction: Decimal = field(default_factory=lambda: Decimal("0"))
    max_transaction: Decimal = field(default_factory=lambda: Decimal("0"))
    failed_transactions: int = 0
    monthly: List[MonthlyBucket] = field(default_factory=list)
    hourly: List[HourlyBucket] = field(default_factory=list)
    top_merchants: List[MerchantBucket] = field(default_factory=list)
    unique_merchants: int = 0

    @property
    def average_transaction(self) -> Decimal:
        if not self.total_transactions:
            return Decimal("0")
        return self.total_volume / self.total_transactions


def aggregate_transactions(
    completed: Iterable[Transaction],
    trend_source: Iterable[Transaction],
    failed_count: int = 0,
    top_limit: int = 10,
) -> PaymentAggregate:
    """Fold completed transactions into a PaymentAggregate.

    ``completed`` is the period window; ``trend_source`` feeds the monthly
    trend and may reach further back than the window.
    """
    rows = list(completed)
    agg = PaymentAggregate(failed_transactions=failed_count)

    hourly: Dict[int, List] = defaultdict(lambda: [0, Decimal("0")])
    merchants: Dict[str, List] = {}
    for tx in rows:
        agg.total_transactions += 1
        agg.total_volume += tx.amount
        agg.total_fees += tx.fee_paid or Decimal("0")
        hour = _aware(tx.completed_at or tx.created_at).hour
        hourly[hour][0] += 1
        hourly[hour][1] += tx.amount
        if tx.merchant_id:
            bucket = merchants.setdefault(tx.merchant_id, [tx.merchant_name, 0, Decimal("0")])
            bucket[1] += 1
            bucket[2] += tx.amount

    if rows:
        amounts = [tx.amount for tx in rows]
        agg.min_transaction = min(amounts)
        agg.max_transaction = max(amounts)

    agg.hourly = [
        HourlyBucket(hour=h, transactions=c, volume=v)
        for h, (c, v) in sorted(hourly.items())
    ]
    ranked = sorted(merchants.items(), key=lambda item: item[1][2], reverse=True)
    agg.top_merchants = [
        MerchantBucket(
            merchant_id=mid,
            merchant_name=name,
            transactions=count,
            total_spent=spent,
            average_transaction=spent / count,
        )
        for mid, (name, count, spent) in ranked[:top_limit]
    ]
    agg.unique_merchants = len(merchants)

    monthly: Dict[str, List] = defaultdict(lambda: [0, Decimal("0"), Decimal("0")])
    for tx in trend_source:
        ts = _aware(tx.completed_at or tx.created_at)
        key = f"{ts.year}-{ts.month:02d}"
        monthly[key][0] += 1
        monthly[key][1] += tx.amount
        monthly[key][2] += tx.fee_paid or Decimal("0")
    agg.monthly = [
        MonthlyBucket(month=m, transactions=c, volume=v, fees=f)
        for m, (c, v, f) in sorted(monthly.items())
    ]
    return agg


class PaymentRepository(ABC):
    """Storage for the payment domain.

    ``save_*`` is last-write-wins. ``record_card_usage`` and
    ``increment_merchant_totals`` must be atomic increments so concurrent
    settlements never lose an update.
    """

    # Cards / users / merchants

    @abstractmethod
    async def get_card(self, card_id: str) -> Optional[SpendingCard]: ...

    @abstractmethod
    async def save_card(self, card: SpendingCard) -> SpendingCard: ...

    @abstractmethod
    async def record_card_usage(
        self, card_id: str, amount: Decimal, used_at: datetime
    ) -> SpendingCard:
        """Add amount to daily/monthly spend, bump usage count and last use."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def save_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]: ...

    @abstractmethod
    async def save_merchant(self, merchant: Merchant) -> Merchant: ...

    @abstractmethod
    async def increment_merchant_totals(self, merchant_id: str, amount: Decimal) -> None: ...

    # Transactions

    @abstractmethod
    async def create_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, tx_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def save_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def list_user_transactions(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> TransactionPage:
        """Newest first."""

    @abstractmethod
    async def list_pending(self, older_than: datetime) -> List[Transaction]:
        """Pending transactions created before ``older_than``."""

    # Stats

    @abstractmethod
    async def aggregate_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
        trend_since: Optional[datetime] = None,
    ) -> PaymentAggregate: ...

    @abstractmethod
    async def list_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
    ) -> List[Transaction]: ...

    async def close(self) -> None:
        return None


class InMemoryPaymentRepository(PaymentRepository):
    """Dict-backed repository for development and tests.

    Objects are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._cards: Dict[str, SpendingCard] = {}
        self._users: Dict[str, User] = {}
        self._merchants: Dict[str, Merchant] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(obj):
        return copy.deepcopy(obj) if obj is not None else None

    async def get_card(self, card_id: str) -> Optional[SpendingCard]:
        return self._copy(self._cards.get(card_id))

    async def save_card(self, card: SpendingCard) -> SpendingCard:
        async with self._lock:
            self._cards[card.card_id] = self._copy(card)
        return card

    async def record_card_usage(
        self, card_id: str, amount: Decimal, used_at: datetime
    ) -> SpendingCard:
        async with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                raise CardNotFoundError(card_id)
            card.daily_spent += amount
            card.monthly_spent += amount
            card.usage_count += 1
            card.last_used_at = used_at
            return self._copy(card)

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._copy(self._users.get(user_id))

    async def save_user(self, user: User) -> User:
        async with self._lock:
            self._users[user.user_id] = self._copy(user)
        return user

    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        return self._copy(self._merchants.get(merchant_id))

    async def save_merchant(self, merchant: Merchant) -> Merchant:
        async with self._lock:
            self._merchants[merchant.merchant_id] = self._copy(merchant)
        return merchant

    async def increment_merchant_totals(self, merchant_id: str, amount: Decimal) -> None:
        async with self._lock:
            merchant = self._merchants.get(merchant_id)
            if merchant is None:
                raise InvalidMerchantError(merchant_id)
            merchant.total_transactions += 1
            merchant.total_volume += amount

    async def create_transaction(self, tx: Transaction) -> Transaction:
        async with self._lock:
            if tx.tx_id in self._transactions:
                raise ValueError(f"Duplicate transaction id {tx.tx_id}")
            self._transactions[tx.tx_id] = self._copy(tx)
        return tx

    async def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        return self._copy(self._transactions.get(tx_id))

    async def save_transaction(self, tx: Transaction) -> Transaction:
        async with self._lock:
            self._transactions[tx.tx_id] = self._copy(tx)
        return tx

    async def list_user_transactions(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> TransactionPage:
        rows = sorted(
            (tx for tx in self._transactions.values() if tx.user_id == user_id),
            key=lambda tx: tx.created_at,
            reverse=True,
        )
        start = (page - 1) * limit
        return TransactionPage(
            transactions=[self._copy(tx) for tx in rows[start:start + limit]],
            total=len(rows),
            page=page,
            limit=limit,
        )

    async def list_pending(self, older_than: datetime) -> List[Transaction]:
        return [
            self._copy(tx)
            for tx in self._transactions.values()
            if tx.status == TransactionStatus.PENDING and tx.created_at < older_than
        ]

    def _filter(
        self,
        user_id: str,
        status: TransactionStatus,
        since: Optional[datetime],
        card_id: Optional[str],
    ) -> List[Transaction]:
        rows = []
        for tx in self._transactions.values():
            if tx.user_id != user_id or tx.status != status:
                continue
            if card_id and tx.card_id != card_id:
                continue
            stamp = tx.completed_at if status == TransactionStatus.COMPLETED else tx.updated_at
            if since is not None and (stamp is None or stamp < since):
                continue
            rows.append(tx)
        return rows

    async def aggregate_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
        trend_since: Optional[datetime] = None,
    ) -> PaymentAggregate:
        completed = self._filter(user_id, TransactionStatus.COMPLETED, since, card_id)
        trend = self._filter(user_id, TransactionStatus.COMPLETED, trend_since, card_id)
        failed = self._filter(user_id, TransactionStatus.FAILED, since, card_id)
        return aggregate_transactions(completed, trend, failed_count=len(failed))

    async def list_completed(
        self,
        user_id: str,
        since: Optional[datetime],
        card_id: Optional[str] = None,
    ) -> List[Transaction]:
        return [
            self._copy(tx)
            for tx in self._filter(user_id, TransactionStatus.COMPLETED, since, card_id)
        ]
