"""Per-card spending limits.

LimitEvaluator applies the calendar rollover and the daily/monthly checks.
CardSpendGuard serializes admission and settlement per card and tracks
in-flight reservations, so concurrent payments on one card cannot jointly
exceed a limit while their transfers are outstanding.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from .exceptions import (
    CardNotFoundError,
    DailyLimitExceededError,
    MonthlyLimitExceededError,
)
from .models import SpendingCard, User
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
MONTHLY_LIMIT_EXCEEDED = "MONTHLY_LIMIT_EXCEEDED"


def start_of_day(moment: datetime) -> datetime:
    """Midnight UTC of the calendar day containing moment."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(slots=True)
class LimitDecision:
    admitted: bool
    amount: Decimal
    reason: Optional[str] = None
    limit: Decimal = field(default_factory=lambda: Decimal("0"))
    spent: Decimal = field(default_factory=lambda: Decimal("0"))
    pending: Decimal = field(default_factory=lambda: Decimal("0"))

    def raise_for_rejection(self) -> None:
        if self.admitted:
            return
        exc_class = (
            DailyLimitExceededError
            if self.reason == DAILY_LIMIT_EXCEEDED
            else MonthlyLimitExceededError
        )
        raise exc_class(self.amount, self.limit, self.spent, self.pending)


class LimitEvaluator:
    """Daily/monthly limit checks with calendar rollover of the accumulators."""

    def __init__(self, repository: PaymentRepository):
        self._repo = repository

    @staticmethod
    def roll(card: SpendingCard, now: datetime) -> bool:
        """Zero stale accumulators in place. Returns True when the card changed."""
        today = start_of_day(now)
        last_reset = card.last_reset_date
        if last_reset.tzinfo is None:
            last_reset = last_reset.replace(tzinfo=timezone.utc)
        if last_reset >= today:
            return False

        card.daily_spent = Decimal("0")
        last_reset = last_reset.astimezone(timezone.utc)
        if (last_reset.year, last_reset.month) != (today.year, today.month):
            card.monthly_spent = Decimal("0")
        card.last_reset_date = today
        return True

    async def check_and_roll(
        self,
        card: SpendingCard,
        user: User,
        amount: Decimal,
        now: Optional[datetime] = None,
        pending: Decimal = Decimal("0"),
    ) -> LimitDecision:
        """Roll the card's accumulators forward, then evaluate both limits.

        A rolled card is persisted before evaluation, whatever the outcome.
        ``pending`` is the total of other in-flight payments on this card.
        """
        now = now or datetime.now(timezone.utc)
        if self.roll(card, now):
            logger.debug("Rolled spend accumulators for card %s", card.card_id)
            await self._repo.save_card(card)

        if card.daily_spent + pending + amount > user.daily_limit:
            return LimitDecision(
                admitted=False,
                amount=amount,
                reason=DAILY_LIMIT_EXCEEDED,
                limit=user.daily_limit,
                spent=card.daily_spent,
                pending=pending,
            )
        if card.monthly_spent + pending + amount > user.monthly_limit:
            return LimitDecision(
                admitted=False,
                amount=amount,
                reason=MONTHLY_LIMIT_EXCEEDED,
                limit=user.monthly_limit,
                spent=card.monthly_spent,
                pending=pending,
            )
        return LimitDecision(admitted=True, amount=amount, pending=pending)


@dataclass(slots=True)
class Reservation:
    """Spend admitted for a payment whose transfer has not settled yet."""

    card_id: str
    amount: Decimal
    reservation_id: str = field(default_factory=lambda: f"rsv_{uuid.uuid4().hex[:16]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CardSpendGuard:
    """Serializes limit admission and spend recording per card."""

    def __init__(self, repository: PaymentRepository, evaluator: Optional[LimitEvaluator] = None):
        self._repo = repository
        self._evaluator = evaluator or LimitEvaluator(repository)
        self._locks: dict[str, asyncio.Lock] = {}
        self._reservations: Dict[str, Dict[str, Reservation]] = {}

    def _get_lock(self, card_id: str) -> asyncio.Lock:
        if card_id not in self._locks:
            self._locks[card_id] = asyncio.Lock()
        return self._locks[card_id]

    def pending_for(self, card_id: str) -> Decimal:
        held = self._reservations.get(card_id, {})
        return sum((r.amount for r in held.values()), Decimal("0"))

    async def admit(
        self,
        card_id: str,
        user: User,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """Check limits against settled spend plus in-flight reservations.

        Raises DailyLimitExceededError / MonthlyLimitExceededError on rejection.
        """
        async with self._get_lock(card_id):
            card = await self._repo.get_card(card_id)
            if card is None:
                raise CardNotFoundError(card_id)
            decision = await self._evaluator.check_and_roll(
                card, user, amount, now=now, pending=self.pending_for(card_id)
            )
            decision.raise_for_rejection()

            reservation = Reservation(card_id=card_id, amount=amount)
            self._reservations.setdefault(card_id, {})[reservation.reservation_id] = reservation
            logger.debug(
                "Reserved %s on card %s (%s)", amount, card_id, reservation.reservation_id
            )
            return reservation

    async def commit(self, reservation: Reservation, used_at: Optional[datetime] = None) -> SpendingCard:
        """Move a reservation into the card's settled accumulators."""
        used_at = used_at or datetime.now(timezone.utc)
        async with self._get_lock(reservation.card_id):
            self._drop(reservation)
            card = await self._repo.get_card(reservation.card_id)
            if card is None:
                raise CardNotFoundError(reservation.card_id)
            if self._evaluator.roll(card, used_at):
                await self._repo.save_card(card)
            return await self._repo.record_card_usage(
                reservation.card_id, reservation.amount, used_at
            )

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation without touching the card."""
        if self._drop(reservation):
            logger.debug(
                "Released %s on card %s (%s)",
                reservation.amount, reservation.card_id, reservation.reservation_id,
            )

    def _drop(self, reservation: Reservation) -> bool:
        held = self._reservations.get(reservation.card_id)
        if not held or reservation.reservation_id not in held:
            return False
        del held[reservation.reservation_id]
        if not held:
            del self._reservations[reservation.card_id]
        return True
