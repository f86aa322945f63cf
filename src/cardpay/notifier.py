"""Live payment status rooms.

Each payment request has a room keyed by its request id. Subscribers get a
bounded queue; publishing never blocks, and a subscriber whose queue is full
misses the event. Nothing is persisted: a subscriber that joins late only sees
later events.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    CREATED = "created"
    SCANNED = "scanned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StatusEvent(BaseModel):
    """Payload pushed to a payment room."""

    model_config = ConfigDict(use_enum_values=True)

    request_id: str
    status: PaymentStatus
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    transaction_id: Optional[str] = None
    tx_hash: Optional[str] = None
    amount: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    merchant_id: Optional[str] = None
    explorer_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_payload(self) -> dict:
        """JSON-safe dict without unset optionals."""
        return self.model_dump(mode="json", exclude_none=True)


class Subscription:
    """A single listener on a room; iterate it to receive events."""

    def __init__(self, request_id: str, max_queue: int):
        self.request_id = request_id
        self._queue: asyncio.Queue[Optional[StatusEvent]] = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0
        self.closed = False

    def _offer(self, event: StatusEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Subscriber queue full for room %s, event dropped", self.request_id)

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            # Make room for the end-of-stream marker
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        """Next event, or None once the subscription is closed."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[StatusEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class StatusNotifier:
    """In-process room registry: request id -> subscribers."""

    def __init__(self, max_queue: int = 64):
        self._max_queue = max_queue
        self._rooms: Dict[str, Set[Subscription]] = {}

    def subscribe(self, request_id: str) -> Subscription:
        subscription = Subscription(request_id, self._max_queue)
        self._rooms.setdefault(request_id, set()).add(subscription)
        logger.debug("Joined room %s (%d listeners)", request_id, len(self._rooms[request_id]))
        return subscription

    def unsubscribe(self, request_id: str, subscription: Subscription) -> None:
        room = self._rooms.get(request_id)
        if room is None:
            return
        room.discard(subscription)
        subscription._close()
        if not room:
            del self._rooms[request_id]

    def publish(self, request_id: str, event: StatusEvent) -> int:
        """Deliver to every current subscriber. Returns how many accepted it."""
        room = self._rooms.get(request_id)
        if not room:
            return 0
        delivered = 0
        for subscription in list(room):
            before = subscription.dropped
            subscription._offer(event)
            if subscription.dropped == before:
                delivered += 1
        return delivered

    def room_size(self, request_id: str) -> int:
        return len(self._rooms.get(request_id, ()))

    def close_room(self, request_id: str) -> None:
        for subscription in self._rooms.pop(request_id, set()):
            subscription._close()
