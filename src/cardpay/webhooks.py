"""Merchant webhook delivery.

Deliveries are single-attempt and best effort: the result is returned as a
DeliveryAttempt and failures are logged, never raised. Payloads are signed
with HMAC-SHA256 over "<timestamp>.<body>" and sent as
``X-CardPay-Signature: t=<timestamp>,v1=<hex>``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .models import Merchant, Transaction

logger = logging.getLogger(__name__)


class WebhookEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"


@dataclass
class WebhookEvent:
    event_type: WebhookEventType
    data: Dict[str, Any]
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.event_type.value,
            "created_at": self.created_at.isoformat(),
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class DeliveryAttempt:
    """Record of a webhook delivery attempt."""

    event_id: str = ""
    event_type: str = ""
    url: str = ""
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    success: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def sign_payload(payload: str, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over "<timestamp>.<payload>" in t=,v1= form."""
    signed_content = f"{timestamp}.{payload}"
    sig = hmac.new(secret.encode(), signed_content.encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"


def verify_signature(
    payload: str,
    signature: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[int] = None,
) -> bool:
    """Verify a signature header, rejecting stale timestamps."""
    parts = {}
    for part in signature.split(","):
        if "=" in part:
            k, v = part.split("=", 1)
            parts[k.strip()] = v.strip()

    ts_str = parts.get("t")
    sig_hex = parts.get("v1")
    if not ts_str or not sig_hex:
        return False

    try:
        ts = int(ts_str)
    except ValueError:
        return False

    current = int(time.time()) if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return False

    expected = sign_payload(payload, secret, ts).split("v1=", 1)[1]
    return hmac.compare_digest(expected, sig_hex)


class MerchantWebhookSender:
    """Posts payment events to a merchant's webhook URL."""

    def __init__(
        self,
        secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secret = secret
        self._timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http_client

    @staticmethod
    def build_payment_event(tx: Transaction) -> WebhookEvent:
        event_type = (
            WebhookEventType.PAYMENT_COMPLETED
            if tx.status.value == "completed"
            else WebhookEventType.PAYMENT_FAILED
        )
        return WebhookEvent(
            event_type=event_type,
            data={
                "transaction_id": tx.tx_id,
                "merchant_id": tx.merchant_id,
                "amount": str(tx.amount),
                "currency": tx.currency,
                "chain": tx.chain_key,
                "tx_hash": tx.tx_hash,
                "explorer_url": tx.explorer_url,
                "status": tx.status.value,
                "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
            },
        )

    async def send(self, merchant: Merchant, tx: Transaction) -> Optional[DeliveryAttempt]:
        """Deliver a payment event. Returns None when the merchant has no URL."""
        if not merchant.webhook_url:
            return None
        event = self.build_payment_event(tx)
        return await self.deliver(merchant.webhook_url, event)

    async def deliver(self, url: str, event: WebhookEvent) -> DeliveryAttempt:
        payload = event.to_json()
        timestamp = int(event.created_at.timestamp())
        headers = {
            "Content-Type": "application/json",
            "X-CardPay-Signature": sign_payload(payload, self._secret, timestamp),
            "X-CardPay-Event-Type": event.event_type.value,
            "X-CardPay-Event-ID": event.event_id,
            "X-CardPay-Timestamp": str(timestamp),
        }

        attempt = DeliveryAttempt(
            event_id=event.event_id,
            event_type=event.event_type.value,
            url=url,
        )
        start_time = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(url, content=payload, headers=headers)
            attempt.status_code = response.status_code
            attempt.response_body = response.text[:500] if response.text else None
            attempt.success = response.status_code < 300
            if not attempt.success:
                attempt.error = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            attempt.error = str(e) or type(e).__name__
        attempt.duration_ms = int((time.monotonic() - start_time) * 1000)

        if attempt.success:
            logger.info("Webhook %s delivered to %s", event.event_id, url)
        else:
            logger.warning("Webhook %s to %s failed: %s", event.event_id, url, attempt.error)
        return attempt

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
