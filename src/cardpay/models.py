"""Payment domain models."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zero() -> Decimal:
    return Decimal("0")


class CardType(str, Enum):
    VIRTUAL = "virtual"
    PHYSICAL = "physical"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    PAYMENT = "payment"


@dataclass(slots=True)
class SpendingCard:
    """A user-owned spending instrument with rolling spend accumulators."""

    card_id: str = field(default_factory=lambda: f"card_{uuid.uuid4().hex[:16]}")
    user_id: str = ""
    card_type: CardType = CardType.VIRTUAL
    last4: str = ""
    is_active: bool = True
    is_expired: bool = False
    blocked_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    daily_spent: Decimal = field(default_factory=_zero)
    monthly_spent: Decimal = field(default_factory=_zero)
    last_reset_date: datetime = field(default_factory=_utcnow)
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_blocked(self) -> bool:
        return self.blocked_at is not None

    def block(self, reason: str) -> None:
        self.blocked_at = _utcnow()
        self.blocked_reason = reason

    def unblock(self) -> None:
        self.blocked_at = None
        self.blocked_reason = None


@dataclass(slots=True)
class User:
    user_id: str = field(default_factory=lambda: f"usr_{uuid.uuid4().hex[:16]}")
    wallet_address: Optional[str] = None
    # Opaque handle understood only by the key custody collaborator
    encrypted_key_handle: Optional[str] = None
    daily_limit: Decimal = field(default_factory=lambda: Decimal("1000"))
    monthly_limit: Decimal = field(default_factory=lambda: Decimal("10000"))
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_address and self.encrypted_key_handle)


@dataclass(slots=True)
class Merchant:
    merchant_id: str = field(default_factory=lambda: f"mch_{uuid.uuid4().hex[:16]}")
    name: str = ""
    wallet_address: str = ""
    is_active: bool = True
    total_transactions: int = 0
    total_volume: Decimal = field(default_factory=_zero)
    webhook_url: Optional[str] = None


@dataclass(slots=True)
class Balance:
    balance: Decimal
    raw_balance: int
    symbol: str
    decimals: int = 18


@dataclass(slots=True)
class FeeEstimate:
    gas_units: int
    unit_price: int
    estimated_fee: Decimal


@dataclass(slots=True)
class FeeOverrides:
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None


@dataclass(slots=True)
class TransferReceipt:
    """Confirmed outcome of a native-token transfer."""

    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    amount_minor: int
    gas_used: int
    effective_gas_price: int
    fee: Decimal
    block_number: int
    explorer_url: str

    @property
    def total_cost(self) -> Decimal:
        return self.amount + self.fee


@dataclass(slots=True)
class Transaction:
    """Durable local record of one payment attempt."""

    tx_id: str = field(default_factory=lambda: f"tx_{uuid.uuid4().hex[:20]}")
    user_id: str = ""
    card_id: str = ""
    type: TransactionType = TransactionType.PAYMENT
    amount: Decimal = field(default_factory=_zero)
    currency: str = ""
    chain_key: str = ""
    chain_id: int = 0
    chain_name: str = ""
    merchant_id: str = ""
    merchant_name: str = ""
    from_address: str = ""
    to_address: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    fee_paid: Optional[Decimal] = None
    total_debited: Optional[Decimal] = None
    explorer_url: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        def _dt(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        def _dec(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "transaction_id": self.tx_id,
            "user_id": self.user_id,
            "card_id": self.card_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "chain": self.chain_key,
            "chain_id": self.chain_id,
            "chain_name": self.chain_name,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "fee_paid": _dec(self.fee_paid),
            "total_debited": _dec(self.total_debited),
            "explorer_url": self.explorer_url,
            "failure_reason": self.failure_reason,
            "failure_code": self.failure_code,
            "metadata": dict(self.metadata),
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
            "completed_at": _dt(self.completed_at),
            "refunded_at": _dt(self.refunded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        """Inverse of to_dict."""
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        def _dec(value: Optional[str]) -> Optional[Decimal]:
            return Decimal(value) if value is not None else None

        return cls(
            tx_id=data["transaction_id"],
            user_id=data["user_id"],
            card_id=data["card_id"],
            type=TransactionType(data["type"]),
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            chain_key=data["chain"],
            chain_id=data["chain_id"],
            chain_name=data["chain_name"],
            merchant_id=data["merchant_id"],
            merchant_name=data["merchant_name"],
            from_address=data["from_address"],
            to_address=data["to_address"],
            status=TransactionStatus(data["status"]),
            tx_hash=data.get("tx_hash"),
            block_number=data.get("block_number"),
            fee_paid=_dec(data.get("fee_paid")),
            total_debited=_dec(data.get("total_debited")),
            explorer_url=data.get("explorer_url"),
            failure_reason=data.get("failure_reason"),
            failure_code=data.get("failure_code"),
            metadata=dict(data.get("metadata") or {}),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            completed_at=_dt(data.get("completed_at")),
            refunded_at=_dt(data.get("refunded_at")),
        )


@dataclass(slots=True)
class TransactionPage:
    transactions: list
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
