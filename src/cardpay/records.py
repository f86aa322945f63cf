"""Transaction record lifecycle.

    pending --settle--> completed
    pending --fail----> failed
    pending --cancel--> cancelled
    failed  --cancel--> cancelled

completed and cancelled are terminal. A record is written exactly once in
pending and moves to a terminal-or-failed state at most once per path.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .chains import ChainConfig
from .exceptions import InvalidTransitionError, TransactionStateError
from .models import (
    Merchant,
    SpendingCard,
    Transaction,
    TransactionStatus,
    TransferReceipt,
    User,
)
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by user"


class TransactionRecordManager:
    def __init__(self, repository: PaymentRepository):
        self._repo = repository

    async def open(
        self,
        user: User,
        card: SpendingCard,
        amount: Decimal,
        merchant: Merchant,
        chain: ChainConfig,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Insert a new pending record. No deduplication: every call is a new id."""
        tx = Transaction(
            user_id=user.user_id,
            card_id=card.card_id,
            amount=amount,
            currency=chain.symbol,
            chain_key=chain.key,
            chain_id=chain.chain_id,
            chain_name=chain.name,
            merchant_id=merchant.merchant_id,
            merchant_name=merchant.name,
            from_address=user.wallet_address or "",
            to_address=merchant.wallet_address,
            metadata=dict(metadata or {}),
        )
        await self._repo.create_transaction(tx)
        logger.info(
            "Opened transaction %s: %s %s card=%s merchant=%s chain=%s",
            tx.tx_id, amount, chain.symbol, card.card_id, merchant.merchant_id, chain.key,
        )
        return tx

    async def attach_hash(self, tx: Transaction, tx_hash: str) -> Transaction:
        """Record the on-chain hash of a submitted, unconfirmed transfer."""
        if tx.status != TransactionStatus.PENDING:
            raise TransactionStateError(
                f"Cannot attach hash to {tx.status.value} transaction {tx.tx_id}"
            )
        tx.tx_hash = tx_hash
        tx.touch()
        await self._repo.save_transaction(tx)
        return tx

    async def detach_hash(self, tx: Transaction) -> Transaction:
        """Drop the hash of a signed payload the ledger never accepted."""
        if tx.status != TransactionStatus.PENDING:
            raise TransactionStateError(
                f"Cannot detach hash from {tx.status.value} transaction {tx.tx_id}"
            )
        tx.tx_hash = None
        tx.touch()
        await self._repo.save_transaction(tx)
        return tx

    async def settle(self, tx: Transaction, receipt: TransferReceipt) -> Transaction:
        """pending -> completed. Re-settling with the same hash is a no-op."""
        if tx.status == TransactionStatus.COMPLETED and tx.tx_hash == receipt.tx_hash:
            logger.debug("Transaction %s already settled with %s", tx.tx_id, receipt.tx_hash)
            return tx
        if tx.status != TransactionStatus.PENDING:
            raise TransactionStateError(
                f"Cannot settle {tx.status.value} transaction {tx.tx_id}"
            )

        now = datetime.now(timezone.utc)
        tx.status = TransactionStatus.COMPLETED
        tx.tx_hash = receipt.tx_hash
        tx.block_number = receipt.block_number
        tx.fee_paid = receipt.fee
        tx.total_debited = receipt.total_cost
        tx.explorer_url = receipt.explorer_url
        tx.failure_reason = None
        tx.failure_code = None
        tx.completed_at = now
        tx.updated_at = now
        await self._repo.save_transaction(tx)
        logger.info("Transaction %s completed: %s", tx.tx_id, receipt.tx_hash)
        return tx

    async def fail(
        self,
        tx: Transaction,
        reason: str,
        code: Optional[str] = None,
    ) -> Transaction:
        """pending -> failed."""
        if tx.status != TransactionStatus.PENDING:
            raise TransactionStateError(
                f"Cannot fail {tx.status.value} transaction {tx.tx_id}"
            )
        tx.status = TransactionStatus.FAILED
        tx.failure_reason = reason
        tx.failure_code = code
        tx.touch()
        await self._repo.save_transaction(tx)
        logger.warning("Transaction %s failed: %s", tx.tx_id, reason)
        return tx

    async def cancel(self, tx: Transaction, reason: Optional[str] = None) -> Transaction:
        """pending|failed -> cancelled."""
        if tx.status == TransactionStatus.COMPLETED:
            raise InvalidTransitionError("Cannot cancel completed transaction")
        if tx.status == TransactionStatus.CANCELLED:
            raise InvalidTransitionError("Transaction already cancelled")

        tx.status = TransactionStatus.CANCELLED
        tx.failure_reason = reason or DEFAULT_CANCEL_REASON
        tx.touch()
        await self._repo.save_transaction(tx)
        logger.info("Transaction %s cancelled: %s", tx.tx_id, tx.failure_reason)
        return tx
