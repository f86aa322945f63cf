"""Payment orchestration: card payment -> on-chain transfer -> settled record.

Flow for process_payment:

    validate card -> load user -> admit limits (reserve) -> merchant -> chain
        -> open pending record -> publish "processing"
        -> decrypt key, sign, record hash, broadcast (shielded task)
        -> settle | fail | hold for reconciliation

The submission runs in its own task wrapped in asyncio.shield so a caller
that goes away mid-transfer cannot leave bookkeeping half done.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cache import CacheBackend
from .chains import ChainConfig, ChainRegistry
from .custody import KeyCustody
from .exceptions import (
    CardBlockedError,
    CardExpiredError,
    CardInactiveError,
    CardNotFoundError,
    CardPayClientError,
    CardPayEnvironmentError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidMerchantError,
    InvalidTransitionError,
    NotRetryableError,
    TransactionNotFoundError,
    TransferError,
    TransferTimeoutError,
    UnauthorizedError,
    UserNotFoundError,
    WalletNotConfiguredError,
)
from .ledger_client import LedgerClient, build_receipt, receipt_succeeded
from .limits import CardSpendGuard, Reservation
from .logging_config import payment_context
from .models import (
    FeeOverrides,
    Merchant,
    SpendingCard,
    Transaction,
    TransactionPage,
    TransactionStatus,
    TransferReceipt,
    User,
)
from .notifier import PaymentStatus, StatusEvent, StatusNotifier
from .records import TransactionRecordManager
from .repository import PaymentRepository
from .stats import StatsAggregator
from .webhooks import MerchantWebhookSender

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
NOT_SUBMITTED_REASON = "Submission did not reach the ledger"
REVERTED_REASON = "Transaction reverted on-chain"


class PaymentOrchestrator:
    """Coordinates limits, records, custody and the ledger for one payment."""

    def __init__(
        self,
        repository: PaymentRepository,
        registry: ChainRegistry,
        ledger: LedgerClient,
        custody: KeyCustody,
        notifier: StatusNotifier,
        guard: Optional[CardSpendGuard] = None,
        records: Optional[TransactionRecordManager] = None,
        webhooks: Optional[MerchantWebhookSender] = None,
        cache: Optional[CacheBackend] = None,
        stats: Optional[StatsAggregator] = None,
        transaction_cache_ttl: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repo = repository
        self._registry = registry
        self._ledger = ledger
        self._custody = custody
        self._notifier = notifier
        self._guard = guard or CardSpendGuard(repository)
        self._records = records or TransactionRecordManager(repository)
        self._webhooks = webhooks
        self._cache = cache
        self._stats = stats
        self._tx_cache_ttl = transaction_cache_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # tx_id -> submission task still running
        self._inflight: Dict[str, asyncio.Task[Transaction]] = {}
        # tx_ids whose signed transfer may already have left the process
        self._submitted: set[str] = set()
        # tx_id -> reservation kept until an ambiguous submission is reconciled
        self._held: Dict[str, Reservation] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Payment
    # =========================================================================

    async def process_payment(
        self,
        card_id: str,
        amount: Decimal | str | int,
        merchant_id: str,
        chain_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        overrides: Optional[FeeOverrides] = None,
    ) -> Transaction:
        """Run a card payment end to end and return the settled transaction.

        Raises:
            CardPayClientError: validation, limit or lookup failure; nothing
                was recorded.
            TransferError: the transfer failed; the record is ``failed``.
            TransferTimeoutError: outcome unknown; the record stays ``pending``
                with its hash until reconciled.
            CardPayEnvironmentError: a collaborator is unavailable.
        """
        amount = self._parse_amount(amount)

        with payment_context(request_id=request_id, card_id=card_id):
            card = await self._load_card(card_id)
            user = await self._load_user(card.user_id)

            with payment_context(user_id=user.user_id):
                reservation = await self._guard.admit(card.card_id, user, amount, now=self._clock())
                try:
                    merchant = await self._load_merchant(merchant_id)
                    chain = self._registry.resolve(chain_key)
                    chain.to_minor_units(amount)
                    if metadata and metadata.get("retry_of"):
                        await self._check_retry_source(metadata["retry_of"], user.user_id)
                    tx = await self._records.open(user, card, amount, merchant, chain, metadata)
                except BaseException:
                    self._guard.release(reservation)
                    raise

                room = request_id or tx.tx_id
                with payment_context(request_id=room, transaction_id=tx.tx_id):
                    self._notifier.publish(room, StatusEvent(
                        request_id=room,
                        status=PaymentStatus.PROCESSING,
                        transaction_id=tx.tx_id,
                        amount=amount,
                        merchant_id=merchant.merchant_id,
                    ))

                    task = asyncio.create_task(
                        self._execute(tx, user, merchant, chain, reservation, room, overrides)
                    )
                    self._inflight[tx.tx_id] = task
                    task.add_done_callback(lambda _t, tx_id=tx.tx_id: self._forget(tx_id))
                    try:
                        return await asyncio.shield(task)
                    except asyncio.CancelledError:
                        if tx.tx_id not in self._submitted:
                            # Caller left before anything was signed
                            task.cancel()
                            self._schedule_background(self._abandon(tx, reservation))
                        raise

    async def _execute(
        self,
        tx: Transaction,
        user: User,
        merchant: Merchant,
        chain: ChainConfig,
        reservation: Reservation,
        room: str,
        overrides: Optional[FeeOverrides],
    ) -> Transaction:
        async def record_signed(tx_hash: str) -> None:
            # The hash is durable before the payload can leave the process
            await self._records.attach_hash(tx, tx_hash)
            self._submitted.add(tx.tx_id)

        try:
            signing_key = await self._custody.decrypt(user.encrypted_key_handle or "")
            with signing_key:
                receipt = await self._ledger.submit_transfer(
                    signing_key,
                    merchant.wallet_address,
                    tx.amount,
                    chain,
                    overrides,
                    on_signed=record_signed,
                )
        except asyncio.CancelledError:
            if tx.tx_id in self._submitted:
                logger.warning("Submission of %s interrupted; holding for reconciliation", tx.tx_id)
                self._held[tx.tx_id] = reservation
            else:
                await self._abandon(tx, reservation)
            raise
        except TransferTimeoutError as e:
            await self._hold_ambiguous(tx, reservation, e.tx_hash)
            self._publish_failure(room, tx, e)
            raise
        except TransferError as e:
            await self._records.fail(tx, e.message, code=e.error_code)
            self._guard.release(reservation)
            self._publish_failure(room, tx, e)
            raise
        except CardPayClientError as e:
            await self._records.fail(tx, e.message, code=e.error_code)
            self._guard.release(reservation)
            self._publish_failure(room, tx, e)
            raise
        except CardPayEnvironmentError as e:
            # Raised before broadcast or when the endpoint refused the payload
            logger.error("Payment %s aborted, environment error: %s", tx.tx_id, e.message)
            if tx.tx_hash:
                await self._detach_hash(tx)
            self._guard.release(reservation)
            self._publish_failure(room, tx, e)
            raise
        except Exception as e:
            if tx.tx_id not in self._submitted:
                logger.exception("Payment %s aborted before signing", tx.tx_id)
                self._guard.release(reservation)
                self._publish_failure(room, tx, e)
                raise
            logger.exception("Unexpected error after signing %s; outcome unknown", tx.tx_id)
            ambiguous = TransferTimeoutError(
                f"Transfer outcome unknown: {e}", tx_hash=tx.tx_hash
            )
            await self._hold_ambiguous(tx, reservation, tx.tx_hash)
            self._publish_failure(room, tx, ambiguous)
            raise ambiguous from e

        await self._settle(tx, receipt, reservation, merchant)
        self._notifier.publish(room, StatusEvent(
            request_id=room,
            status=PaymentStatus.COMPLETED,
            transaction_id=tx.tx_id,
            tx_hash=receipt.tx_hash,
            amount=tx.amount,
            fee=receipt.fee,
            total_amount=receipt.total_cost,
            merchant_id=merchant.merchant_id,
            explorer_url=receipt.explorer_url,
            completed_at=tx.completed_at,
        ))
        if self._webhooks is not None and merchant.webhook_url:
            self._schedule_background(self._webhooks.send(merchant, tx))
        return tx

    async def _settle(
        self,
        tx: Transaction,
        receipt: TransferReceipt,
        reservation: Reservation,
        merchant: Merchant,
    ) -> None:
        """Settle the record, then apply accumulators. Only settlement may raise."""
        try:
            await self._records.settle(tx, receipt)
        except Exception:
            logger.critical(
                "Transfer %s confirmed but transaction %s could not be settled",
                receipt.tx_hash, tx.tx_id,
            )
            self._held[tx.tx_id] = reservation
            raise

        try:
            await self._guard.commit(reservation, used_at=tx.completed_at)
        except Exception:
            logger.exception("Failed to record card usage for %s", tx.tx_id)
        try:
            await self._repo.increment_merchant_totals(merchant.merchant_id, tx.amount)
        except Exception:
            logger.exception("Failed to update merchant totals for %s", tx.tx_id)
        await self._invalidate(tx)

    async def _hold_ambiguous(
        self,
        tx: Transaction,
        reservation: Reservation,
        tx_hash: Optional[str],
    ) -> None:
        logger.warning(
            "Transfer for %s is ambiguous (hash=%s); awaiting reconciliation",
            tx.tx_id, tx_hash,
        )
        self._held[tx.tx_id] = reservation
        tx.metadata["ambiguous"] = True
        if tx_hash:
            await self._records.attach_hash(tx, tx_hash)
        else:
            tx.touch()
            await self._repo.save_transaction(tx)

    async def _detach_hash(self, tx: Transaction) -> None:
        try:
            await self._records.detach_hash(tx)
        except CardPayEnvironmentError as e:
            logger.error("Could not clear unsent hash on %s: %s", tx.tx_id, e.message)

    async def _abandon(self, tx: Transaction, reservation: Reservation) -> None:
        """Cancel a record whose transfer was never signed. Safe to call twice."""
        self._guard.release(reservation)
        if tx.status == TransactionStatus.PENDING:
            await self._records.cancel(tx, "Payment cancelled before submission")

    def _forget(self, tx_id: str) -> None:
        self._inflight.pop(tx_id, None)
        self._submitted.discard(tx_id)

    def _publish_failure(self, room: str, tx: Transaction, error: Exception) -> None:
        self._notifier.publish(room, StatusEvent(
            request_id=room,
            status=PaymentStatus.FAILED,
            transaction_id=tx.tx_id,
            tx_hash=getattr(error, "tx_hash", None),
            amount=tx.amount,
            merchant_id=tx.merchant_id,
            error=getattr(error, "message", str(error)),
            error_code=getattr(error, "error_code", None),
        ))

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    def _parse_amount(amount: Decimal | str | int) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(amount, "Amount is not a number")
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(amount, "Amount must be positive")
        return value

    async def _load_card(self, card_id: str) -> SpendingCard:
        card = await self._repo.get_card(card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        if not card.is_active:
            raise CardInactiveError(card_id)
        if card.is_expired:
            raise CardExpiredError(card_id)
        if card.is_blocked:
            raise CardBlockedError(card_id, card.blocked_reason)
        return card

    async def _load_user(self, user_id: str) -> User:
        user = await self._repo.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.has_wallet:
            raise WalletNotConfiguredError(user_id)
        return user

    async def _load_merchant(self, merchant_id: str) -> Merchant:
        merchant = await self._repo.get_merchant(merchant_id)
        if merchant is None or not merchant.is_active:
            raise InvalidMerchantError(merchant_id)
        if not self._ledger.validate_address(merchant.wallet_address):
            raise InvalidAddressError(merchant.wallet_address, "Invalid merchant wallet address")
        return merchant

    async def _load_owned(self, tx_id: str, user_id: str) -> Transaction:
        tx = await self._repo.get_transaction(tx_id)
        if tx is None:
            raise TransactionNotFoundError(tx_id)
        if tx.user_id != user_id:
            raise UnauthorizedError("Transaction does not belong to user")
        return tx

    async def _check_retry_source(self, retry_of: str, user_id: str) -> None:
        source = await self._load_owned(retry_of, user_id)
        if source.status != TransactionStatus.FAILED:
            raise NotRetryableError("Only failed transactions can be retried")

    async def get_transaction(self, tx_id: str, user_id: Optional[str] = None) -> Transaction:
        """Fetch a transaction; settled and cancelled ones are served from cache."""
        key = f"transaction:{tx_id}"
        tx = None
        if self._cache is not None:
            cached = await self._cache.get_json(key)
            if cached is not None:
                tx = Transaction.from_dict(cached)
        if tx is None:
            tx = await self._repo.get_transaction(tx_id)
            if tx is None:
                raise TransactionNotFoundError(tx_id)
            if self._cache is not None and tx.is_terminal:
                await self._cache.set_json(key, tx.to_dict(), ttl=self._tx_cache_ttl)
        if user_id is not None and tx.user_id != user_id:
            raise UnauthorizedError("Transaction does not belong to user")
        return tx

    async def get_transaction_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        return await self._repo.list_user_transactions(user_id, page=page, limit=limit)

    # =========================================================================
    # Cancel / retry
    # =========================================================================

    async def cancel_transaction(
        self,
        tx_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Transaction:
        tx = await self._load_owned(tx_id, user_id)
        if tx_id in self._inflight:
            raise InvalidTransitionError("Transaction submission in progress")
        if tx.status == TransactionStatus.PENDING and tx.tx_hash:
            raise InvalidTransitionError("Transaction is awaiting on-chain confirmation")

        tx = await self._records.cancel(tx, reason)
        held = self._held.pop(tx_id, None)
        if held is not None:
            self._guard.release(held)
        await self._invalidate(tx)
        return tx

    async def retry_transaction(self, tx_id: str, user_id: str) -> Tuple[Transaction, Transaction]:
        """Re-run a failed payment as a new transaction linked by retry_of."""
        original = await self._load_owned(tx_id, user_id)
        if original.status != TransactionStatus.FAILED:
            raise NotRetryableError("Only failed transactions can be retried")

        metadata = dict(original.metadata)
        metadata.pop("ambiguous", None)
        metadata["retry_of"] = original.tx_id
        metadata["retry_attempt"] = int(original.metadata.get("retry_attempt", 0)) + 1

        logger.info("Retrying transaction %s (attempt %s)", tx_id, metadata["retry_attempt"])
        new_tx = await self.process_payment(
            original.card_id,
            original.amount,
            original.merchant_id,
            chain_key=original.chain_key,
            metadata=metadata,
        )
        return original, new_tx

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile_transaction(self, tx_id: str) -> Transaction:
        """Resolve a pending record against the ledger.

        With a hash, the receipt decides: success settles, revert fails, no
        receipt leaves it pending. Without a hash nothing was broadcast and the
        record is failed.
        """
        tx = await self._repo.get_transaction(tx_id)
        if tx is None:
            raise TransactionNotFoundError(tx_id)
        if tx.status != TransactionStatus.PENDING or tx_id in self._inflight:
            return tx

        with payment_context(transaction_id=tx_id, card_id=tx.card_id, user_id=tx.user_id):
            if not tx.tx_hash:
                await self._records.fail(tx, NOT_SUBMITTED_REASON, code="NOT_SUBMITTED")
                self._release_held(tx_id)
                await self._invalidate(tx)
                return tx

            chain = self._registry.resolve(tx.chain_key)
            raw = await self._ledger.get_receipt(tx.tx_hash, chain)
            if raw is None:
                logger.info("Transaction %s still unconfirmed (%s)", tx_id, tx.tx_hash)
                return tx

            if not receipt_succeeded(raw):
                await self._records.fail(tx, REVERTED_REASON, code="TRANSFER_REJECTED")
                self._release_held(tx_id)
                await self._invalidate(tx)
                return tx

            receipt = build_receipt(
                raw, chain, tx.amount,
                tx_hash=tx.tx_hash, sender=tx.from_address, recipient=tx.to_address,
            )
            reservation = self._held.pop(tx_id, None) or Reservation(
                card_id=tx.card_id, amount=tx.amount
            )
            merchant = await self._repo.get_merchant(tx.merchant_id) or Merchant(
                merchant_id=tx.merchant_id, name=tx.merchant_name, wallet_address=tx.to_address
            )
            await self._settle(tx, receipt, reservation, merchant)
            logger.info("Reconciled %s as completed", tx_id)
            return tx

    async def reconcile_pending(self, older_than: timedelta = timedelta(minutes=5)) -> List[Transaction]:
        """Sweep pending records older than ``older_than``."""
        cutoff = self._clock() - older_than
        results = []
        for tx in await self._repo.list_pending(cutoff):
            if tx.tx_id in self._inflight:
                continue
            try:
                results.append(await self.reconcile_transaction(tx.tx_id))
            except CardPayEnvironmentError as e:
                logger.warning("Reconciliation of %s deferred: %s", tx.tx_id, e.message)
        return results

    def _release_held(self, tx_id: str) -> None:
        held = self._held.pop(tx_id, None)
        if held is not None:
            self._guard.release(held)

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def _invalidate(self, tx: Transaction) -> None:
        if self._cache is not None:
            await self._cache.delete(f"transaction:{tx.tx_id}")
        if self._stats is not None:
            await self._stats.invalidate(tx.user_id, tx.card_id)

    def _schedule_background(self, coro: Any) -> None:
        """Schedule a background coroutine while tracking task lifecycle."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight submissions and background deliveries.

        Returns False when some were still running at the timeout; nothing is
        cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            tasks = {
                t for t in list(self._inflight.values()) + list(self._background_tasks)
                if not t.done()
            }
            if not tasks:
                return True
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            _, pending = await asyncio.wait(tasks, timeout=remaining)
            if pending:
                return False

    @property
    def held_reservations(self) -> Dict[str, Reservation]:
        return dict(self._held)
