"""Tests for the transaction record lifecycle."""
from __future__ import annotations

from decimal import Decimal

import pytest

from cardpay.exceptions import InvalidTransitionError, TransactionStateError
from cardpay.models import TransactionStatus
from cardpay.records import DEFAULT_CANCEL_REASON, TransactionRecordManager

from conftest import make_receipt, make_tx_hash


@pytest.fixture
def records(repo):
    return TransactionRecordManager(repo)


async def _open(records, user, card, merchant, chain, amount="10"):
    return await records.open(user, card, Decimal(amount), merchant, chain, {"order": "42"})


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_creates_pending_record(self, records, repo, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)

        stored = await repo.get_transaction(tx.tx_id)
        assert stored.status == TransactionStatus.PENDING
        assert stored.tx_id.startswith("tx_")
        assert stored.currency == "U2U"
        assert stored.chain_key == "u2u_testnet"
        assert stored.chain_id == 2484
        assert stored.merchant_name == "Corner Coffee"
        assert stored.from_address == user.wallet_address
        assert stored.to_address == merchant.wallet_address
        assert stored.metadata == {"order": "42"}
        assert stored.tx_hash is None

    @pytest.mark.asyncio
    async def test_open_twice_gives_distinct_ids(self, records, user, card, merchant, chain):
        first = await _open(records, user, card, merchant, chain)
        second = await _open(records, user, card, merchant, chain)
        assert first.tx_id != second.tx_id


class TestTransitions:
    @pytest.mark.asyncio
    async def test_settle(self, records, repo, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        receipt = make_receipt(chain, tx.amount, tx_hash=make_tx_hash(7), block=321)

        await records.settle(tx, receipt)

        stored = await repo.get_transaction(tx.tx_id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.tx_hash == make_tx_hash(7)
        assert stored.block_number == 321
        assert stored.fee_paid == Decimal("0.000021")
        assert stored.total_debited == Decimal("10.000021")
        assert stored.explorer_url == chain.tx_url(make_tx_hash(7))
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_settle_same_hash_twice_is_noop(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        receipt = make_receipt(chain, tx.amount)
        await records.settle(tx, receipt)
        completed_at = tx.completed_at

        await records.settle(tx, receipt)
        assert tx.completed_at == completed_at

    @pytest.mark.asyncio
    async def test_settle_after_fail_raises(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.fail(tx, "Insufficient balance for transfer", code="INSUFFICIENT_FUNDS")

        with pytest.raises(TransactionStateError):
            await records.settle(tx, make_receipt(chain, tx.amount))
        assert tx.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_fail_after_settle_raises(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.settle(tx, make_receipt(chain, tx.amount))

        with pytest.raises(TransactionStateError):
            await records.fail(tx, "late failure")
        assert tx.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_records_reason_and_code(self, records, repo, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.fail(tx, "Insufficient balance for transfer", code="INSUFFICIENT_FUNDS")

        stored = await repo.get_transaction(tx.tx_id)
        assert stored.failure_reason == "Insufficient balance for transfer"
        assert stored.failure_code == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_attach_hash_only_while_pending(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.attach_hash(tx, make_tx_hash(3))
        assert tx.tx_hash == make_tx_hash(3)

        await records.fail(tx, "nope")
        with pytest.raises(TransactionStateError):
            await records.attach_hash(tx, make_tx_hash(4))


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_uses_default_reason(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.cancel(tx)
        assert tx.status == TransactionStatus.CANCELLED
        assert tx.failure_reason == DEFAULT_CANCEL_REASON

    @pytest.mark.asyncio
    async def test_cancel_failed(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.fail(tx, "rejected")
        await records.cancel(tx, "changed my mind")
        assert tx.status == TransactionStatus.CANCELLED
        assert tx.failure_reason == "changed my mind"

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.settle(tx, make_receipt(chain, tx.amount))
        with pytest.raises(InvalidTransitionError, match="Cannot cancel completed transaction"):
            await records.cancel(tx)

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, records, user, card, merchant, chain):
        tx = await _open(records, user, card, merchant, chain)
        await records.cancel(tx)
        with pytest.raises(InvalidTransitionError, match="already cancelled"):
            await records.cancel(tx)
