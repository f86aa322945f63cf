"""Driver failures in the asyncpg repository surface as PersistenceUnavailableError.

These run without a database: a stub pool hands out connections that fail.
"""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from cardpay.exceptions import CardNotFoundError, PersistenceUnavailableError
from cardpay.models import Transaction
from cardpay.repository_postgres import PostgresPaymentRepository


class _Acquire:
    def __init__(self, conn, error=None):
        self._conn = conn
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self._conn

    async def __aexit__(self, *exc_info):
        return False


class StubPool:
    """Pool whose connections raise ``error`` from every query."""

    def __init__(self, error=None, acquire_error=None):
        self.conn = MagicMock()
        for method in ("execute", "fetch", "fetchrow", "fetchval"):
            setattr(self.conn, method, AsyncMock(side_effect=error))
        self._acquire_error = acquire_error

    def acquire(self):
        return _Acquire(self.conn, self._acquire_error)

    async def close(self):
        pass


def _repo(pool) -> PostgresPaymentRepository:
    repo = PostgresPaymentRepository("postgresql://localhost/unused")
    repo._pool = pool
    return repo


def _tx() -> Transaction:
    return Transaction(
        user_id="usr_pg",
        card_id="card_pg",
        amount=Decimal("10"),
        currency="U2U",
        chain_key="u2u_testnet",
        chain_id=2484,
        chain_name="U2U Testnet",
        merchant_id="mch_pg",
        merchant_name="Corner Coffee",
        from_address="0x" + "ab" * 20,
        to_address="0x" + "22" * 20,
    )


class TestQueryErrors:
    @pytest.mark.asyncio
    async def test_dropped_connection_on_read(self):
        repo = _repo(StubPool(error=asyncpg.exceptions.ConnectionDoesNotExistError(
            "connection was closed in the middle of operation"
        )))
        with pytest.raises(PersistenceUnavailableError) as exc_info:
            await repo.get_card("card_pg")
        assert exc_info.value.error_code == "PERSISTENCE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_dropped_connection_on_save(self):
        repo = _repo(StubPool(error=asyncpg.exceptions.ConnectionDoesNotExistError(
            "connection was closed in the middle of operation"
        )))
        with pytest.raises(PersistenceUnavailableError):
            await repo.save_transaction(_tx())

    @pytest.mark.asyncio
    async def test_server_error_on_save(self):
        repo = _repo(StubPool(error=asyncpg.exceptions.AdminShutdownError(
            "terminating connection due to administrator command"
        )))
        with pytest.raises(PersistenceUnavailableError):
            await repo.save_transaction(_tx())

    @pytest.mark.asyncio
    async def test_socket_error_on_acquire(self):
        repo = _repo(StubPool(acquire_error=ConnectionResetError("reset by peer")))
        with pytest.raises(PersistenceUnavailableError):
            await repo.get_transaction("tx_missing")

    @pytest.mark.asyncio
    async def test_closed_pool_on_acquire(self):
        repo = _repo(StubPool(acquire_error=asyncpg.InterfaceError("pool is closed")))
        with pytest.raises(PersistenceUnavailableError):
            await repo.list_pending(older_than=_tx().created_at)

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self):
        pool = StubPool()
        pool.conn.fetchrow = AsyncMock(return_value=None)
        pool.conn.fetchval = AsyncMock(return_value=None)
        repo = _repo(pool)
        with pytest.raises(CardNotFoundError):
            await repo.record_card_usage("card_missing", Decimal("1"), _tx().created_at)
