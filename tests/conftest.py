"""
Pytest configuration for cardpay tests.
"""
from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from web3 import Web3

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("CARDPAY_ENVIRONMENT", "dev")
os.environ.setdefault("CARDPAY_LOG_JSON", "false")

from cardpay.cache import InMemoryCache
from cardpay.chains import ChainConfig, ChainRegistry
from cardpay.config import CardPaySettings
from cardpay.custody import FernetKeyCustody
from cardpay.exceptions import (
    FeeEstimationFailedError,
    InsufficientFundsError,
    InvalidAddressError,
    LedgerUnavailableError,
)
from cardpay.ledger_client import LedgerClient, build_receipt
from cardpay.models import CardType, Merchant, SpendingCard, TransferReceipt, User
from cardpay.notifier import StatusNotifier
from cardpay.orchestrator import PaymentOrchestrator
from cardpay.repository import InMemoryPaymentRepository
from cardpay.rpc_client import ChainRPCClient
from cardpay.stats import StatsAggregator

TEST_PRIVATE_KEY = "0x" + "11" * 32
SENDER_ADDRESS = "0x" + "ab" * 20
MERCHANT_ADDRESS = "0x" + "22" * 20
GAS_PRICE = 1_000_000_000


def make_tx_hash(n: int = 1) -> str:
    return "0x" + f"{n:064x}"


def raw_receipt(
    tx_hash: str,
    status: int = 1,
    block: int = 100,
    gas_used: int = 21_000,
    gas_price: int = GAS_PRICE,
) -> Dict[str, Any]:
    return {
        "transactionHash": tx_hash,
        "status": hex(status),
        "blockNumber": hex(block),
        "gasUsed": hex(gas_used),
        "effectiveGasPrice": hex(gas_price),
        "from": SENDER_ADDRESS,
        "to": MERCHANT_ADDRESS,
    }


def make_receipt(
    chain: ChainConfig,
    amount: Decimal,
    tx_hash: Optional[str] = None,
    block: int = 100,
) -> TransferReceipt:
    return build_receipt(raw_receipt(tx_hash or make_tx_hash(), block=block), chain, amount)


class FakeNode:
    """In-process JSON-RPC endpoint served through httpx.MockTransport.

    Accepts every broadcast unless ``broadcast`` is set to a callable that
    takes the raw payload and returns the httpx.Response to send back.
    Accepted payloads are mined at once while ``auto_mine`` is set; otherwise
    receipts come only from ``receipts``.
    """

    def __init__(self, auto_mine: bool = True):
        self.auto_mine = auto_mine
        self.broadcast = None
        self.sent: List[str] = []
        self.receipts: Dict[str, Any] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        if method == "eth_sendRawTransaction":
            self.sent.append(params[0])
            if self.broadcast is not None:
                return self.broadcast(params[0])
            result = Web3.to_hex(Web3.keccak(hexstr=params[0]))
            if self.auto_mine:
                self.receipts[result] = raw_receipt(result)
        elif method == "eth_getTransactionReceipt":
            result = self.receipts.get(params[0])
        else:
            result = {
                "eth_getTransactionCount": "0x0",
                "eth_estimateGas": hex(21_000),
                "eth_gasPrice": hex(GAS_PRICE),
                "eth_blockNumber": hex(100),
            }[method]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def rpc_factory(self, chain: ChainConfig) -> ChainRPCClient:
        return ChainRPCClient(chain.rpc_url, transport=httpx.MockTransport(self.handler))


class ScriptedLedger(LedgerClient):
    """LedgerClient whose transfers and receipts are scripted per test.

    ``outcomes`` is consumed one entry per submission: a TransferReceipt is
    returned, an exception is raised, None means "succeed with a fresh hash".
    Exceptions in ``UNSIGNED_ERRORS`` are raised before anything is signed;
    every other outcome reports its hash through ``on_signed`` first.
    Set ``gate`` to an asyncio.Event to hold submissions until it is set.
    """

    UNSIGNED_ERRORS = (
        InsufficientFundsError,
        FeeEstimationFailedError,
        InvalidAddressError,
        LedgerUnavailableError,
    )

    def __init__(self, settings: CardPaySettings):
        super().__init__(settings)
        self.outcomes: List[Any] = []
        self.receipts: Dict[str, Any] = {}
        self.submissions: List[Dict[str, Any]] = []
        self.signed: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self._counter = 0

    async def submit_transfer(self, signing_key, to_address, amount, chain, overrides=None, on_signed=None):
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, self.UNSIGNED_ERRORS):
            raise outcome

        tx_hash = getattr(outcome, "tx_hash", None)
        if tx_hash is None:
            self._counter += 1
            tx_hash = make_tx_hash(1000 + self._counter)
        if on_signed is not None:
            await on_signed(tx_hash)
        self.signed.append(tx_hash)

        self.submissions.append({
            "to": to_address,
            "amount": amount,
            "chain": chain.key,
            "key_bytes": signing_key.secret_bytes(),
            "signing_key": signing_key,
        })
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            outcome = make_receipt(chain, amount, tx_hash=tx_hash)
        return outcome

    async def get_receipt(self, tx_hash, chain):
        value = self.receipts.get(tx_hash)
        if isinstance(value, BaseException):
            raise value
        return value


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings() -> CardPaySettings:
    return CardPaySettings(
        _env_file=None,
        poll_interval_seconds=0.0,
        confirmation_timeout_seconds=0.05,
    )


@pytest.fixture
def registry() -> ChainRegistry:
    return ChainRegistry.from_settings()


@pytest.fixture
def chain(registry) -> ChainConfig:
    return registry.resolve("u2u_testnet")


@pytest.fixture
def repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def custody() -> FernetKeyCustody:
    return FernetKeyCustody(Fernet.generate_key())


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def notifier() -> StatusNotifier:
    return StatusNotifier()


@pytest.fixture
def ledger(settings) -> ScriptedLedger:
    return ScriptedLedger(settings)


@pytest.fixture
def user(custody) -> User:
    return User(
        user_id="usr_alice",
        wallet_address=SENDER_ADDRESS,
        encrypted_key_handle=custody.encrypt(TEST_PRIVATE_KEY),
        daily_limit=Decimal("1000"),
        monthly_limit=Decimal("10000"),
        email="alice@example.com",
    )


@pytest.fixture
def card(user) -> SpendingCard:
    return SpendingCard(
        card_id="card_alice",
        user_id=user.user_id,
        card_type=CardType.VIRTUAL,
        last4="4242",
        last_reset_date=datetime.now(timezone.utc),
    )


@pytest.fixture
def merchant() -> Merchant:
    return Merchant(
        merchant_id="mch_coffee",
        name="Corner Coffee",
        wallet_address=MERCHANT_ADDRESS,
    )


@pytest_asyncio.fixture
async def seeded(repo, user, card, merchant):
    """Repository holding the sample user, card and merchant."""
    await repo.save_user(user)
    await repo.save_card(card)
    await repo.save_merchant(merchant)
    return repo


@pytest.fixture
def stats(repo, cache) -> StatsAggregator:
    return StatsAggregator(repo, cache, ttl_seconds=300)


@pytest.fixture
def orchestrator(repo, registry, ledger, custody, notifier, cache, stats) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        repo,
        registry,
        ledger,
        custody,
        notifier,
        cache=cache,
        stats=stats,
    )
