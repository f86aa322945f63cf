"""Card and QR payment orchestration over EVM chains."""

from .config import CardPaySettings, load_settings
from .chains import CHAIN_CONFIGS, DEFAULT_CHAIN, ChainConfig, ChainRegistry
from .models import (
    Balance,
    CardType,
    FeeEstimate,
    FeeOverrides,
    Merchant,
    SpendingCard,
    Transaction,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    TransferReceipt,
    User,
)
from .exceptions import (
    CardPayError,
    CardPayClientError,
    CardPayEnvironmentError,
    TransferError,
    TransferTimeoutError,
    classify_transfer_error,
)
from .custody import FernetKeyCustody, KeyCustody, SigningKey, load_custody
from .ledger_client import LedgerClient
from .limits import CardSpendGuard, LimitDecision, LimitEvaluator, Reservation
from .records import TransactionRecordManager
from .repository import InMemoryPaymentRepository, PaymentRepository
from .repository_postgres import PostgresPaymentRepository
from .notifier import PaymentStatus, StatusEvent, StatusNotifier, Subscription
from .webhooks import MerchantWebhookSender, WebhookEvent, WebhookEventType
from .cache import CacheBackend, InMemoryCache, RedisCache, create_cache
from .stats import PaymentStats, StatsAggregator
from .orchestrator import PaymentOrchestrator
from .runtime import PaymentRuntime

__version__ = "0.3.0"

__all__ = [
    "CardPaySettings",
    "load_settings",
    "CHAIN_CONFIGS",
    "DEFAULT_CHAIN",
    "ChainConfig",
    "ChainRegistry",
    "Balance",
    "CardType",
    "FeeEstimate",
    "FeeOverrides",
    "Merchant",
    "SpendingCard",
    "Transaction",
    "TransactionPage",
    "TransactionStatus",
    "TransactionType",
    "TransferReceipt",
    "User",
    "CardPayError",
    "CardPayClientError",
    "CardPayEnvironmentError",
    "TransferError",
    "TransferTimeoutError",
    "classify_transfer_error",
    "FernetKeyCustody",
    "KeyCustody",
    "SigningKey",
    "load_custody",
    "LedgerClient",
    "CardSpendGuard",
    "LimitDecision",
    "LimitEvaluator",
    "Reservation",
    "TransactionRecordManager",
    "InMemoryPaymentRepository",
    "PaymentRepository",
    "PostgresPaymentRepository",
    "PaymentStatus",
    "StatusEvent",
    "StatusNotifier",
    "Subscription",
    "MerchantWebhookSender",
    "WebhookEvent",
    "WebhookEventType",
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "create_cache",
    "PaymentStats",
    "StatsAggregator",
    "PaymentOrchestrator",
    "PaymentRuntime",
]
