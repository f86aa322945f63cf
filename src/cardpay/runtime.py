"""Wires the engine's collaborators together from settings."""
from __future__ import annotations

import logging
from typing import Optional

from .cache import CacheBackend, create_cache
from .chains import ChainRegistry
from .config import CardPaySettings, load_settings
from .custody import KeyCustody, load_custody
from .ledger_client import LedgerClient
from .limits import CardSpendGuard
from .logging_config import setup_logging
from .notifier import StatusNotifier
from .orchestrator import PaymentOrchestrator
from .records import TransactionRecordManager
from .repository import InMemoryPaymentRepository, PaymentRepository
from .repository_postgres import PostgresPaymentRepository
from .stats import StatsAggregator
from .webhooks import MerchantWebhookSender

logger = logging.getLogger(__name__)


class PaymentRuntime:
    """
    Container for one engine instance.

    Build with ``await PaymentRuntime.create(settings)`` and release with
    ``close()`` or ``async with``.
    """

    def __init__(
        self,
        settings: CardPaySettings,
        registry: ChainRegistry,
        repository: PaymentRepository,
        cache: CacheBackend,
        custody: KeyCustody,
        ledger: LedgerClient,
        notifier: StatusNotifier,
        webhooks: MerchantWebhookSender,
        guard: CardSpendGuard,
        records: TransactionRecordManager,
        stats: StatsAggregator,
        orchestrator: PaymentOrchestrator,
    ):
        self.settings = settings
        self.registry = registry
        self.repository = repository
        self.cache = cache
        self.custody = custody
        self.ledger = ledger
        self.notifier = notifier
        self.webhooks = webhooks
        self.guard = guard
        self.records = records
        self.stats = stats
        self.orchestrator = orchestrator
        self._closed = False

    @classmethod
    async def create(
        cls,
        settings: Optional[CardPaySettings] = None,
        configure_logging: bool = True,
    ) -> "PaymentRuntime":
        settings = settings or load_settings()
        if configure_logging:
            setup_logging(level=settings.log_level, json_format=settings.log_json)

        registry = ChainRegistry.from_settings(settings.rpc_urls, settings.default_chain)

        if settings.uses_postgres:
            postgres = PostgresPaymentRepository(settings.database_url)
            await postgres.ensure_schema()
            repository: PaymentRepository = postgres
        else:
            if settings.environment == "prod":
                logger.warning("No PostgreSQL database configured; using in-memory store")
            repository = InMemoryPaymentRepository()

        cache = create_cache(settings.redis_url)
        custody = load_custody(settings.key_encryption_key, settings.environment)
        ledger = LedgerClient(settings)
        notifier = StatusNotifier()
        webhooks = MerchantWebhookSender(
            settings.webhook_secret, timeout=settings.webhook_timeout_seconds
        )
        guard = CardSpendGuard(repository)
        records = TransactionRecordManager(repository)
        stats = StatsAggregator(repository, cache, ttl_seconds=settings.stats_cache_ttl_seconds)
        orchestrator = PaymentOrchestrator(
            repository,
            registry,
            ledger,
            custody,
            notifier,
            guard=guard,
            records=records,
            webhooks=webhooks,
            cache=cache,
            stats=stats,
            transaction_cache_ttl=settings.transaction_cache_ttl_seconds,
        )

        logger.info(
            "Payment runtime ready (environment=%s, default_chain=%s, store=%s)",
            settings.environment,
            registry.default.key,
            type(repository).__name__,
        )
        return cls(
            settings=settings,
            registry=registry,
            repository=repository,
            cache=cache,
            custody=custody,
            ledger=ledger,
            notifier=notifier,
            webhooks=webhooks,
            guard=guard,
            records=records,
            stats=stats,
            orchestrator=orchestrator,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        finished = await self.orchestrator.wait_for_background_tasks(
            timeout=self.settings.webhook_timeout_seconds
        )
        if not finished:
            logger.warning("Background tasks still running at shutdown")
        await self.webhooks.close()
        await self.ledger.close()
        await self.cache.close()
        await self.repository.close()
        logger.info("Payment runtime closed")

    async def __aenter__(self) -> "PaymentRuntime":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
