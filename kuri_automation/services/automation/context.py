"""
Automation context: one explicitly owned set of clients and engine state.
"""

import time
from typing import Callable, Optional

import structlog

from kuri_automation.core.config import Settings
from kuri_automation.core.retry import RetryPolicy
from kuri_automation.services.chain_client import ChainReader, ChainWriter, build_web3
from kuri_automation.services.indexer_client import IndexerClient
from kuri_automation.services.monitoring_service import AlertConfig, MonitoringService
from kuri_automation.services.reporting_service import ReportingService
from .raffle_orchestrator import RaffleOrchestrator
from .subscription_funding import SubscriptionFundingOrchestrator
from .subscription_store import FundedSubscriptionStore
from .transaction_supervisor import TransactionSupervisor


logger = structlog.get_logger(__name__)


class AutomationContext:
    """
    Holds everything one automation instance needs.

    The pending-transaction map, the funded-set, the failed-funding counters
    and the cool-down timestamps live on the objects owned here, so several
    contexts (one per chain, or one per test) can coexist.
    """

    def __init__(
        self,
        settings: Settings,
        indexer,
        chain_reader,
        chain_writer,
        store: Optional[FundedSubscriptionStore] = None,
        clock: Callable[[], float] = time.time
    ):
        self.settings = settings
        self.indexer = indexer
        self.chain_reader = chain_reader
        self.chain_writer = chain_writer
        self.clock = clock

        self.retry_policy = RetryPolicy(
            retries=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay
        )

        self.monitoring = MonitoringService(
            chain_reader=chain_reader,
            alert_config=AlertConfig(
                gas_threshold=settings.gas_alert_threshold,
                error_rate_threshold=settings.error_rate_threshold,
                confirmation_time_threshold=settings.confirmation_time_threshold,
                network_latency_threshold=settings.network_latency_threshold,
            ),
            clock=clock,
        )
        self.reporting = ReportingService(
            self.monitoring,
            output_dir=settings.reports_dir,
            retention_days=settings.report_retention_days,
            clock=clock,
        )

        self.supervisor = TransactionSupervisor(
            chain_reader,
            monitoring=self.monitoring,
            confirmations=settings.tx_confirmation_blocks,
            max_retries=settings.tx_max_retries,
            receipt_timeout=settings.tx_receipt_timeout,
            clock=clock,
        )

        self.store = store if store is not None else FundedSubscriptionStore(settings.funded_subscriptions_file)

        self.raffles = RaffleOrchestrator(
            indexer,
            chain_reader,
            chain_writer,
            self.supervisor,
            retry_policy=self.retry_policy,
            cooldown_seconds=settings.raffle_cooldown_seconds,
            onchain_winner_check=settings.onchain_winner_check,
            clock=clock,
        )
        self.funding = SubscriptionFundingOrchestrator(
            indexer,
            chain_reader,
            chain_writer,
            self.store,
            retry_policy=self.retry_policy,
            min_balance=settings.min_subscription_balance,
            top_up_amount=settings.subscription_top_up_amount,
            max_retries=settings.funding_max_retries,
            settle_delay=settings.funding_settle_delay,
            confirmations=settings.tx_confirmation_blocks,
            receipt_timeout=settings.tx_receipt_timeout,
            monitoring=self.monitoring,
        )

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.time) -> "AutomationContext":
        """Build the live clients for ``settings`` (one web3 connection shared by reader and writer)."""
        w3 = build_web3(settings.rpc_url)
        context = cls(
            settings,
            indexer=IndexerClient(settings.indexer_url, timeout=settings.indexer_timeout),
            chain_reader=ChainReader.from_settings(settings, w3=w3),
            chain_writer=ChainWriter.from_settings(settings, w3=w3),
            clock=clock,
        )
        logger.info(
            "Automation context created",
            chain_id=settings.chain_id,
            account=context.chain_writer.address,
            indexer=settings.indexer_url
        )
        return context

    async def close(self):
        await self.supervisor.close()
        close_indexer = getattr(self.indexer, "close", None)
        if close_indexer is not None:
            await close_indexer()
        logger.info("Automation context closed")
