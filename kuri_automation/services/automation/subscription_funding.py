"""
VRF subscription funding automation.
"""

import asyncio
import time
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from kuri_automation.core.config import LINK_DECIMALS
from kuri_automation.core.retry import RetryPolicy
from .subscription_store import FundedSubscriptionStore
from .types import FundingBatchStats, FundingOutcome, FundingResult, TxAction


logger = structlog.get_logger(__name__)


def format_link(amount: int) -> str:
    return f"{amount / LINK_DECIMALS:.4f} LINK"


class SubscriptionFundingOrchestrator:
    """
    Keeps every market's VRF subscription above the minimum balance.

    Subscriptions are discovered through the markets that use them, so one
    subscription shared by several markets is checked and funded once. IDs
    confirmed funded go into the persisted funded-set and are skipped from
    then on. Failed top-ups count against a per-subscription budget held in
    memory until restart.
    """

    def __init__(
        self,
        directory,
        chain_reader,
        chain_writer,
        store: FundedSubscriptionStore,
        retry_policy: Optional[RetryPolicy] = None,
        min_balance: int = 10 ** 17,
        top_up_amount: int = 5 * 10 ** 18,
        max_retries: int = 3,
        settle_delay: float = 5.0,
        confirmations: int = 2,
        receipt_timeout: float = 300,
        monitoring=None
    ):
        self.directory = directory
        self.chain_reader = chain_reader
        self.chain_writer = chain_writer
        self.store = store
        self.retry = retry_policy or RetryPolicy()
        self.min_balance = min_balance
        self.top_up_amount = top_up_amount
        self.max_retries = max_retries
        self.settle_delay = settle_delay
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout
        self.monitoring = monitoring
        self.logger = logger.bind(service="subscription_funding")

        self.failed_attempts: Dict[str, int] = {}
        self.last_stats: Optional[FundingBatchStats] = None

    async def process_unfunded_subscriptions(self) -> FundingBatchStats:
        """One scheduler tick. Never raises; failures are counted in the stats."""
        stats = FundingBatchStats(start_time=datetime.utcnow())
        self.logger.info("🔍 Checking for unfunded subscriptions")

        try:
            snapshot = await self.retry.run(self.directory.get_active_markets, "get_active_markets")
        except Exception as e:
            stats.aborted = True
            stats.error = str(e)
            stats.end_time = datetime.utcnow()
            self.last_stats = stats
            self.logger.error("Error processing subscriptions, batch aborted", error=str(e))
            return stats

        subscriptions = await self.collect_subscription_ids(
            [market.market_address for market in snapshot.deployed]
        )
        stats.items_found = len(subscriptions)
        self.logger.info("Found unique subscriptions", count=len(subscriptions))

        for subscription_id, markets in subscriptions.items():
            result = await self.process_subscription(subscription_id, markets)
            stats.results.append(result)
            stats.record(result.outcome)

        stats.end_time = datetime.utcnow()
        self.last_stats = stats
        self.logger.info(
            "Subscription check completed",
            subscriptions=stats.items_found,
            funded=stats.funded,
            outcomes=stats.outcomes,
            duration=f"{stats.duration:.2f}s"
        )
        return stats

    async def collect_subscription_ids(self, market_addresses: List[str]) -> Dict[str, List[str]]:
        """Distinct nonzero subscription IDs, each with the markets that use it."""
        subscriptions: Dict[str, List[str]] = {}

        for market_address in market_addresses:
            try:
                subscription_id = await self.retry.run(
                    lambda: self.chain_reader.get_subscription_id(market_address),
                    "s_subscriptionId"
                )
            except Exception as e:
                self.logger.error("Error getting subscription ID", market=market_address, error=str(e))
                continue

            if not subscription_id:
                continue
            subscriptions.setdefault(str(subscription_id), []).append(market_address)

        return subscriptions

    async def process_subscription(self, subscription_id: str, markets: Optional[List[str]] = None) -> FundingResult:
        try:
            return await self._process_subscription(subscription_id, markets or [])
        except Exception as e:
            self._record_failure(subscription_id)
            self.logger.error("Error processing subscription", subscription_id=subscription_id, error=str(e))
            return FundingResult(subscription_id, FundingOutcome.FAILED, detail=str(e))

    async def _process_subscription(self, subscription_id: str, markets: List[str]) -> FundingResult:
        log = self.logger.bind(subscription_id=subscription_id)

        if subscription_id in self.store:
            log.debug("Subscription already funded, skipping")
            return FundingResult(subscription_id, FundingOutcome.ALREADY_FUNDED)

        try:
            info = await self.retry.run(
                lambda: self.chain_reader.get_subscription_info(int(subscription_id)),
                "getSubscription"
            )
        except Exception as e:
            log.error("Could not get subscription info", error=str(e))
            return FundingResult(subscription_id, FundingOutcome.READ_FAILED, detail=str(e))

        if info.balance >= self.min_balance:
            log.info("Subscription has sufficient balance", balance=format_link(info.balance))
            self.store.add(subscription_id)
            return FundingResult(subscription_id, FundingOutcome.SUFFICIENT)

        failures = self.failed_attempts.get(subscription_id, 0)
        if failures >= self.max_retries:
            log.warning("Max funding retries reached, skipping until restart", attempts=failures)
            return FundingResult(subscription_id, FundingOutcome.RETRIES_EXHAUSTED)

        log.info(
            "💰 Funding subscription",
            balance=format_link(info.balance),
            amount=format_link(self.top_up_amount),
            markets=markets
        )

        try:
            tx_hash = await self.chain_writer.top_up_subscription(self.top_up_amount, int(subscription_id))
        except Exception as e:
            self._record_failure(subscription_id)
            log.error("Failed to submit funding transaction", error=str(e))
            return FundingResult(subscription_id, FundingOutcome.FAILED, detail=str(e))

        started = time.monotonic()
        try:
            receipt = await self.chain_reader.wait_for_receipt(
                tx_hash,
                confirmations=self.confirmations,
                timeout=self.receipt_timeout
            )
        except Exception as e:
            self._record_failure(subscription_id)
            log.error("Error awaiting funding receipt", tx_hash=tx_hash, error=str(e))
            return FundingResult(subscription_id, FundingOutcome.FAILED, tx_hash=tx_hash, detail=str(e))

        if self.monitoring is not None:
            self.monitoring.record_transaction(
                tx_hash=tx_hash,
                market_address=markets[0] if markets else f"subscription:{subscription_id}",
                operation_type=TxAction.FUNDING.value,
                gas_used=receipt.gas_used,
                confirmation_time=time.monotonic() - started,
                success=receipt.succeeded,
            )

        if not receipt.succeeded:
            self._record_failure(subscription_id)
            log.error("Funding transaction failed", tx_hash=tx_hash)
            return FundingResult(subscription_id, FundingOutcome.TX_FAILED, tx_hash=tx_hash)

        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        if await self._verify_balance(subscription_id):
            self.failed_attempts.pop(subscription_id, None)
            self.store.add(subscription_id)
            log.info("✅ Subscription funded", tx_hash=tx_hash)
            return FundingResult(subscription_id, FundingOutcome.FUNDED, tx_hash=tx_hash)

        self._record_failure(subscription_id)
        log.error("Funding verification failed", tx_hash=tx_hash)
        return FundingResult(subscription_id, FundingOutcome.VERIFICATION_FAILED, tx_hash=tx_hash)

    async def _verify_balance(self, subscription_id: str) -> bool:
        try:
            info = await self.retry.run(
                lambda: self.chain_reader.get_subscription_info(int(subscription_id)),
                "getSubscription"
            )
        except Exception as e:
            self.logger.error("Could not re-read subscription balance", subscription_id=subscription_id, error=str(e))
            return False

        self.logger.debug("Post-funding balance", subscription_id=subscription_id, balance=format_link(info.balance))
        return info.balance >= self.min_balance

    def _record_failure(self, subscription_id: str):
        self.failed_attempts[subscription_id] = self.failed_attempts.get(subscription_id, 0) + 1

    def get_failed_attempts(self) -> Dict[str, int]:
        return dict(self.failed_attempts)
