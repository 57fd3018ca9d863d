"""
Lifecycle tracking for submitted transactions.
"""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog

from .types import TransactionReceiptInfo, TransactionStatus, TxAction, TxStatus


logger = structlog.get_logger(__name__)

Resubmitter = Callable[[], Awaitable[str]]


class TransactionSupervisor:
    """
    Owns every submitted transaction from hash to terminal outcome.

    ``track`` registers a pending entry and starts a confirmation waiter. A
    reverted receipt seen by the waiter re-runs the same logical action
    through its resubmitter until ``max_retries`` is used up. ``poll_pending``
    independently re-checks pending entries by fetching their receipts.
    Entries are kept for the process lifetime.
    """

    def __init__(
        self,
        chain_reader,
        monitoring=None,
        confirmations: int = 2,
        max_retries: int = 3,
        receipt_timeout: float = 300,
        clock: Callable[[], float] = time.time
    ):
        self.chain_reader = chain_reader
        self.monitoring = monitoring
        self.confirmations = confirmations
        self.max_retries = max_retries
        self.receipt_timeout = receipt_timeout
        self.clock = clock
        self.logger = logger.bind(service="transaction_supervisor")

        self._transactions: Dict[str, TransactionStatus] = {}
        self._resubmitters: Dict[str, Resubmitter] = {}
        self._tracked_at: Dict[str, float] = {}
        self._tasks: Set[asyncio.Task] = set()

    def track(
        self,
        tx_hash: str,
        market_address: str,
        action: TxAction = TxAction.RAFFLE,
        resubmit: Optional[Resubmitter] = None,
        retries: int = 0
    ) -> TransactionStatus:
        """Register ``tx_hash`` as pending and start waiting for its receipt."""
        entry = TransactionStatus(
            tx_hash=tx_hash,
            market_address=market_address,
            action=action,
            retries=retries,
        )
        self._transactions[tx_hash] = entry
        self._tracked_at[tx_hash] = self.clock()
        if resubmit is not None:
            self._resubmitters[tx_hash] = resubmit

        self.logger.info(
            "📡 Tracking transaction",
            tx_hash=tx_hash,
            market=market_address,
            action=action.value,
            retries=retries
        )

        task = asyncio.create_task(self._monitor(tx_hash))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return entry

    async def _monitor(self, tx_hash: str):
        entry = self._transactions.get(tx_hash)
        if entry is None:
            return

        try:
            receipt = await self.chain_reader.wait_for_receipt(
                tx_hash,
                confirmations=self.confirmations,
                timeout=self.receipt_timeout
            )
        except Exception as e:
            # Status stays as-is; the background poll picks it up later
            self.logger.error("Error monitoring transaction", tx_hash=tx_hash, market=entry.market_address, error=str(e))
            return

        self._settle(entry, receipt)

        if entry.status == TxStatus.FAILED:
            await self._handle_failure(entry)

    def _settle(self, entry: TransactionStatus, receipt: TransactionReceiptInfo):
        if not entry.is_pending:
            return

        entry.status = TxStatus.SUCCESS if receipt.succeeded else TxStatus.FAILED
        entry.gas_used = receipt.gas_used
        entry.updated_at = datetime.utcnow()
        if not receipt.succeeded:
            entry.error = "reverted"

        if entry.status == TxStatus.SUCCESS:
            self.logger.info("✅ Transaction confirmed", tx_hash=entry.tx_hash, market=entry.market_address)
        else:
            self.logger.error("❌ Transaction reverted", tx_hash=entry.tx_hash, market=entry.market_address)

        if self.monitoring is not None:
            started = self._tracked_at.get(entry.tx_hash, self.clock())
            self.monitoring.record_transaction(
                tx_hash=entry.tx_hash,
                market_address=entry.market_address,
                operation_type=entry.action.value,
                gas_used=receipt.gas_used,
                confirmation_time=max(0.0, self.clock() - started),
                success=receipt.succeeded,
            )

    async def _handle_failure(self, entry: TransactionStatus):
        if entry.resubmitted:
            return
        if entry.retries >= self.max_retries:
            self.logger.error(
                "Transaction failed, retry budget exhausted",
                tx_hash=entry.tx_hash,
                market=entry.market_address,
                retries=entry.retries
            )
            return

        resubmit = self._resubmitters.get(entry.tx_hash)
        if resubmit is None:
            self.logger.warning("No resubmitter for failed transaction", tx_hash=entry.tx_hash)
            return

        entry.resubmitted = True
        self.logger.info(
            "🔄 Resubmitting failed transaction",
            tx_hash=entry.tx_hash,
            market=entry.market_address,
            attempt=entry.retries + 1
        )

        try:
            new_hash = await resubmit()
        except Exception as e:
            self.logger.error("Failed to resubmit transaction", market=entry.market_address, error=str(e))
            return

        self.track(
            new_hash,
            entry.market_address,
            action=entry.action,
            resubmit=resubmit,
            retries=entry.retries + 1
        )
        self.logger.info("Retry initiated", market=entry.market_address, tx_hash=new_hash)

    async def poll_pending(self) -> int:
        """Fetch receipts for every pending entry. Returns how many settled."""
        settled = 0
        pending = [entry for entry in self._transactions.values() if entry.is_pending]

        for entry in pending:
            try:
                receipt = await self.chain_reader.get_transaction_receipt(entry.tx_hash)
            except Exception as e:
                self.logger.error("Error checking transaction status", tx_hash=entry.tx_hash, error=str(e))
                continue

            if receipt is None or not entry.is_pending:
                continue

            self._settle(entry, receipt)
            settled += 1

        if pending:
            self.logger.debug("Polled pending transactions", pending=len(pending), settled=settled)
        return settled

    async def drain(self):
        """Wait for every running confirmation waiter, including resubmissions."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    def get(self, tx_hash: str) -> Optional[TransactionStatus]:
        return self._transactions.get(tx_hash)

    def get_transactions(self) -> Dict[str, TransactionStatus]:
        return dict(self._transactions)

    def pending(self) -> List[TransactionStatus]:
        return [entry for entry in self._transactions.values() if entry.is_pending]
