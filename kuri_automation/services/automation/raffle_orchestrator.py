"""
Raffle automation: decides per market whether the raffle is due and
submits the trigger transaction.
"""

import time
from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from kuri_automation.core.exceptions import SimulationError
from kuri_automation.core.retry import RetryPolicy
from .transaction_supervisor import TransactionSupervisor
from .types import MarketSnapshot, RaffleBatchStats, RaffleCheckResult, RaffleOutcome, TxAction


logger = structlog.get_logger(__name__)


class RaffleOrchestrator:
    """
    Runs the raffle precondition checks for every deployed market.

    Per market, in order: on-chain state must be ACTIVE, the raffle time must
    have passed, every active participant must have paid the current
    interval, no winner may already be recorded for the interval, and no
    attempt may have been made within the cool-down window. Only then is the
    raffle simulated, sent, and handed to the supervisor.
    """

    def __init__(
        self,
        directory,
        chain_reader,
        chain_writer,
        supervisor: TransactionSupervisor,
        retry_policy: Optional[RetryPolicy] = None,
        cooldown_seconds: int = 3600,
        onchain_winner_check: bool = True,
        clock: Callable[[], float] = time.time
    ):
        self.directory = directory
        self.chain_reader = chain_reader
        self.chain_writer = chain_writer
        self.supervisor = supervisor
        self.retry = retry_policy or RetryPolicy()
        self.cooldown_seconds = cooldown_seconds
        self.onchain_winner_check = onchain_winner_check
        self.clock = clock
        self.logger = logger.bind(service="raffle_orchestrator")

        # market address (lower-case) -> unix time of the last submission attempt
        self._last_attempts: Dict[str, float] = {}
        self.last_stats: Optional[RaffleBatchStats] = None

    async def check_and_execute_raffles(self) -> RaffleBatchStats:
        """One scheduler tick. Never raises; failures are counted in the stats."""
        stats = RaffleBatchStats(start_time=datetime.utcnow())

        try:
            snapshot = await self.retry.run(self.directory.get_active_markets, "get_active_markets")
        except Exception as e:
            stats.aborted = True
            stats.error = str(e)
            stats.end_time = datetime.utcnow()
            self.last_stats = stats
            self.logger.error("Error in check_and_execute_raffles, batch aborted", error=str(e))
            return stats

        stats.items_found = len(snapshot.deployed)
        self.logger.info(
            "Starting raffle check",
            deployed=len(snapshot.deployed),
            initialized=len(snapshot.initialized)
        )

        for market in snapshot.deployed:
            result = await self.process_market(market.market_address)
            stats.results.append(result)
            stats.record(result.outcome)

        stats.end_time = datetime.utcnow()
        self.last_stats = stats
        self.logger.info(
            "Raffle check completed",
            markets=stats.items_found,
            submitted=stats.submitted,
            outcomes=stats.outcomes,
            duration=f"{stats.duration:.2f}s"
        )
        return stats

    async def process_market(self, market_address: str) -> RaffleCheckResult:
        try:
            return await self._process_market(market_address)
        except Exception as e:
            self.logger.error("Failed to process market", market=market_address, error=str(e))
            return RaffleCheckResult(market_address, RaffleOutcome.FAILED, detail=str(e))

    async def _process_market(self, market_address: str) -> RaffleCheckResult:
        log = self.logger.bind(market=market_address)

        try:
            state = await self.retry.run(
                lambda: self.chain_reader.get_market_snapshot(market_address),
                "get_market_snapshot"
            )
        except Exception as e:
            log.error("Invalid market state, skipping", error=str(e))
            return RaffleCheckResult(market_address, RaffleOutcome.READ_FAILED, detail=str(e))

        if not state.is_active:
            log.info("Market is not active", state=state.state_label)
            return RaffleCheckResult(market_address, RaffleOutcome.NOT_ACTIVE, detail=state.state_label)

        if self.clock() < state.next_raffle_time:
            log.info("Raffle time not reached", next_raffle_time=state.next_raffle_time)
            return RaffleCheckResult(market_address, RaffleOutcome.NOT_DUE)

        try:
            all_paid = await self.verify_payments(state)
        except Exception as e:
            log.error("Failed to verify payments", error=str(e))
            return RaffleCheckResult(market_address, RaffleOutcome.READ_FAILED, detail=str(e))

        if not all_paid:
            log.warning("Not all payments made", interval=state.current_interval)
            return RaffleCheckResult(market_address, RaffleOutcome.UNPAID)

        if await self._already_drawn(state):
            return RaffleCheckResult(market_address, RaffleOutcome.ALREADY_DRAWN)

        key = market_address.lower()
        now = self.clock()
        last_attempt = self._last_attempts.get(key)
        if last_attempt is not None and now - last_attempt < self.cooldown_seconds:
            log.info(
                "Raffle attempted recently, waiting",
                minutes_ago=round((now - last_attempt) / 60)
            )
            return RaffleCheckResult(market_address, RaffleOutcome.COOLDOWN)

        self._last_attempts[key] = now

        log.info("🎲 Initiating raffle", account=self.chain_writer.address)
        try:
            tx_hash = await self.chain_writer.trigger_raffle(market_address)
        except SimulationError as e:
            log.warning("Raffle simulation reverted, not actionable this cycle", error=e.message)
            return RaffleCheckResult(market_address, RaffleOutcome.SIMULATION_FAILED, detail=e.message)
        except Exception as e:
            log.error("Failed to submit raffle", error=str(e))
            return RaffleCheckResult(market_address, RaffleOutcome.FAILED, detail=str(e))

        self.supervisor.track(
            tx_hash,
            market_address,
            action=TxAction.RAFFLE,
            resubmit=lambda: self.chain_writer.trigger_raffle(market_address)
        )
        log.info("Raffle initiated", tx_hash=tx_hash)
        return RaffleCheckResult(market_address, RaffleOutcome.SUBMITTED, tx_hash=tx_hash)

    async def verify_payments(self, state: MarketSnapshot) -> bool:
        """
        True when every active participant has paid ``state.current_interval``.

        Stops at the first participant who has not paid.
        """
        market_address = state.address
        for participant_index in range(1, state.total_active_participants + 1):
            participant = await self.retry.run(
                lambda: self.chain_reader.get_participant_address(market_address, participant_index),
                "userIdToAddress"
            )
            paid = await self.retry.run(
                lambda: self.chain_reader.has_paid(market_address, participant, state.current_interval),
                "hasPaid"
            )
            if not paid:
                self.logger.debug(
                    "Participant has not paid",
                    market=market_address,
                    participant_index=participant_index,
                    participant=participant
                )
                return False
        return True

    async def _already_drawn(self, state: MarketSnapshot) -> bool:
        winner = await self.retry.run(
            lambda: self.directory.get_recent_raffle_winner(state.address, state.current_interval),
            "get_recent_raffle_winner"
        )
        if winner is not None:
            self.logger.info(
                "Raffle already executed for interval",
                market=state.address,
                interval=state.current_interval,
                winner=winner.winner_address
            )
            return True

        if not self.onchain_winner_check:
            return False

        try:
            winner_index = await self.retry.run(
                lambda: self.chain_reader.get_interval_winner_index(state.address, state.current_interval),
                "intervalToWinnerIndex"
            )
        except Exception as e:
            self.logger.warning(
                "On-chain winner check unavailable, relying on indexer",
                market=state.address,
                error=str(e)
            )
            return False

        if winner_index:
            self.logger.info(
                "Raffle already executed on-chain, indexer lagging",
                market=state.address,
                interval=state.current_interval,
                winner_index=winner_index
            )
            return True
        return False

    def get_last_attempts(self) -> Dict[str, float]:
        return dict(self._last_attempts)
