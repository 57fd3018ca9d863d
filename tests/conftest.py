"""
Shared fixtures and in-memory fakes for the chain and indexer collaborators.
"""

import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from kuri_automation.core.config import Settings
from kuri_automation.core.exceptions import ChainReadError, IndexerError, SimulationError
from kuri_automation.core.retry import RetryPolicy
from kuri_automation.services.automation.types import (
    KuriState,
    MarketSnapshot,
    SubscriptionInfo,
    TransactionReceiptInfo,
)
from kuri_automation.services.indexer_client import (
    DeployedMarket,
    MarketDirectorySnapshot,
    RaffleWinner,
)


VALID_KEY = "0x" + "11" * 32
SIGNER = "0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"
NOW = 1_700_000_000

MARKET_A = "0x00000000000000000000000000000000000000a1"
MARKET_B = "0x00000000000000000000000000000000000000b2"

ONE_LINK = 10 ** 18


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_snapshot(
    address: str = MARKET_A,
    state: int = KuriState.ACTIVE,
    next_raffle_time: int = NOW - 1,
    total_active_participants: int = 5,
    current_interval: int = 2
) -> MarketSnapshot:
    return MarketSnapshot(
        address=address,
        creator="0x00000000000000000000000000000000000000c0",
        kuri_amount=1000 * 10 ** 6,
        total_participants=total_active_participants,
        total_active_participants=total_active_participants,
        interval_duration=7 * 86400,
        next_raffle_time=next_raffle_time,
        next_deposit_time=next_raffle_time - 86400,
        launch_period=3 * 86400,
        start_time=NOW - 30 * 86400,
        end_time=NOW + 30 * 86400,
        interval_type=0,
        state=int(state),
        current_interval=current_interval,
    )


def participant(index: int) -> str:
    return "0x" + f"{index:040x}"


class FakeDirectory:
    """Market directory double with call recording."""

    def __init__(self, markets: Optional[List[str]] = None, fail: bool = False):
        self.markets = list(markets or [])
        self.winners: Dict[Tuple[str, int], RaffleWinner] = {}
        self.fail = fail
        self.market_calls = 0
        self.winner_calls: List[Tuple[str, int]] = []

    def add_winner(self, market_address: str, interval_index: int, winner_address: str = participant(1)):
        self.winners[(market_address.lower(), interval_index)] = RaffleWinner(
            intervalIndex=interval_index,
            winnerIndex=1,
            winnerAddress=winner_address,
            winnerTimestamp=NOW - 60,
            contractAddress=market_address,
        )

    async def get_active_markets(self) -> MarketDirectorySnapshot:
        self.market_calls += 1
        if self.fail:
            raise IndexerError("indexer unavailable")
        return MarketDirectorySnapshot(
            deployed=[
                DeployedMarket(id=f"deploy-{i}", marketAddress=address, intervalType=0, timestamp=NOW - 1000)
                for i, address in enumerate(self.markets)
            ]
        )

    async def get_recent_raffle_winner(self, market_address: str, interval_index: int) -> Optional[RaffleWinner]:
        self.winner_calls.append((market_address, interval_index))
        return self.winners.get((market_address.lower(), interval_index))

    async def close(self):
        pass


class FakeChainReader:
    """
    Chain reader double.

    ``fail`` names methods that raise ``ChainReadError``; ``calls`` records
    every call as ``(method, args)``.
    """

    def __init__(self):
        self.snapshots: Dict[str, MarketSnapshot] = {}
        self.payments: Dict[str, List[bool]] = {}
        self.winner_indexes: Dict[Tuple[str, int], int] = {}
        self.subscription_ids: Dict[str, int] = {}
        self.balances: Dict[int, int] = {}
        self.receipts: Dict[str, TransactionReceiptInfo] = {}
        self.fail = set()
        self.calls: List[Tuple[str, tuple]] = []
        self.block_number = 1000

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        if method in self.fail:
            raise ChainReadError(f"{method} failed")

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def add_market(self, snapshot: MarketSnapshot, paid: Optional[List[bool]] = None):
        self.snapshots[snapshot.address] = snapshot
        self.payments[snapshot.address] = paid if paid is not None else [True] * snapshot.total_active_participants

    async def get_market_snapshot(self, market_address: str) -> MarketSnapshot:
        self._record("get_market_snapshot", market_address)
        return self.snapshots[market_address]

    async def get_participant_address(self, market_address: str, participant_index: int) -> str:
        self._record("get_participant_address", market_address, participant_index)
        return participant(participant_index)

    async def has_paid(self, market_address: str, participant_address: str, interval_index: int) -> bool:
        self._record("has_paid", market_address, participant_address, interval_index)
        index = int(participant_address, 16)
        return self.payments[market_address][index - 1]

    async def get_interval_winner_index(self, market_address: str, interval_index: int) -> int:
        self._record("get_interval_winner_index", market_address, interval_index)
        return self.winner_indexes.get((market_address, interval_index), 0)

    async def get_subscription_id(self, market_address: str) -> int:
        self._record("get_subscription_id", market_address)
        return self.subscription_ids.get(market_address, 0)

    async def get_subscription_info(self, subscription_id: int) -> SubscriptionInfo:
        self._record("get_subscription_info", subscription_id)
        return SubscriptionInfo(
            balance=self.balances.get(subscription_id, 0),
            native_balance=0,
            request_count=3,
            owner=SIGNER,
            consumers=[],
        )

    async def get_block_number(self) -> int:
        self._record("get_block_number")
        return self.block_number

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceiptInfo]:
        self._record("get_transaction_receipt", tx_hash)
        return self.receipts.get(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1, timeout: float = 300) -> TransactionReceiptInfo:
        self._record("wait_for_receipt", tx_hash, confirmations)
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ChainReadError("Timed out waiting for receipt", {"tx_hash": tx_hash})
        return receipt


class FakeChainWriter:
    """
    Chain writer double.

    Each send produces a fresh hash and, unless ``mine`` is False, a receipt
    on the reader with ``next_status``. ``fund_effect`` controls whether a
    successful top-up raises the subscription balance on the reader.
    """

    address = SIGNER

    def __init__(self, reader: FakeChainReader):
        self.reader = reader
        self.raffles: List[str] = []
        self.top_ups: List[Tuple[int, int]] = []
        self.next_status = True
        self.statuses: List[bool] = []
        self.mine = True
        self.fund_effect = True
        self.simulation_reverts = False
        self.send_error: Optional[Exception] = None
        self._counter = itertools.count(1)

    def _send(self) -> str:
        if self.simulation_reverts:
            raise SimulationError("execution reverted")
        if self.send_error is not None:
            raise self.send_error

        tx_hash = f"0x{next(self._counter):064x}"
        succeeded = self.statuses.pop(0) if self.statuses else self.next_status
        if self.mine:
            self.reader.receipts[tx_hash] = TransactionReceiptInfo(
                tx_hash=tx_hash,
                succeeded=succeeded,
                block_number=self.reader.block_number,
                gas_used=120_000,
            )
        return tx_hash

    async def trigger_raffle(self, market_address: str) -> str:
        tx_hash = self._send()
        self.raffles.append(market_address)
        return tx_hash

    async def top_up_subscription(self, amount: int, subscription_id: int) -> str:
        tx_hash = self._send()
        self.top_ups.append((amount, subscription_id))
        if self.fund_effect and self.reader.receipts.get(tx_hash) and self.reader.receipts[tx_hash].succeeded:
            self.reader.balances[subscription_id] = self.reader.balances.get(subscription_id, 0) + amount
        return tx_hash


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_delay_retry():
    return RetryPolicy(retries=3, base_delay=0)


@pytest.fixture
def chain_reader():
    return FakeChainReader()


@pytest.fixture
def chain_writer(chain_reader):
    return FakeChainWriter(chain_reader)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        private_key=VALID_KEY,
        rpc_url="http://localhost:8545",
        retry_base_delay=0,
        funding_settle_delay=0,
        funded_subscriptions_file=str(tmp_path / "data" / "funded-subscriptions.json"),
        reports_dir=str(tmp_path / "reports"),
        dashboard_update_interval=3600,
    )
