"""
Test ChainReader and ChainWriter against a stubbed web3 ``eth`` namespace.
"""

import asyncio

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from kuri_automation.core.exceptions import ChainReadError, SimulationError, TransactionError
from kuri_automation.services import chain_client
from kuri_automation.services.automation.types import KuriState
from kuri_automation.services.chain_client import ChainReader, ChainWriter

from .conftest import MARKET_A, NOW, SIGNER, VALID_KEY, participant


VRF_COORDINATOR = "0xd5D517aBE5cF79B7e95eC98dB0f0277788aFF634"
SUBSCRIPTION_MANAGER = "0xfe9e01aB2d887Ebfc8cb6C7e7bD04cCb659F9e6B"
TX_HASH = "0x" + "ab" * 32


def raw_receipt(block_number=100, status=1, gas_used=90_000):
    return {
        "transactionHash": bytes.fromhex("ab" * 32),
        "status": status,
        "blockNumber": block_number,
        "gasUsed": gas_used,
    }


class StubFunction:
    def __init__(self, eth, name, args):
        self.eth = eth
        self.name = name
        self.args = args

    async def call(self, tx=None):
        self.eth.calls.append((self.name, self.args, tx))
        result = self.eth.results[self.name]
        if isinstance(result, Exception):
            raise result
        return result(*self.args) if callable(result) else result

    async def build_transaction(self, tx):
        await asyncio.sleep(0)
        self.eth.built.append((self.name, self.args, tx))
        return {
            "to": self.eth.contract_address,
            "value": 0,
            "gas": 200_000,
            "gasPrice": 10 ** 9,
            "nonce": tx["nonce"],
            "chainId": tx["chainId"],
            "data": "0x",
        }


class StubFunctions:
    def __init__(self, eth):
        self._eth = eth

    def __getattr__(self, name):
        return lambda *args: StubFunction(self._eth, name, args)


class StubContract:
    def __init__(self, eth, address):
        self.address = address
        self.functions = StubFunctions(eth)


class StubEth:
    """
    The subset of ``AsyncWeb3.eth`` the chain client touches.

    ``results`` maps contract function names to a value, a callable over the
    call arguments, or an exception to raise.
    """

    def __init__(self):
        self.results = {}
        self.calls = []
        self.built = []
        self.sent = []
        self.nonces = []
        self.block_numbers = [100]
        self.block_reads = 0
        self.receipt = raw_receipt()
        self.receipt_error = None
        self.wait_error = None
        self.send_error = None
        self.contract_address = None

    def contract(self, address, abi):
        self.contract_address = address
        return StubContract(self, address)

    @property
    def block_number(self):
        async def read():
            index = min(self.block_reads, len(self.block_numbers) - 1)
            self.block_reads += 1
            return self.block_numbers[index]
        return read()

    async def get_transaction_receipt(self, tx_hash):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120, poll_latency=0.1):
        if self.wait_error is not None:
            raise self.wait_error
        return self.receipt

    async def get_transaction_count(self, address, block_identifier="latest"):
        await asyncio.sleep(0)
        nonce = len(self.sent)
        self.nonces.append(nonce)
        return nonce

    async def send_raw_transaction(self, raw):
        await asyncio.sleep(0)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return bytes([len(self.sent)]) * 32


class StubWeb3:
    def __init__(self):
        self.eth = StubEth()


@pytest.fixture(autouse=True)
def no_poll_latency(monkeypatch):
    monkeypatch.setattr(chain_client, "RECEIPT_POLL_LATENCY", 0)


@pytest.fixture
def w3():
    return StubWeb3()


@pytest.fixture
def reader(w3):
    return ChainReader(w3, VRF_COORDINATOR)


@pytest.fixture
def writer(w3):
    return ChainWriter(w3, VALID_KEY, 8453, SUBSCRIPTION_MANAGER)


def kuri_data(state=KuriState.ACTIVE):
    return (SIGNER, 10 ** 20, 5, 5, 86400, NOW - 60, NOW + 3600, 0, NOW - 86400, NOW + 86400 * 30, 0, int(state))


@pytest.mark.asyncio
async def test_market_snapshot_decoded(reader, w3):
    w3.eth.results["kuriData"] = kuri_data()
    w3.eth.results["passedIntervalsCounter"] = 3

    snapshot = await reader.get_market_snapshot(MARKET_A)

    assert snapshot.address == MARKET_A
    assert snapshot.is_active
    assert snapshot.total_active_participants == 5
    assert snapshot.next_raffle_time == NOW - 60
    assert snapshot.current_interval == 3


@pytest.mark.asyncio
async def test_short_market_data_is_read_error(reader, w3):
    w3.eth.results["kuriData"] = kuri_data()[:7]
    w3.eth.results["passedIntervalsCounter"] = 1

    with pytest.raises(ChainReadError):
        await reader.get_market_snapshot(MARKET_A)


@pytest.mark.asyncio
async def test_view_call_failure_is_read_error(reader, w3):
    w3.eth.results["hasPaid"] = ValueError("execution reverted")

    with pytest.raises(ChainReadError) as exc_info:
        await reader.has_paid(MARKET_A, participant(1), 2)

    assert exc_info.value.details["market"] == MARKET_A


@pytest.mark.asyncio
async def test_subscription_info_decoded(reader, w3):
    w3.eth.results["getSubscription"] = (2 * 10 ** 17, 0, 9, SIGNER, [MARKET_A])

    info = await reader.get_subscription_info(77)

    assert info.balance == 2 * 10 ** 17
    assert info.request_count == 9
    assert info.consumers == [MARKET_A]
    assert w3.eth.calls[-1][1] == (77,)


@pytest.mark.asyncio
async def test_missing_receipt_is_none(reader, w3):
    w3.eth.receipt_error = TransactionNotFound("not found")

    assert await reader.get_transaction_receipt(TX_HASH) is None


@pytest.mark.asyncio
async def test_receipt_lookup_failure_is_read_error(reader, w3):
    w3.eth.receipt_error = ConnectionError("rpc down")

    with pytest.raises(ChainReadError):
        await reader.get_transaction_receipt(TX_HASH)


@pytest.mark.asyncio
async def test_reverted_receipt_decoded(reader, w3):
    w3.eth.receipt = raw_receipt(status=0, gas_used=21_000)

    info = await reader.get_transaction_receipt(TX_HASH)

    assert info.tx_hash == TX_HASH
    assert info.succeeded is False
    assert info.gas_used == 21_000


@pytest.mark.asyncio
async def test_single_confirmation_skips_block_wait(reader, w3):
    info = await reader.wait_for_receipt(TX_HASH, confirmations=1)

    assert info.block_number == 100
    assert w3.eth.block_reads == 0


@pytest.mark.asyncio
async def test_waits_until_confirmation_depth(reader, w3):
    w3.eth.receipt = raw_receipt(block_number=100)
    w3.eth.block_numbers = [100, 100, 101]

    info = await reader.wait_for_receipt(TX_HASH, confirmations=2)

    assert info.succeeded is True
    assert info.block_number == 100
    assert w3.eth.block_reads == 3


@pytest.mark.asyncio
async def test_receipt_reread_after_confirmations(reader, w3):
    w3.eth.block_numbers = [101]

    original_get = w3.eth.get_transaction_receipt

    async def reorged(tx_hash):
        w3.eth.receipt = raw_receipt(block_number=101, status=0)
        return await original_get(tx_hash)

    w3.eth.get_transaction_receipt = reorged

    info = await reader.wait_for_receipt(TX_HASH, confirmations=2)

    assert info.block_number == 101
    assert info.succeeded is False


@pytest.mark.asyncio
async def test_dropped_during_confirmations_is_read_error(reader, w3):
    w3.eth.block_numbers = [101]

    async def dropped(tx_hash):
        raise TransactionNotFound("gone")

    w3.eth.get_transaction_receipt = dropped

    with pytest.raises(ChainReadError) as exc_info:
        await reader.wait_for_receipt(TX_HASH, confirmations=2)

    assert "dropped" in exc_info.value.message


@pytest.mark.asyncio
async def test_receipt_timeout_is_read_error(reader, w3):
    w3.eth.wait_error = TimeExhausted("no receipt")

    with pytest.raises(ChainReadError) as exc_info:
        await reader.wait_for_receipt(TX_HASH, confirmations=2, timeout=1)

    assert exc_info.value.details == {"tx_hash": TX_HASH}


@pytest.mark.asyncio
async def test_trigger_raffle_simulates_then_sends(writer, w3):
    w3.eth.results["kuriNarukk"] = None

    tx_hash = await writer.trigger_raffle(MARKET_A)

    assert tx_hash == "0x" + "01" * 32
    name, args, simulated_with = w3.eth.calls[0]
    assert name == "kuriNarukk"
    assert simulated_with == {"from": writer.address}
    assert w3.eth.built[0][2] == {"from": writer.address, "nonce": 0, "chainId": 8453}
    assert len(w3.eth.sent) == 1


@pytest.mark.asyncio
async def test_simulation_revert_is_not_sent(writer, w3):
    w3.eth.results["kuriNarukk"] = ValueError("execution reverted: raffle not due")

    with pytest.raises(SimulationError) as exc_info:
        await writer.trigger_raffle(MARKET_A)

    assert exc_info.value.details == {"market": MARKET_A}
    assert w3.eth.built == []
    assert w3.eth.sent == []


@pytest.mark.asyncio
async def test_broadcast_failure_is_transaction_error(writer, w3):
    w3.eth.results["topUpSubscription"] = None
    w3.eth.send_error = ValueError("nonce too low")

    with pytest.raises(TransactionError) as exc_info:
        await writer.top_up_subscription(5 * 10 ** 18, 77)

    assert exc_info.value.details["subscription_id"] == "77"
    assert w3.eth.built[0][1] == (5 * 10 ** 18, 77)

    # The send lock is released after a failed broadcast
    w3.eth.send_error = None
    assert await writer.top_up_subscription(5 * 10 ** 18, 77)


@pytest.mark.asyncio
async def test_concurrent_sends_get_distinct_nonces(writer, w3):
    w3.eth.results["kuriNarukk"] = None
    w3.eth.results["topUpSubscription"] = None

    hashes = await asyncio.gather(
        writer.trigger_raffle(MARKET_A),
        writer.top_up_subscription(10 ** 18, 77),
        writer.trigger_raffle(MARKET_A),
    )

    assert sorted(tx["nonce"] for _, _, tx in w3.eth.built) == [0, 1, 2]
    assert w3.eth.nonces == [0, 1, 2]
    assert len(set(hashes)) == 3
