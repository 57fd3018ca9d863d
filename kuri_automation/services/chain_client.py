"""
EVM chain access for the automation agent.

ChainReader wraps the view calls and receipt lookups; ChainWriter signs and
sends the two state-changing actions (raffle trigger, subscription top-up)
after a dry-run from the signer account.
"""

import asyncio
from typing import Any, Mapping, Optional

import structlog
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound

from kuri_automation.core.abi import KURI_CORE_ABI, SUBSCRIPTION_MANAGER_ABI, VRF_COORDINATOR_ABI
from kuri_automation.core.config import Settings
from kuri_automation.core.exceptions import ChainReadError, SimulationError, TransactionError
from kuri_automation.services.automation.types import (
    MarketSnapshot,
    SubscriptionInfo,
    TransactionReceiptInfo,
)


logger = structlog.get_logger(__name__)

RECEIPT_POLL_LATENCY = 2.0  # seconds


def build_web3(rpc_url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))


def _receipt_info(receipt: Mapping[str, Any]) -> TransactionReceiptInfo:
    tx_hash = receipt["transactionHash"]
    return TransactionReceiptInfo(
        tx_hash=AsyncWeb3.to_hex(tx_hash) if not isinstance(tx_hash, str) else tx_hash,
        succeeded=int(receipt["status"]) == 1,
        block_number=int(receipt["blockNumber"]),
        gas_used=int(receipt.get("gasUsed", 0)),
    )


class ChainReader:
    """Read-only contract calls. Every failure surfaces as ``ChainReadError``."""

    def __init__(self, w3: AsyncWeb3, vrf_coordinator: str):
        self.w3 = w3
        self.vrf_coordinator = AsyncWeb3.to_checksum_address(vrf_coordinator)
        self.logger = logger.bind(service="chain_reader")

    @classmethod
    def from_settings(cls, settings: Settings, w3: Optional[AsyncWeb3] = None) -> "ChainReader":
        return cls(w3 or build_web3(settings.rpc_url), settings.vrf_coordinator)

    def _market(self, market_address: str):
        return self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(market_address),
            abi=KURI_CORE_ABI
        )

    async def _call(self, description: str, call, **context) -> Any:
        try:
            return await call
        except Exception as e:
            raise ChainReadError(f"{description} failed: {e}", context) from e

    async def get_market_snapshot(self, market_address: str) -> MarketSnapshot:
        """Decoded market data and the current interval in one snapshot."""
        market = self._market(market_address)
        raw = await self._call("kuriData", market.functions.kuriData().call(), market=market_address)
        current_interval = await self.get_current_interval(market_address)
        try:
            return MarketSnapshot.from_kuri_data(market_address, raw, current_interval)
        except (TypeError, ValueError) as e:
            raise ChainReadError(f"Cannot decode kuriData: {e}", {"market": market_address}) from e

    async def get_current_interval(self, market_address: str) -> int:
        market = self._market(market_address)
        value = await self._call(
            "passedIntervalsCounter",
            market.functions.passedIntervalsCounter().call(),
            market=market_address
        )
        return int(value)

    async def get_participant_address(self, market_address: str, participant_index: int) -> str:
        market = self._market(market_address)
        return await self._call(
            "userIdToAddress",
            market.functions.userIdToAddress(participant_index).call(),
            market=market_address,
            participant_index=participant_index
        )

    async def has_paid(self, market_address: str, participant: str, interval_index: int) -> bool:
        market = self._market(market_address)
        value = await self._call(
            "hasPaid",
            market.functions.hasPaid(AsyncWeb3.to_checksum_address(participant), interval_index).call(),
            market=market_address,
            participant=participant
        )
        return bool(value)

    async def get_interval_winner_index(self, market_address: str, interval_index: int) -> int:
        market = self._market(market_address)
        value = await self._call(
            "intervalToWinnerIndex",
            market.functions.intervalToWinnerIndex(interval_index).call(),
            market=market_address,
            interval_index=interval_index
        )
        return int(value)

    async def get_subscription_id(self, market_address: str) -> int:
        market = self._market(market_address)
        value = await self._call(
            "s_subscriptionId",
            market.functions.s_subscriptionId().call(),
            market=market_address
        )
        return int(value)

    async def get_subscription_info(self, subscription_id: int) -> SubscriptionInfo:
        coordinator = self.w3.eth.contract(address=self.vrf_coordinator, abi=VRF_COORDINATOR_ABI)
        raw = await self._call(
            "getSubscription",
            coordinator.functions.getSubscription(int(subscription_id)).call(),
            subscription_id=str(subscription_id)
        )
        try:
            return SubscriptionInfo.from_raw(raw)
        except (TypeError, ValueError) as e:
            raise ChainReadError(f"Cannot decode subscription: {e}", {"subscription_id": str(subscription_id)}) from e

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", self.w3.eth.block_number))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceiptInfo]:
        """Receipt of a mined transaction, ``None`` while it is still pending."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainReadError(f"eth_getTransactionReceipt failed: {e}", {"tx_hash": tx_hash}) from e
        return _receipt_info(receipt)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 300
    ) -> TransactionReceiptInfo:
        """Wait until ``tx_hash`` is mined and buried under ``confirmations`` blocks."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout,
                poll_latency=RECEIPT_POLL_LATENCY
            )
        except TimeExhausted as e:
            raise ChainReadError(f"Timed out waiting for receipt: {e}", {"tx_hash": tx_hash}) from e
        except Exception as e:
            raise ChainReadError(f"Waiting for receipt failed: {e}", {"tx_hash": tx_hash}) from e

        info = _receipt_info(receipt)
        if confirmations <= 1:
            return info

        target_block = info.block_number + confirmations - 1
        while await self.get_block_number() < target_block:
            await asyncio.sleep(RECEIPT_POLL_LATENCY)

        # Re-read after the wait; a reorg may have moved or dropped it
        confirmed = await self.get_transaction_receipt(tx_hash)
        if confirmed is None:
            raise ChainReadError("Transaction dropped while awaiting confirmations", {"tx_hash": tx_hash})
        return confirmed


class ChainWriter:
    """
    Simulate-then-send for the agent's two write actions.

    Nonces come from the node's pending count; the lock keeps concurrent
    timers from reading the same nonce between fetch and broadcast.
    """

    def __init__(self, w3: AsyncWeb3, private_key: str, chain_id: int, subscription_manager: str):
        self.w3 = w3
        self.chain_id = chain_id
        self.subscription_manager = AsyncWeb3.to_checksum_address(subscription_manager)
        self._account = Account.from_key(private_key)
        self._send_lock = asyncio.Lock()
        self.logger = logger.bind(service="chain_writer", account=self._account.address)

    @classmethod
    def from_settings(cls, settings: Settings, w3: Optional[AsyncWeb3] = None) -> "ChainWriter":
        return cls(
            w3 or build_web3(settings.rpc_url),
            settings.private_key,
            settings.chain_id,
            settings.subscription_manager
        )

    @property
    def address(self) -> str:
        return self._account.address

    async def trigger_raffle(self, market_address: str) -> str:
        market = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(market_address),
            abi=KURI_CORE_ABI
        )
        return await self._simulate_and_send(
            market.functions.kuriNarukk(),
            "kuriNarukk",
            {"market": market_address}
        )

    async def top_up_subscription(self, amount: int, subscription_id: int) -> str:
        manager = self.w3.eth.contract(address=self.subscription_manager, abi=SUBSCRIPTION_MANAGER_ABI)
        return await self._simulate_and_send(
            manager.functions.topUpSubscription(int(amount), int(subscription_id)),
            "topUpSubscription",
            {"amount": str(amount), "subscription_id": str(subscription_id)}
        )

    async def _simulate_and_send(self, fn, name: str, context: dict) -> str:
        try:
            await fn.call({"from": self.address})
        except Exception as e:
            raise SimulationError(f"{name} simulation reverted: {e}", context) from e

        async with self._send_lock:
            try:
                nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
                tx = await fn.build_transaction({
                    "from": self.address,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                raise TransactionError(f"{name} submission failed: {e}", context) from e

        tx_hash_hex = AsyncWeb3.to_hex(tx_hash)
        self.logger.info("Transaction sent", function=name, tx_hash=tx_hash_hex, **context)
        return tx_hash_hex
