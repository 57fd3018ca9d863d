"""
GraphQL client for the Envio indexer.

Provides the market directory: deployed markets, their initialisation
records, and the most recent recorded raffle winner per market interval.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kuri_automation.core.exceptions import IndexerError


logger = structlog.get_logger(__name__)


ACTIVE_MARKETS_QUERY = """
query KuriMarkets {
  KuriCoreFactory_KuriMarketDeployed(order_by: { timestamp: desc }) {
    id
    caller
    marketAddress
    intervalType
    timestamp
    wannabeMember
    circleCurrencyAddress
  }
  KuriCore_KuriInitialised {
    id
    _kuriData_0
    _kuriData_1
    _kuriData_2
    _kuriData_3
    _kuriData_4
    _kuriData_5
    _kuriData_6
    _kuriData_7
    _kuriData_8
    _kuriData_9
    _kuriData_10
    _kuriData_11
    contractAddress
  }
}
"""

RAFFLE_WINNER_QUERY = """
query RecentRaffleWinner($contractAddress: String!, $intervalIndex: Int!) {
  KuriCore_RaffleWinnerSelected(
    where: {
      contractAddress: { _ilike: $contractAddress }
      intervalIndex: { _eq: $intervalIndex }
    }
    order_by: { winnerTimestamp: desc }
    limit: 1
  ) {
    id
    intervalIndex
    winnerIndex
    winnerAddress
    winnerTimestamp
    requestId
    contractAddress
  }
}
"""


class DeployedMarket(BaseModel):
    """``KuriMarketDeployed`` factory event."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    caller: Optional[str] = None
    market_address: str = Field(alias="marketAddress")
    interval_type: Optional[int] = Field(default=None, alias="intervalType")
    timestamp: Optional[int] = None
    wannabe_member: Optional[bool] = Field(default=None, alias="wannabeMember")
    circle_currency_address: Optional[str] = Field(default=None, alias="circleCurrencyAddress")


class InitialisedMarket(BaseModel):
    """``KuriInitialised`` event with the flattened ``kuriData`` tuple."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    creator: Optional[str] = Field(default=None, alias="_kuriData_0")
    kuri_amount: Optional[int] = Field(default=None, alias="_kuriData_1")
    total_participants: Optional[int] = Field(default=None, alias="_kuriData_2")
    total_active_participants: Optional[int] = Field(default=None, alias="_kuriData_3")
    interval_duration: Optional[int] = Field(default=None, alias="_kuriData_4")
    next_raffle_time: Optional[int] = Field(default=None, alias="_kuriData_5")
    next_deposit_time: Optional[int] = Field(default=None, alias="_kuriData_6")
    launch_period: Optional[int] = Field(default=None, alias="_kuriData_7")
    start_time: Optional[int] = Field(default=None, alias="_kuriData_8")
    end_time: Optional[int] = Field(default=None, alias="_kuriData_9")
    interval_type: Optional[int] = Field(default=None, alias="_kuriData_10")
    state: Optional[int] = Field(default=None, alias="_kuriData_11")
    contract_address: Optional[str] = Field(default=None, alias="contractAddress")


class RaffleWinner(BaseModel):
    """``RaffleWinnerSelected`` event."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    interval_index: int = Field(alias="intervalIndex")
    winner_index: Optional[int] = Field(default=None, alias="winnerIndex")
    winner_address: str = Field(alias="winnerAddress")
    winner_timestamp: Optional[int] = Field(default=None, alias="winnerTimestamp")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    contract_address: Optional[str] = Field(default=None, alias="contractAddress")


@dataclass
class MarketDirectorySnapshot:
    """Result of one ``get_active_markets`` call."""
    deployed: List[DeployedMarket] = field(default_factory=list)
    initialized: List[InitialisedMarket] = field(default_factory=list)


class IndexerClient:
    """
    Market directory backed by the Envio GraphQL endpoint.

    A session can be injected (tests, shared pools); otherwise one is opened
    lazily and closed by ``close()``.
    """

    def __init__(
        self,
        url: str,
        timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.url = url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(service="indexer_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL query and return its ``data`` object."""
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        session = await self._get_session()
        try:
            async with session.post(
                self.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    text = await response.text()
                    raise IndexerError(
                        f"Indexer returned HTTP {response.status}",
                        {"status": response.status, "body": text[:500]}
                    )
                body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise IndexerError(f"Indexer request failed: {e}", {"url": self.url}) from e

        if not isinstance(body, dict):
            raise IndexerError("Indexer returned a non-object response")

        errors = body.get("errors")
        if errors:
            raise IndexerError("Indexer returned GraphQL errors", {"errors": errors})

        data = body.get("data")
        if not isinstance(data, dict):
            raise IndexerError("Indexer response has no data object")
        return data

    async def get_active_markets(self) -> MarketDirectorySnapshot:
        """Fetch every deployed market and every initialisation record."""
        try:
            data = await self.query(ACTIVE_MARKETS_QUERY)
            deployed = [
                DeployedMarket.model_validate(item)
                for item in data.get("KuriCoreFactory_KuriMarketDeployed") or []
            ]
            initialized = [
                InitialisedMarket.model_validate(item)
                for item in data.get("KuriCore_KuriInitialised") or []
            ]
        except ValidationError as e:
            self.logger.error("Malformed market records from indexer", error=str(e))
            raise IndexerError(f"Malformed market records: {e}") from e
        except IndexerError as e:
            self.logger.error("Failed to fetch active markets", error=e.message, details=e.details)
            raise

        return MarketDirectorySnapshot(deployed=deployed, initialized=initialized)

    async def get_recent_raffle_winner(self, market_address: str, interval_index: int) -> Optional[RaffleWinner]:
        """Most recent recorded winner for ``market_address`` at ``interval_index``, if any."""
        data = await self.query(
            RAFFLE_WINNER_QUERY,
            {"contractAddress": market_address, "intervalIndex": int(interval_index)}
        )
        records = data.get("KuriCore_RaffleWinnerSelected") or []
        if not records:
            return None

        try:
            winner = RaffleWinner.model_validate(records[0])
        except ValidationError as e:
            raise IndexerError(f"Malformed raffle winner record: {e}") from e

        if winner.contract_address and winner.contract_address.lower() != market_address.lower():
            return None
        return winner
