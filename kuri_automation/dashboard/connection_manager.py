"""
WebSocket connection manager for the dashboard.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog
from fastapi import WebSocket

from .schemas import DashboardMessage, ErrorMessage


logger = structlog.get_logger(__name__)

UpdateBuilder = Callable[[], Awaitable[List[DashboardMessage]]]


class Connection:
    """Represents a single dashboard WebSocket connection."""

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id
        self.connected_at = datetime.utcnow()
        self.markets: Set[str] = set()

    async def send_message(self, message: DashboardMessage) -> bool:
        try:
            await self.websocket.send_json(message.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error("Failed to send message to connection", client_id=self.client_id, error=str(e))
            return False

    async def send_error(self, error_code: str, error_message: str):
        await self.send_message(ErrorMessage(data={"code": error_code, "message": error_message}))

    def should_receive_message(self, message: DashboardMessage) -> bool:
        """Market-scoped messages go to clients with no subscriptions or a matching one."""
        if message.market is None or not self.markets:
            return True
        return message.market.lower() in self.markets


class ConnectionManager:
    """
    Tracks dashboard clients and pushes periodic updates.

    The update loop runs only while at least one client is connected.
    """

    def __init__(self, update_builder: Optional[UpdateBuilder] = None, update_interval: float = 5):
        self.connections: Dict[str, Connection] = {}
        self.update_builder = update_builder
        self.update_interval = update_interval
        self._background_tasks: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, client_id: str) -> Connection:
        await websocket.accept()

        connection = Connection(websocket, client_id)
        self.connections[client_id] = connection
        logger.info("Dashboard client connected", client_id=client_id, total_connections=len(self.connections))

        if len(self.connections) == 1:
            self._start_update_task()
        return connection

    async def disconnect(self, client_id: str, code: int = 1000):
        connection = self.connections.pop(client_id, None)
        if connection is None:
            return

        try:
            if connection.websocket.client_state.name != "DISCONNECTED":
                await connection.websocket.close(code=code)
        except Exception as e:
            logger.error("Error during WebSocket disconnection", client_id=client_id, error=str(e))

        logger.info("Dashboard client disconnected", client_id=client_id, remaining_connections=len(self.connections))

        if not self.connections:
            self._stop_update_task()

    def subscribe(self, client_id: str, market: str) -> bool:
        connection = self.connections.get(client_id)
        if connection is None:
            return False
        connection.markets.add(market.lower())
        logger.debug("Market subscription added", client_id=client_id, market=market)
        return True

    def unsubscribe(self, client_id: str, market: str) -> bool:
        connection = self.connections.get(client_id)
        if connection is None:
            return False
        connection.markets.discard(market.lower())
        return True

    async def broadcast(self, message: DashboardMessage) -> int:
        """Send ``message`` to every interested client. Returns the number reached."""
        sent_count = 0
        for client_id in list(self.connections):
            connection = self.connections.get(client_id)
            if connection is None or not connection.should_receive_message(message):
                continue
            if await connection.send_message(message):
                sent_count += 1
            else:
                await self.disconnect(client_id, code=1011)
        return sent_count

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self.connections),
            "market_subscriptions": sum(len(c.markets) for c in self.connections.values()),
        }

    def _start_update_task(self):
        if self.update_builder is None or self._background_tasks:
            return
        task = asyncio.create_task(self._update_loop())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _stop_update_task(self):
        for task in self._background_tasks:
            if not task.done():
                task.cancel()
        self._background_tasks.clear()

    async def _update_loop(self):
        try:
            while self.connections:
                await asyncio.sleep(self.update_interval)
                try:
                    messages = await self.update_builder()
                except Exception as e:
                    logger.error("Failed to build dashboard update", error=str(e))
                    continue
                for message in messages:
                    await self.broadcast(message)
        except asyncio.CancelledError:
            logger.debug("Dashboard update task cancelled")

    async def close(self):
        for client_id in list(self.connections):
            await self.disconnect(client_id, code=1001)
        self._stop_update_task()
