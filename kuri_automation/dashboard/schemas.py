"""
Dashboard WebSocket message schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    """Server -> client message types."""
    INITIAL = "initial"
    UPDATE = "update"
    HEALTH = "health"
    MARKET_METRICS = "marketMetrics"
    ALERT = "alert"
    ERROR = "error"


class ClientMessageType(str, Enum):
    """Client -> server request types."""
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    GET_HEALTH = "getHealth"


class DashboardMessage(BaseModel):
    """Base dashboard message."""
    type: MessageType
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat())
    market: Optional[str] = None
    data: Any = Field(default_factory=dict)


class ClientRequest(BaseModel):
    type: ClientMessageType
    market: Optional[str] = None


class ErrorMessage(DashboardMessage):
    type: MessageType = MessageType.ERROR
    data: Dict[str, Any] = Field(description="Error code and message")
