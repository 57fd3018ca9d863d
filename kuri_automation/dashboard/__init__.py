"""
Dashboard module: read-only HTTP and WebSocket view of the agent.
"""

from .connection_manager import ConnectionManager
from .schemas import DashboardMessage, MessageType

__all__ = [
    "ConnectionManager",
    "DashboardMessage",
    "MessageType",
]
