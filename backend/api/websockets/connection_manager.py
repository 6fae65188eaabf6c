"""WebSocket connection manager for real-time run updates."""

from fastapi import WebSocket
from typing import Dict, Set
import logging
import json

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages active WebSocket connections for real-time updates.

    Observers subscribe to one flow and receive every run event published
    for it. Connections that fail on send are dropped.
    """

    def __init__(self):
        """Initialize connection manager."""
        # Map of flow_id -> set of WebSocket connections
        self.active_connections_by_flow: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, flow_id: str) -> None:
        """
        Accept a WebSocket connection and subscribe it to a flow.

        Args:
            websocket: WebSocket connection
            flow_id: Flow to observe
        """
        await websocket.accept()
        self.active_connections_by_flow.setdefault(flow_id, set()).add(websocket)
        logger.info(f"WebSocket connected - flow_id: {flow_id}")

    async def disconnect(self, websocket: WebSocket, flow_id: str) -> None:
        """
        Unregister a WebSocket connection.

        Args:
            websocket: WebSocket connection
            flow_id: Flow the connection observed
        """
        if flow_id in self.active_connections_by_flow:
            self.active_connections_by_flow[flow_id].discard(websocket)
            if not self.active_connections_by_flow[flow_id]:
                del self.active_connections_by_flow[flow_id]

        logger.info(f"WebSocket disconnected - flow_id: {flow_id}")

    async def send_to_flow(self, flow_id: str, message: dict) -> int:
        """
        Send a message to every observer of a flow.

        Args:
            flow_id: Flow ID
            message: Message to send (will be JSON encoded)

        Returns:
            Number of connections the message reached
        """
        if flow_id not in self.active_connections_by_flow:
            return 0

        message_str = json.dumps(message, default=str)
        disconnected = set()
        delivered = 0

        for connection in self.active_connections_by_flow[flow_id]:
            try:
                await connection.send_text(message_str)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending message to flow {flow_id}: {str(e)}")
                disconnected.add(connection)

        # Clean up disconnected connections
        self.active_connections_by_flow[flow_id] -= disconnected
        if not self.active_connections_by_flow[flow_id]:
            del self.active_connections_by_flow[flow_id]
        return delivered

    def subscriber_count(self, flow_id: str) -> int:
        return len(self.active_connections_by_flow.get(flow_id, ()))


# Global connection manager instance
manager = ConnectionManager()
