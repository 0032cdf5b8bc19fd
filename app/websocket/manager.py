# =============================================================================
# app/websocket/manager.py - WebSocket Connection Manager
# =============================================================================
# Manages WebSocket connections per channel and handles broadcasting.
# A channel is a transcription job id; several clients may watch one job.
#
# Usage:
#   from app.websocket import websocket_manager
#
#   await websocket_manager.connect(job_id, websocket)
#   await websocket_manager.broadcast(job_id, {"type": "transcription.partial", ...})
#   websocket_manager.disconnect(job_id, websocket)
# =============================================================================

import logging
from typing import Dict, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections organized by channel ID.

    When an event is published for a channel it's sent to every client
    watching it. Clients that fail to receive are dropped.
    """

    def __init__(self):
        # channel_id -> set of WebSocket connections
        self.connections: Dict[str, Set[WebSocket]] = {}
        self._total_connections = 0

    async def connect(self, channel_id: str, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection and track it."""
        await websocket.accept()

        self.connections.setdefault(channel_id, set()).add(websocket)
        self._total_connections += 1

        logger.info(
            f"WebSocket connected to channel {channel_id}. "
            f"Total connections: {self._total_connections}"
        )

    def disconnect(self, channel_id: str, websocket: WebSocket) -> None:
        if channel_id in self.connections and websocket in self.connections[channel_id]:
            self.connections[channel_id].discard(websocket)
            self._total_connections -= 1

            if not self.connections[channel_id]:
                del self.connections[channel_id]

        logger.info(
            f"WebSocket disconnected from channel {channel_id}. "
            f"Total connections: {self._total_connections}"
        )

    async def broadcast(self, channel_id: str, message: dict) -> int:
        """
        Broadcast a message to all connections watching a channel.

        Args:
            channel_id: The channel to broadcast to
            message: The message dict to send (will be JSON encoded)

        Returns:
            int: Number of clients the message was sent to
        """
        if channel_id not in self.connections:
            logger.debug(f"No connections for channel {channel_id}, skipping broadcast")
            return 0

        dead_connections: Set[WebSocket] = set()
        sent_count = 0

        for websocket in list(self.connections[channel_id]):
            try:
                await websocket.send_json(message)
                sent_count += 1
            except Exception as e:
                logger.warning(f"Failed to send to WebSocket: {e}")
                dead_connections.add(websocket)

        for ws in dead_connections:
            self.connections[channel_id].discard(ws)
            self._total_connections -= 1

        if dead_connections:
            logger.info(f"Cleaned up {len(dead_connections)} dead connections")

        if channel_id in self.connections and not self.connections[channel_id]:
            del self.connections[channel_id]

        logger.debug(
            f"Broadcast to channel {channel_id}: "
            f"type={message.get('type')}, sent to {sent_count} clients"
        )

        return sent_count

    def get_connection_count(self, channel_id: str | None = None) -> int:
        """Connections for one channel, or in total."""
        if channel_id:
            return len(self.connections.get(channel_id, set()))
        return self._total_connections

    def get_active_channels(self) -> list[str]:
        return list(self.connections.keys())


# Global singleton instance
websocket_manager = ConnectionManager()
