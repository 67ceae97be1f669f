"""Live feed: pushes session snapshots to connected operator screens."""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class LiveFeed:
    """Tracks WebSocket clients and broadcasts session snapshots.

    Each message is an envelope ``{"type", "seq", "ts_ms", "payload"}``.
    """

    def __init__(self) -> None:
        self._active: list[WebSocket] = []
        self._seq = 0

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register an operator screen.

        Args:
            websocket: The incoming WebSocket connection.
        """
        await websocket.accept()
        self._active.append(websocket)
        logger.info("Operator screen connected. Total screens: %d", len(self._active))

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a screen that went away.

        Args:
            websocket: The disconnected WebSocket.
        """
        if websocket in self._active:
            self._active.remove(websocket)
        logger.info("Operator screen disconnected. Total screens: %d", len(self._active))

    def envelope(self, payload: dict[str, Any], kind: str = "session") -> dict[str, Any]:
        """Wrap a payload with the next sequence number and a timestamp.

        Args:
            payload: JSON-serializable message body.
            kind: Message type.

        Returns:
            The envelope dict.
        """
        self._seq += 1
        return {
            "type": kind,
            "seq": self._seq,
            "ts_ms": int(time.time() * 1000),
            "payload": payload,
        }

    async def send_snapshot(self, websocket: WebSocket, payload: dict[str, Any]) -> None:
        """Send one snapshot to a single (newly connected) screen.

        Args:
            websocket: The target screen.
            payload: The session snapshot.
        """
        await websocket.send_json(self.envelope(payload))

    async def broadcast(self, payload: dict[str, Any], kind: str = "session") -> None:
        """Send a snapshot to every screen.

        Screens that fail to receive are removed.

        Args:
            payload: The session snapshot.
            kind: Message type.
        """
        if not self._active:
            return
        message = self.envelope(payload, kind)
        disconnected: list[WebSocket] = []

        for ws in self._active:
            try:
                await ws.send_json(message)
            except Exception:
                logger.debug("Failed to send to screen, marking for removal")
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)

    @property
    def client_count(self) -> int:
        """Return the number of connected screens."""
        return len(self._active)

    @property
    def messages_sent(self) -> int:
        return self._seq
