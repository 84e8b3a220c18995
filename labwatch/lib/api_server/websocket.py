"""WebSocket support for real-time alert streaming."""

import json
import asyncio
import inspect
from typing import Set, Dict, Any, Optional, List, Callable, Awaitable, Union
from datetime import datetime, timedelta
import weakref

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
import structlog

from ...models import Alert

logger = structlog.get_logger(__name__)

DEFAULT_SUBSCRIPTIONS = ["alerts", "readings", "system"]

StatusProvider = Callable[[], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class WebSocketMessage(BaseModel):
    """Base WebSocket message structure."""

    type: str
    timestamp: datetime = Field(default_factory=datetime.now)
    data: Dict[str, Any] = Field(default_factory=dict)


class AlertMessage(WebSocketMessage):
    """Alert change notification: created, escalated, acknowledged or resolved."""

    type: str = "alert"


class ReadingProcessedMessage(WebSocketMessage):
    """Summary of one processed reading."""

    type: str = "reading_processed"


class ConnectionManager:
    """WebSocket connection manager for alert broadcasts."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.connection_metadata: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()
        self.status_provider: Optional[StatusProvider] = None
        self.cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections.add(websocket)

        self.connection_metadata[websocket] = {
            "client_id": client_id or f"client_{id(websocket)}",
            "connected_at": datetime.now(),
            "last_ping": datetime.now(),
            "subscriptions": list(DEFAULT_SUBSCRIPTIONS)
        }

        logger.info("WebSocket connection established",
                    client_id=self.connection_metadata[websocket]["client_id"],
                    total_connections=len(self.active_connections))

        await self._send_initial_data(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            client_id = self.connection_metadata.get(websocket, {}).get("client_id", "unknown")
            self.active_connections.discard(websocket)

            logger.info("WebSocket connection closed",
                        client_id=client_id,
                        total_connections=len(self.active_connections))

    async def send_personal_message(self, message: Dict[str, Any], websocket: WebSocket) -> None:
        """Send a message to a specific WebSocket connection."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("Error sending personal message", error=str(e))
            self.disconnect(websocket)

    async def broadcast_message(self, message: Dict[str, Any], message_type: str = "system") -> None:
        """Send a message to every client subscribed to message_type."""
        if not self.active_connections:
            return

        disconnected = set()

        for websocket in self.active_connections.copy():
            metadata = self.connection_metadata.get(websocket, {})
            if message_type not in metadata.get("subscriptions", []):
                continue

            try:
                await websocket.send_text(json.dumps(message, default=str))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("Error broadcasting to client", error=str(e))
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

    async def broadcast_alert(self, change: str, alert: Alert) -> None:
        """Broadcast an alert change; usable directly as a processor listener."""
        message = AlertMessage(
            data={
                "change": change,
                "alert": alert.model_dump(mode="json")
            }
        ).model_dump(mode="json")

        await self.broadcast_message(message, "alerts")

    async def broadcast_reading(self, summary: Dict[str, Any]) -> None:
        """Broadcast a processed-reading summary."""
        message = ReadingProcessedMessage(data=summary).model_dump(mode="json")
        await self.broadcast_message(message, "readings")

    async def handle_client_message(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        """Handle incoming message from WebSocket client."""
        message_type = message.get("type")
        data = message.get("data") or {}

        if message_type == "ping":
            if websocket in self.connection_metadata:
                self.connection_metadata[websocket]["last_ping"] = datetime.now()
            await self.send_personal_message({"type": "pong", "timestamp": datetime.now()}, websocket)

        elif message_type == "subscribe":
            subscriptions = [s for s in data.get("subscriptions", []) if s in DEFAULT_SUBSCRIPTIONS]
            if websocket in self.connection_metadata:
                self.connection_metadata[websocket]["subscriptions"] = subscriptions
            await self.send_personal_message({
                "type": "subscription_updated",
                "subscriptions": subscriptions
            }, websocket)

        elif message_type == "get_status":
            await self._send_initial_data(websocket)

        else:
            logger.warning("Unknown WebSocket message type", message_type=message_type)
            await self.send_personal_message({
                "type": "error",
                "detail": f"Unknown message type: {message_type}"
            }, websocket)

    async def _send_initial_data(self, websocket: WebSocket) -> None:
        """Send current alert status to a client."""
        status: Dict[str, Any] = {}
        if self.status_provider is not None:
            outcome = self.status_provider()
            status = await outcome if inspect.isawaitable(outcome) else outcome

        await self.send_personal_message({
            "type": "initial_status",
            "timestamp": datetime.now(),
            "data": status
        }, websocket)

    def start_background_tasks(self) -> None:
        """Start stale-connection cleanup."""
        if not self._running:
            self._running = True
            self.cleanup_task = asyncio.create_task(self._background_cleanup())

    async def stop_background_tasks(self) -> None:
        self._running = False
        if self.cleanup_task:
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None

    async def _background_cleanup(self) -> None:
        while self._running:
            try:
                await self._cleanup_stale_connections()
                await asyncio.sleep(30.0)
            except asyncio.CancelledError:
                break

    async def _cleanup_stale_connections(self) -> None:
        """Close connections that haven't sent a ping recently."""
        stale_threshold = datetime.now() - timedelta(minutes=5)
        stale_connections = {
            websocket for websocket in self.active_connections.copy()
            if self.connection_metadata.get(websocket, {}).get("last_ping", datetime.now()) < stale_threshold
        }

        for websocket in stale_connections:
            try:
                await websocket.close()
            except RuntimeError:
                # Already closed
                pass
            self.disconnect(websocket)

    def get_connection_info(self) -> List[Dict[str, Any]]:
        """Information about active connections."""
        connections = []
        for websocket in self.active_connections:
            metadata = self.connection_metadata.get(websocket, {})
            connections.append({
                "client_id": metadata.get("client_id", "unknown"),
                "connected_at": metadata.get("connected_at"),
                "last_ping": metadata.get("last_ping"),
                "subscriptions": metadata.get("subscriptions", [])
            })
        return connections


async def websocket_endpoint(websocket: WebSocket,
                             manager: "ConnectionManager",
                             client_id: Optional[str] = None) -> None:
    """WebSocket endpoint handler."""
    await manager.connect(websocket, client_id)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON received from WebSocket client")
                await manager.send_personal_message({"type": "error", "detail": "Invalid JSON"}, websocket)
                continue

            if not isinstance(message, dict):
                await manager.send_personal_message({"type": "error", "detail": "Expected an object"}, websocket)
                continue

            await manager.handle_client_message(websocket, message)

    except WebSocketDisconnect:
        manager.disconnect(websocket)


__all__ = [
    "websocket_endpoint",
    "ConnectionManager",
    "WebSocketMessage",
    "AlertMessage",
    "ReadingProcessedMessage",
    "DEFAULT_SUBSCRIPTIONS",
]
