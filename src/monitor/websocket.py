"""WebSocket fan-out for monitor updates and log streaming."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import WebSocket

from .logging_config import get_logger, get_ws_log_handler

logger = get_logger(__name__, namespace='ws')

LOG_HISTORY_COUNT = 100


@dataclass
class LogSubscription:
    """Namespaces a client wants logs for. Empty means all of them."""
    namespaces: set[str] = field(default_factory=set)

    def wants(self, namespace: str) -> bool:
        return not self.namespaces or namespace in self.namespaces


@dataclass
class ConnectionManager:
    """Tracks connected clients and delivers JSON messages to them.

    A client whose send fails is dropped.
    """
    active_connections: list[WebSocket] = field(default_factory=list)
    log_subscribers: dict[WebSocket, LogSubscription] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(f"Client connected. Total: {self.connection_count}")

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
            self.log_subscribers.pop(websocket, None)
        logger.info(f"Client disconnected. Total: {self.connection_count}")

    async def _deliver(self, targets: list[WebSocket], message: dict) -> None:
        data = json.dumps(message)
        failed = []
        for websocket in targets:
            try:
                await websocket.send_text(data)
            except Exception as e:
                logger.debug(f"Dropping client after failed send: {e}")
                failed.append(websocket)
        for websocket in failed:
            await self.disconnect(websocket)

    async def broadcast(self, message: dict):
        """Send a message to every connected client."""
        async with self._lock:
            targets = list(self.active_connections)
        if targets:
            await self._deliver(targets, message)

    async def subscribe_to_logs(
        self,
        websocket: WebSocket,
        enabled: bool = True,
        namespaces: list[str] | None = None,
    ):
        """Start (with recent history) or stop streaming logs to a client."""
        if not enabled:
            async with self._lock:
                self.log_subscribers.pop(websocket, None)
            logger.debug(f"Log subscriber removed. Total: {self.log_subscriber_count}")
            return

        subscription = LogSubscription(namespaces=set(namespaces or ()))
        async with self._lock:
            self.log_subscribers[websocket] = subscription
        logger.debug(f"Log subscriber added. Total: {self.log_subscriber_count}")

        history = get_ws_log_handler().get_history(LOG_HISTORY_COUNT, subscription.namespaces or None)
        await self._deliver([websocket], {
            'type': 'log_history',
            'logs': history,
            'count': len(history),
        })

    async def broadcast_log(self, log_entry: dict):
        """Send one log entry to the subscribers whose filter accepts it."""
        namespace = log_entry.get('namespace', 'general')
        async with self._lock:
            targets = [ws for ws, sub in self.log_subscribers.items() if sub.wants(namespace)]
        if targets:
            await self._deliver(targets, {'type': 'log', 'log': log_entry})

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    @property
    def log_subscriber_count(self) -> int:
        return len(self.log_subscribers)


def repositories_message(repositories) -> dict:
    return {
        'type': 'repositories_update',
        'repositories': [r.to_dict() for r in repositories],
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }


def session_state_message(update) -> dict:
    return {
        'type': 'session_state',
        'sessionId': update.session_id,
        'state': update.state.to_dict(),
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }


async def forward_updates_loop(ws_manager: ConnectionManager, queue: asyncio.Queue, to_message):
    """Background task that forwards queued updates to all WebSocket clients.

    Args:
        ws_manager: WebSocket connection manager
        queue: Subscriber queue from the monitor service or file watcher
        to_message: Converts one queued item into a broadcast message
    """
    logger.info("Starting update forwarder")

    while True:
        try:
            item = await queue.get()
            if ws_manager.connection_count > 0:
                await ws_manager.broadcast(to_message(item))
                logger.debug(f"Broadcast update to {ws_manager.connection_count} clients")

        except asyncio.CancelledError:
            logger.info("Update forwarder cancelled")
            break
        except Exception as e:
            logger.error(f"Error forwarding update: {e}")
