"""Push notification channel.

Connections register with the notifier and subscribe to topics keyed by
``clientId``. The coordinator either replies to one connection (``emit``)
or publishes to every connection currently subscribed to a client
(``publish``), so a browser that reconnected with a new connection still
receives updates for tasks it created earlier.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Set

logger = logging.getLogger("hubrelay.notifier")

# Outbound events
WORKFLOW_CREATED = "workflowCreated"
WORKFLOW_STATUS_UPDATE = "workflowStatusUpdate"
TASK_RECOVERY_UPDATE = "taskRecoveryUpdate"
CLIENT_TASKS = "clientTasks"
TASK_DELETED = "taskDeleted"
WORKFLOW_ERROR = "workflowError"
WEBHOOK_CALLBACK = "webhookCallback"

# Inbound events
CREATE_WORKFLOW = "createWorkflow"
TASK_COMPLETED = "taskCompleted"
DELETE_TASK = "deleteTask"
GET_CLIENT_TASKS = "getClientTasks"
REGISTER = "register"


class Connection(Protocol):
    connection_id: str

    async def send(self, event: str, data: Dict[str, Any]) -> None: ...


class Notifier:
    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._topics: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection
        logger.info("Connection %s registered (%d live)", connection.connection_id, len(self._connections))

    def unregister(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        for client_id in list(self._topics):
            subscribers = self._topics[client_id]
            subscribers.discard(connection_id)
            if not subscribers:
                del self._topics[client_id]
        logger.info("Connection %s unregistered (%d live)", connection_id, len(self._connections))

    def subscribe(self, connection_id: str, client_id: str) -> None:
        if connection_id not in self._connections or not client_id:
            return
        subscribers = self._topics.setdefault(client_id, set())
        if connection_id not in subscribers:
            subscribers.add(connection_id)
            logger.debug("Connection %s subscribed to client %s", connection_id, client_id)

    def is_live(self, connection_id: Optional[str]) -> bool:
        return bool(connection_id) and connection_id in self._connections

    def subscribers(self, client_id: str) -> Set[str]:
        return set(self._topics.get(client_id, ()))

    def clients_of(self, connection_id: str) -> Set[str]:
        return {client_id for client_id, subs in self._topics.items() if connection_id in subs}

    @property
    def live_count(self) -> int:
        return len(self._connections)

    async def emit(self, connection_id: Optional[str], event: str, data: Dict[str, Any]) -> bool:
        """Send to one connection. Returns False if it is gone or the send failed."""
        connection = self._connections.get(connection_id or "")
        if connection is None:
            logger.debug("Dropping %s for closed connection %s", event, connection_id)
            return False
        try:
            await connection.send(event, data)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Send of %s to %s failed: %s", event, connection_id, exc)
            self.unregister(connection.connection_id)
            return False

    async def publish(self, client_id: str, event: str, data: Dict[str, Any]) -> int:
        """Send to every connection subscribed to *client_id*. Returns the delivery count."""
        delivered = 0
        for connection_id in sorted(self.subscribers(client_id)):
            if await self.emit(connection_id, event, data):
                delivered += 1
        if not delivered:
            logger.debug("No live subscribers for client %s (%s)", client_id, event)
        return delivered
