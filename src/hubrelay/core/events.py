"""Dispatch of inbound push-channel events to the coordinator."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from hubrelay.core.coordinator import TaskCoordinator
from hubrelay.core.notifier import (
    CLIENT_TASKS,
    CREATE_WORKFLOW,
    DELETE_TASK,
    GET_CLIENT_TASKS,
    REGISTER,
    TASK_COMPLETED,
    TASK_DELETED,
    WORKFLOW_ERROR,
    Notifier,
)
from hubrelay.core.reconcile import Reconciler
from hubrelay.core.tasks import StorageError

logger = logging.getLogger("hubrelay.events")


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def completion_error(data: Dict[str, Any]) -> Optional[str]:
    """Error text of a completion notice, from ``error`` or ``result.error``."""
    error = data.get("error")
    if not error and isinstance(data.get("result"), dict):
        error = data["result"].get("error")
    return str(error) if error else None


class ChannelHandler:
    def __init__(self, coordinator: TaskCoordinator, reconciler: Reconciler, notifier: Notifier) -> None:
        self.coordinator = coordinator
        self.reconciler = reconciler
        self.notifier = notifier
        self._handlers = {
            CREATE_WORKFLOW: self.on_create_workflow,
            TASK_COMPLETED: self.on_task_completed,
            DELETE_TASK: self.on_delete_task,
            GET_CLIENT_TASKS: self.on_get_client_tasks,
            REGISTER: self.on_register,
        }

    async def dispatch(self, connection_id: str, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("Ignoring unknown event %r from %s", event, connection_id)
            return
        await handler(connection_id, data if data is not None else {})

    async def on_create_workflow(self, connection_id: str, data: Any) -> None:
        await self.coordinator.submit(data, connection_id)

    async def on_task_completed(self, connection_id: str, data: Any) -> None:
        if not isinstance(data, dict) or not _as_str(data.get("taskId")):
            logger.warning("taskCompleted from %s without taskId", connection_id)
            return
        await self.coordinator.complete_task(
            str(data["taskId"]),
            result=data.get("result"),
            error=completion_error(data),
        )

    async def on_delete_task(self, connection_id: str, data: Any) -> None:
        if not isinstance(data, dict):
            data = {}
        outcome = await self.coordinator.delete_task(
            unique_id=_as_str(data.get("uniqueId")),
            task_id=_as_str(data.get("taskId")),
            created_at=_as_str(data.get("createdAt")),
            is_waiting=bool(data.get("isWaiting")),
            client_id=self._client_scope(connection_id, data),
        )
        await self.notifier.emit(connection_id, TASK_DELETED, outcome.to_dict())

    def _client_scope(self, connection_id: str, data: Dict[str, Any]) -> Optional[str]:
        """The client a delete applies to: explicit, else the connection's only subscription."""
        client_id = _as_str(data.get("clientId"))
        if client_id:
            return client_id
        clients = self.notifier.clients_of(connection_id)
        return next(iter(clients)) if len(clients) == 1 else None

    async def on_get_client_tasks(self, connection_id: str, data: Any) -> None:
        client_id = _as_str(data.get("clientId")) if isinstance(data, dict) else None
        if not client_id:
            await self.notifier.emit(connection_id, CLIENT_TASKS, {
                "clientId": None, "tasks": [], "error": "clientId is required",
            })
            return
        try:
            records = await self.reconciler.reconcile(client_id, connection_id)
        except StorageError as exc:
            logger.error("Could not load tasks for client %s: %s", client_id, exc)
            await self.notifier.emit(connection_id, CLIENT_TASKS, {
                "clientId": client_id, "tasks": [], "error": "Failed to load tasks",
            })
            return
        await self.notifier.emit(connection_id, CLIENT_TASKS, {
            "clientId": client_id,
            "tasks": [r.to_dict() for r in records],
        })

    async def on_register(self, connection_id: str, data: Any) -> None:
        client_id = _as_str(data.get("clientId")) if isinstance(data, dict) else None
        if not client_id:
            await self.notifier.emit(connection_id, WORKFLOW_ERROR, {
                "error": "clientId is required", "code": "MISSING_CLIENT_ID",
            })
            return
        self.notifier.subscribe(connection_id, client_id)
        logger.info("Connection %s registered for client %s", connection_id, client_id)
