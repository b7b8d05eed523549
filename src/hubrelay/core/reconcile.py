"""Rebuild in-memory waiting state from the task store.

Runs when a browser (re)connects and asks for its task history, and once
at startup for every client. Safe to call repeatedly: entries are keyed by
``uniqueId`` and never enrolled twice.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from hubrelay.core.coordinator import TaskCoordinator
from hubrelay.core.logging_config import log_task_transition
from hubrelay.core.notifier import TASK_RECOVERY_UPDATE
from hubrelay.core.tasks import PENDING_STATUSES, QUEUED, TaskRecord
from hubrelay.core.waiting_queue import PendingReason, WaitingEntry

logger = logging.getLogger("hubrelay.reconcile")

RECOVERY_MESSAGE = "Task re-queued after reconnect"


def needs_requeue(record: TaskRecord) -> bool:
    """Pending records, plus QUEUED ones upstream never confirmed with a taskId."""
    if record.node_info_list is None:
        return False
    if record.status in PENDING_STATUSES:
        return True
    return record.status == QUEUED and not record.task_id


def extract_credentials(record: TaskRecord) -> Tuple[Optional[str], Optional[str], List[Dict[str, Any]]]:
    """Return ``(api_key, workflow_id, node_info_list)`` for resubmission.

    Older rows carry no ``api_key``/``workflow_id`` columns; for those the
    values are looked up inside the stored node info structure, which was
    either a wrapper object ``{"apiKey", "workflowId", "nodeInfoList"}`` or a
    list whose items may carry the two keys.
    """
    api_key = record.api_key
    workflow_id = record.workflow_id
    stored = record.node_info_list
    nodes: List[Dict[str, Any]] = []

    if isinstance(stored, dict):
        api_key = api_key or stored.get("apiKey")
        workflow_id = workflow_id or stored.get("workflowId")
        inner = stored.get("nodeInfoList")
        nodes = [n for n in inner if isinstance(n, dict)] if isinstance(inner, list) else []
    elif isinstance(stored, list):
        for item in stored:
            if not isinstance(item, dict):
                continue
            if "nodeId" in item:
                nodes.append(item)
            api_key = api_key or item.get("apiKey")
            workflow_id = workflow_id or item.get("workflowId")

    return (
        str(api_key) if api_key else None,
        str(workflow_id) if workflow_id else None,
        nodes,
    )


class Reconciler:
    def __init__(self, coordinator: TaskCoordinator) -> None:
        self.coordinator = coordinator

    @property
    def store(self):
        return self.coordinator.store

    def _enroll(self, record: TaskRecord, connection_id: Optional[str]) -> Optional[WaitingEntry]:
        queue = self.coordinator.queue
        if queue.contains(record.unique_id):
            return None
        api_key, workflow_id, nodes = extract_credentials(record)
        if not api_key or not workflow_id:
            logger.warning("Cannot re-queue %s: no apiKey/workflowId stored", record.unique_id)
            return None

        entry = WaitingEntry(
            unique_id=record.unique_id,
            client_id=record.client_id,
            api_key=api_key,
            workflow_id=workflow_id,
            node_info_list=nodes,
            connection_id=connection_id,
            created_at=record.created_at,
            reason=PendingReason.from_status(record.status),
        )
        if not queue.enqueue(entry):
            return None

        if record.status != entry.display_status or record.task_id:
            # unconfirmed QUEUED rows go back to a pending label
            record.status = entry.display_status
            record.task_id = None
            self.coordinator.store_call(
                "update", self.store.update, record.unique_id, status=record.status, task_id=None,
            )
        log_task_transition(record.unique_id, record.client_id, record.status, detail="re-queued")
        return entry

    async def _announce(self, entries: List[WaitingEntry]) -> None:
        for entry in entries:
            await self.coordinator.notifier.publish(entry.client_id, TASK_RECOVERY_UPDATE, {
                "clientId": entry.client_id,
                "uniqueId": entry.unique_id,
                "taskId": None,
                "status": entry.display_status,
                "message": RECOVERY_MESSAGE,
            })
        if entries and self.coordinator.in_flight == 0:
            self.coordinator.schedule_kick()

    async def reconcile(self, client_id: str, connection_id: Optional[str] = None) -> List[TaskRecord]:
        """Return the client's records, newest first, re-enrolling pending ones.

        Raises ``StorageError`` if the records cannot be read.
        """
        if connection_id:
            self.coordinator.notifier.subscribe(connection_id, client_id)

        records = self.store.list_for_client(client_id)
        enrolled: List[WaitingEntry] = []
        # oldest first so the queue keeps original submission order
        for record in sorted(records, key=lambda r: r.created_at):
            if not needs_requeue(record):
                continue
            entry = self._enroll(record, connection_id)
            if entry is not None:
                enrolled.append(entry)

        if enrolled:
            logger.info("Re-queued %d task(s) for client %s", len(enrolled), client_id)
        await self._announce(enrolled)
        return records

    async def recover_all(self) -> int:
        """Re-enroll every pending record in the store. Returns the number enrolled."""
        records = self.coordinator.store_call("list_pending", self.store.list_pending) or []
        enrolled: List[WaitingEntry] = []
        for record in records:
            if not needs_requeue(record):
                continue
            entry = self._enroll(record, None)
            if entry is not None:
                enrolled.append(entry)
        if enrolled:
            logger.info("Recovered %d pending task(s) from the store", len(enrolled))
        await self._announce(enrolled)
        return len(enrolled)
