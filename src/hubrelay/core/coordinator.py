"""Task lifecycle coordinator.

Submits workflow creation requests upstream, parks rejected submissions in
the waiting queue, drives head-of-queue retries with exponential backoff and
applies completion notices reported by the polling browsers.

All state lives on one event loop. Every ``await`` on the upstream client is
a suspension point after which the queue is re-read, never assumed.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set
import uuid

from hubrelay.core.logging_config import log_task_transition
from hubrelay.core.notifier import (
    TASK_RECOVERY_UPDATE,
    WORKFLOW_CREATED,
    WORKFLOW_ERROR,
    WORKFLOW_STATUS_UPDATE,
    Notifier,
)
from hubrelay.core.schemas import RequestRejected, parse_create_request
from hubrelay.core.tasks import (
    ACTIVE_STATUSES,
    FAILED,
    SUCCESS,
    StorageError,
    TaskRecord,
    TaskStore,
    accepted_status,
    utc_now_iso,
)
from hubrelay.core.waiting_queue import PendingReason, WaitingEntry, WaitingQueue, backoff_delay
from hubrelay.integrations.runninghub import UpstreamResponse

logger = logging.getLogger("hubrelay.coordinator")

MAX_RETRIES_ERROR = "Exceeded maximum retry attempts while waiting for upstream capacity"
CREATE_ERROR = "Failed to create workflow"
NOT_FOUND_ERROR = "Task not found"


class Upstream(Protocol):
    async def create(
        self,
        api_key: str,
        workflow_id: str,
        node_info_list: list[dict[str, Any]] | None = None,
        webhook_url: str | None = None,
    ) -> UpstreamResponse: ...

    async def cancel(self, api_key: str, task_id: str) -> UpstreamResponse: ...


class Timer(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None: ...


class AsyncioTimer:
    """Runs delayed callbacks as tasks on the running event loop."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        async def _run() -> None:
            await asyncio.sleep(delay)
            try:
                await callback()
            except Exception:  # noqa: BLE001
                logger.exception("Delayed callback failed")

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    @property
    def pending(self) -> int:
        return len(self._tasks)


@dataclass
class SubmitOutcome:
    status: Optional[str]
    unique_id: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeleteOutcome:
    success: bool
    unique_id: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "uniqueId": self.unique_id,
            "taskId": self.task_id,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        return data


class TaskCoordinator:
    def __init__(
        self,
        store: TaskStore,
        upstream: Upstream,
        notifier: Notifier,
        timer: Timer | None = None,
        *,
        max_retry_attempts: int = 5,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        kick_delay: float = 1.0,
        webhook_base_url: str | None = None,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.notifier = notifier
        self.timer: Timer = timer or AsyncioTimer()
        self.queue = WaitingQueue()
        self.in_flight = 0
        self.max_retry_attempts = max_retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.kick_delay = kick_delay
        self.webhook_base_url = webhook_base_url.rstrip("/") if webhook_base_url else None
        self._busy = False
        self._kick_requested = False
        self._kick_scheduled = False
        self._retry_pending = False

    # ── helpers ──────────────────────────────────────────────

    def store_call(self, action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a store operation; storage failures are logged, never raised."""
        try:
            return fn(*args, **kwargs)
        except StorageError:
            logger.exception("Task store %s failed", action)
            return None

    def _webhook_url(self, client_id: str) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url}/api/webhook/{client_id}"

    def _decrement_in_flight(self) -> None:
        self.in_flight = max(0, self.in_flight - 1)

    async def _reply(self, connection_id: Optional[str], client_id: str, event: str, data: Dict[str, Any]) -> None:
        if self.notifier.is_live(connection_id):
            await self.notifier.emit(connection_id, event, data)
        else:
            await self.notifier.publish(client_id, event, data)

    async def _notify_client(
        self, client_id: str, connection_id: Optional[str], event: str, data: Dict[str, Any]
    ) -> None:
        """Publish to the client's topic, plus the owner if it never subscribed."""
        await self.notifier.publish(client_id, event, data)
        if self.notifier.is_live(connection_id) and connection_id not in self.notifier.subscribers(client_id):
            await self.notifier.emit(connection_id, event, data)

    def schedule_kick(self) -> None:
        """One-shot delayed driver run; coalesces with an already scheduled one."""
        if self._kick_scheduled:
            return
        self._kick_scheduled = True
        self.timer.call_later(self.kick_delay, self._run_kick)

    async def _run_kick(self) -> None:
        self._kick_scheduled = False
        await self.try_submit_head()

    async def _run_retry(self) -> None:
        self._retry_pending = False
        await self.try_submit_head()

    # ── submission ───────────────────────────────────────────

    async def submit(self, data: Any, connection_id: Optional[str] = None) -> SubmitOutcome:
        try:
            request = parse_create_request(data)
        except RequestRejected as exc:
            logger.warning("Rejected createWorkflow from %s: %s", connection_id, exc)
            await self.notifier.emit(connection_id, WORKFLOW_ERROR, {"error": str(exc), "code": exc.code})
            return SubmitOutcome(status=None, error=str(exc))

        client_id = request.client_id
        if connection_id:
            self.notifier.subscribe(connection_id, client_id)

        unique_id = str(uuid.uuid4())
        created_at = request.timestamp or utc_now_iso()
        node_info_list = request.node_info_dicts()

        try:
            response = await self.upstream.create(
                request.api_key,
                request.workflow_id,
                node_info_list or None,
                webhook_url=self._webhook_url(client_id),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("createWorkflow for client %s failed: %s", client_id, exc)
            await self._reply(connection_id, client_id, WORKFLOW_ERROR, {"error": CREATE_ERROR})
            return SubmitOutcome(status=None, unique_id=unique_id, error=str(exc))

        record = TaskRecord(
            unique_id=unique_id,
            client_id=client_id,
            status=SUCCESS,
            created_at=created_at,
            node_info_list=node_info_list,
            api_key=request.api_key,
            workflow_id=request.workflow_id,
        )
        pending = False
        if response.is_success:
            if response.task_id is None:
                # accepted without a task handle; nothing left to track
                record.completed_at = utc_now_iso()
            else:
                record.task_id = response.task_id
                record.status = accepted_status(response.task_status)
                self.in_flight += 1
        else:
            reason = PendingReason.CAPACITY if response.is_capacity_rejection else PendingReason.REJECTED
            record.status = reason.display_status
            pending = True
            self.queue.enqueue(WaitingEntry(
                unique_id=unique_id,
                client_id=client_id,
                api_key=request.api_key,
                workflow_id=request.workflow_id,
                node_info_list=node_info_list,
                connection_id=connection_id,
                created_at=created_at,
                reason=reason,
            ))
            logger.info(
                "Upstream refused task %s (code=%s msg=%s); parked as %s",
                unique_id, response.code, response.msg, record.status,
            )

        self.store_call("insert", self.store.insert, record)
        log_task_transition(unique_id, client_id, record.status, record.task_id, detail=response.msg)

        await self._reply(connection_id, client_id, WORKFLOW_CREATED, {
            "taskId": record.task_id,
            "clientId": client_id,
            "status": record.status,
            "uniqueId": unique_id,
            "createdAt": created_at,
            "nodeInfoList": node_info_list,
        })

        if pending and self.in_flight == 0:
            self.schedule_kick()
        return SubmitOutcome(status=record.status, unique_id=unique_id, task_id=record.task_id)

    # ── waiting queue driver ─────────────────────────────────

    async def try_submit_head(self) -> None:
        """Attempt the head of the waiting queue once."""
        if self._busy or self._retry_pending:
            self._kick_requested = True
            return
        entry = self.queue.head()
        if entry is None:
            return

        self._busy = True
        self._kick_requested = False
        try:
            retry_delay = await self._attempt(entry)
        finally:
            self._busy = False

        if retry_delay is not None:
            self._retry_pending = True
            self.timer.call_later(retry_delay, self._run_retry)
        elif self._kick_requested and len(self.queue):
            self.schedule_kick()
        self._kick_requested = False

    async def _attempt(self, entry: WaitingEntry) -> Optional[float]:
        """One upstream attempt for *entry*. Returns a backoff delay when another try is due."""
        if not entry.unique_id:
            entry.unique_id = str(uuid.uuid4())

        response: Optional[UpstreamResponse] = None
        failure = ""
        try:
            response = await self.upstream.create(
                entry.api_key,
                entry.workflow_id,
                entry.node_info_list or None,
                webhook_url=self._webhook_url(entry.client_id),
            )
        except Exception as exc:  # noqa: BLE001
            failure = str(exc) or exc.__class__.__name__

        if not self.queue.contains(entry.unique_id):
            logger.info("Task %s left the waiting queue during its attempt; discarding result", entry.unique_id)
            if response is not None and response.is_success and response.task_id:
                await self._cancel_upstream(entry, response.task_id)
            return None

        if response is not None and response.is_capacity_rejection:
            logger.info("Upstream still full; %s stays at the head (%d waiting)", entry.unique_id, len(self.queue))
            return None

        if response is not None and response.is_success:
            await self._accept(entry, response)
            return None

        if response is not None:
            failure = f"code={response.code} msg={response.msg}"
        entry.retry_count += 1
        if entry.retry_count <= self.max_retry_attempts:
            delay = backoff_delay(entry.retry_count, self.retry_initial_delay, self.retry_max_delay)
            logger.warning(
                "Attempt for %s failed (%s); retry %d/%d in %.1fs",
                entry.unique_id, failure, entry.retry_count, self.max_retry_attempts, delay,
            )
            return delay

        self.queue.remove(entry.unique_id)
        completed_at = utc_now_iso()
        self.store_call(
            "update", self.store.update, entry.unique_id,
            status=FAILED, error=MAX_RETRIES_ERROR, completed_at=completed_at,
        )
        log_task_transition(entry.unique_id, entry.client_id, FAILED, detail=failure)
        logger.error("Giving up on %s after %d attempts: %s", entry.unique_id, entry.retry_count, failure)
        await self._notify_client(entry.client_id, entry.connection_id, WORKFLOW_STATUS_UPDATE, {
            "uniqueId": entry.unique_id,
            "originalCreatedAt": entry.created_at,
            "taskId": None,
            "status": FAILED,
            "error": MAX_RETRIES_ERROR,
        })
        return None

    async def _accept(self, entry: WaitingEntry, response: UpstreamResponse) -> None:
        self.queue.remove(entry.unique_id)
        task_id = response.task_id
        fields: Dict[str, Any] = {"task_id": task_id, "error": None}
        if task_id is None:
            status = SUCCESS
            fields["completed_at"] = utc_now_iso()
        else:
            status = accepted_status(response.task_status)
            self.in_flight += 1
        fields["status"] = status
        self.store_call("update", self.store.update, entry.unique_id, **fields)
        log_task_transition(entry.unique_id, entry.client_id, status, task_id, detail="accepted from waiting queue")
        logger.info("Waiting task %s accepted as %s (%s), %d still waiting", entry.unique_id, task_id, status, len(self.queue))

        if self.notifier.is_live(entry.connection_id):
            await self._notify_client(entry.client_id, entry.connection_id, WORKFLOW_STATUS_UPDATE, {
                "uniqueId": entry.unique_id,
                "originalCreatedAt": entry.created_at,
                "taskId": task_id,
                "status": status,
            })
        else:
            await self.notifier.publish(entry.client_id, TASK_RECOVERY_UPDATE, {
                "clientId": entry.client_id,
                "uniqueId": entry.unique_id,
                "taskId": task_id,
                "status": status,
                "message": "Waiting task was accepted upstream",
            })

    async def _cancel_upstream(self, entry: WaitingEntry, task_id: str) -> None:
        try:
            await self.upstream.cancel(entry.api_key, task_id)
            logger.info("Cancelled upstream task %s for deleted entry %s", task_id, entry.unique_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not cancel upstream task %s: %s", task_id, exc)

    async def sweep(self) -> None:
        """Periodic trigger so a parked head is retried even with no completions."""
        if len(self.queue) and not self._busy and not self._retry_pending:
            await self.try_submit_head()

    # ── completion / deletion ────────────────────────────────

    async def complete_task(self, task_id: str, result: Any = None, error: Optional[str] = None) -> Optional[TaskRecord]:
        record = self.store_call("lookup", self.store.get_by_task_id, task_id) if task_id else None
        if record is None:
            logger.warning("Completion notice for unknown task %s", task_id)
            self._decrement_in_flight()
            await self.try_submit_head()
            return None

        if record.is_terminal:
            logger.info("Task %s already %s; ignoring completion notice", task_id, record.status)
            await self.try_submit_head()
            return record

        was_active = record.status in ACTIVE_STATUSES
        record.status = FAILED if error else SUCCESS
        record.completed_at = utc_now_iso()
        if error:
            record.error = str(error)
        else:
            record.result = result
        self.store_call(
            "update", self.store.update, record.unique_id,
            status=record.status, result=record.result, error=record.error,
            completed_at=record.completed_at,
        )
        log_task_transition(record.unique_id, record.client_id, record.status, task_id, detail=record.error or "")
        if was_active:
            self._decrement_in_flight()

        update: Dict[str, Any] = {
            "uniqueId": record.unique_id,
            "originalCreatedAt": record.created_at,
            "taskId": task_id,
            "status": record.status,
        }
        if record.error:
            update["error"] = record.error
        await self.notifier.publish(record.client_id, WORKFLOW_STATUS_UPDATE, update)

        await self.try_submit_head()
        return record

    async def delete_task(
        self,
        unique_id: Optional[str] = None,
        task_id: Optional[str] = None,
        created_at: Optional[str] = None,
        is_waiting: bool = False,
        client_id: Optional[str] = None,
    ) -> DeleteOutcome:
        if is_waiting:
            entry = self.queue.remove(unique_id) if unique_id else None
            if entry is None and created_at:
                entry = self.queue.remove_by_created_at(created_at, client_id)
            if entry is not None:
                self.store_call("delete", self.store.delete, entry.unique_id)
                logger.info("Deleted waiting task %s (%s)", entry.unique_id, entry.reason.display_status)
                return DeleteOutcome(success=True, unique_id=entry.unique_id, task_id=task_id)

        # a waiting task may have been accepted before the delete arrived
        record = None
        if unique_id:
            record = self.store_call("lookup", self.store.get, unique_id)
        if record is None and task_id:
            record = self.store_call("lookup", self.store.get_by_task_id, task_id)
        if record is None and is_waiting and created_at and client_id:
            record = self.store_call("lookup", self.store.get_by_created_at, created_at, client_id)
        if record is None:
            logger.info("Delete of task %s/%s/%s found nothing", unique_id, task_id, created_at)
            return DeleteOutcome(success=False, unique_id=unique_id, task_id=task_id, error=NOT_FOUND_ERROR)

        self.queue.remove(record.unique_id)
        deleted = bool(self.store_call("delete", self.store.delete, record.unique_id))
        if not deleted:
            return DeleteOutcome(success=False, unique_id=record.unique_id, task_id=record.task_id, error=NOT_FOUND_ERROR)
        logger.info("Deleted task %s (%s, was %s)", record.unique_id, record.task_id, record.status)
        if record.status in ACTIVE_STATUSES:
            self._decrement_in_flight()
            await self.try_submit_head()
        return DeleteOutcome(success=True, unique_id=record.unique_id, task_id=record.task_id)

    def status(self) -> Dict[str, Any]:
        return {
            "waiting": len(self.queue),
            "in_flight": self.in_flight,
            "busy": self._busy,
            "retry_pending": self._retry_pending,
        }
