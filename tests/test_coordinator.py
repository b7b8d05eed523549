"""Tests for submission, the waiting-queue driver, completion and deletion."""
from __future__ import annotations

import asyncio

from hubrelay.core.coordinator import CREATE_ERROR, MAX_RETRIES_ERROR, NOT_FOUND_ERROR, TaskCoordinator
from hubrelay.core.notifier import (
    TASK_RECOVERY_UPDATE,
    WORKFLOW_CREATED,
    WORKFLOW_ERROR,
    WORKFLOW_STATUS_UPDATE,
)
from hubrelay.core.tasks import FAILED, QUEUED, RETRY, RUNNING, SUCCESS, WAITING, StorageError, TaskRecord, TaskStore
from hubrelay.integrations.runninghub import UpstreamResponse

from fakes import create_request, full, ok, rejected, transport_error


def _submit(coordinator, conn, **extra):
    return asyncio.run(coordinator.submit(create_request(**extra), conn.connection_id))


# ── Submission ───────────────────────────────────────────────

class TestSubmit:
    def test_missing_client_id_is_rejected_without_upstream_call(self, coordinator, upstream, store, connect):
        conn = connect()
        outcome = asyncio.run(coordinator.submit(create_request(client_id=None), conn.connection_id))
        assert outcome.status is None
        assert conn.last(WORKFLOW_ERROR)["code"] == "MISSING_CLIENT_ID"
        assert upstream.calls == []
        assert store.count() == 0

    def test_blank_client_id_is_rejected(self, coordinator, upstream, connect):
        conn = connect()
        asyncio.run(coordinator.submit(create_request(client_id="   "), conn.connection_id))
        assert conn.last(WORKFLOW_ERROR)["code"] == "MISSING_CLIENT_ID"
        assert upstream.calls == []

    def test_missing_api_key_is_invalid(self, coordinator, upstream, store, connect):
        conn = connect()
        asyncio.run(coordinator.submit(create_request(apiKey=""), conn.connection_id))
        error = conn.last(WORKFLOW_ERROR)
        assert error["code"] == "INVALID_REQUEST"
        assert "apiKey" in error["error"]
        assert upstream.calls == []
        assert store.count() == 0

    def test_immediate_acceptance_is_queued(self, coordinator, upstream, store, timer, connect):
        upstream.script(ok("t-1"))
        conn = connect()
        outcome = _submit(coordinator, conn)

        assert outcome.status == QUEUED
        assert outcome.task_id == "t-1"
        assert coordinator.in_flight == 1
        assert len(coordinator.queue) == 0
        assert timer.scheduled == []

        record = store.get(outcome.unique_id)
        assert record.status == QUEUED
        assert record.task_id == "t-1"
        assert record.api_key == "key-0123456789"

        created = conn.last(WORKFLOW_CREATED)
        assert created["taskId"] == "t-1"
        assert created["status"] == QUEUED
        assert created["clientId"] == "client-a"
        assert created["uniqueId"] == outcome.unique_id
        assert created["nodeInfoList"][0]["fieldValue"] == "a cat"

        call = upstream.calls[0]
        assert call["workflowId"] == "1900000000000000001"
        assert call["nodeInfoList"] == [{"nodeId": "6", "fieldName": "text", "fieldValue": "a cat"}]
        assert call["webhookUrl"] is None

    def test_running_sub_state_is_kept(self, coordinator, upstream, connect):
        upstream.script(ok("t-2", "RUNNING"))
        outcome = _submit(coordinator, connect())
        assert outcome.status == RUNNING
        assert coordinator.in_flight == 1

    def test_client_timestamp_becomes_created_at(self, coordinator, store, connect):
        conn = connect()
        outcome = _submit(coordinator, conn, _timestamp="2026-03-01T08:00:00.000Z")
        assert store.get(outcome.unique_id).created_at == "2026-03-01T08:00:00.000Z"
        assert conn.last(WORKFLOW_CREATED)["createdAt"] == "2026-03-01T08:00:00.000Z"

    def test_capacity_rejection_waits_and_schedules_kick(self, coordinator, upstream, store, timer, connect):
        upstream.script(full())
        conn = connect()
        outcome = _submit(coordinator, conn)

        assert outcome.status == WAITING
        assert outcome.task_id is None
        assert store.get(outcome.unique_id).status == WAITING
        assert coordinator.queue.head().unique_id == outcome.unique_id
        assert conn.last(WORKFLOW_CREATED)["status"] == WAITING
        assert conn.last(WORKFLOW_CREATED)["taskId"] is None
        assert timer.delays == [1.0]

    def test_other_rejection_is_retry(self, coordinator, upstream, store, connect):
        upstream.script(rejected(code=805, msg="APIKEY_INVALID"))
        outcome = _submit(coordinator, connect())
        assert outcome.status == RETRY
        assert store.get(outcome.unique_id).status == RETRY
        assert coordinator.queue.head().display_status == RETRY

    def test_no_kick_while_tasks_are_in_flight(self, coordinator, upstream, timer, connect):
        upstream.script(ok("t-1"), full())
        conn = connect()
        _submit(coordinator, conn)
        _submit(coordinator, conn)
        assert len(coordinator.queue) == 1
        assert timer.scheduled == []

    def test_degenerate_success_without_task_id(self, coordinator, upstream, store, connect):
        upstream.script(UpstreamResponse(code=0, msg="success", data=None))
        conn = connect()
        outcome = _submit(coordinator, conn)
        record = store.get(outcome.unique_id)
        assert record.status == SUCCESS
        assert record.task_id is None
        assert record.completed_at is not None
        assert coordinator.in_flight == 0
        assert conn.last(WORKFLOW_CREATED)["status"] == SUCCESS

    def test_transport_error_creates_nothing(self, coordinator, upstream, store, connect):
        upstream.script(transport_error())
        conn = connect()
        outcome = _submit(coordinator, conn)
        assert outcome.status is None
        assert conn.last(WORKFLOW_ERROR) == {"error": CREATE_ERROR}
        assert conn.events(WORKFLOW_CREATED) == []
        assert store.count() == 0
        assert len(coordinator.queue) == 0

    def test_exactly_one_record_and_notification_per_submit(self, coordinator, upstream, store, connect):
        upstream.script(ok("t-1"), full(), rejected())
        conn = connect()
        for _ in range(3):
            _submit(coordinator, conn)
        assert store.count() == 3
        assert len(conn.events(WORKFLOW_CREATED)) == 3

    def test_storage_failure_does_not_block_notification(self, tmp_path, upstream, notifier, timer, connect):
        class BrokenStore(TaskStore):
            def insert(self, record):
                raise StorageError("disk I/O error")

        coordinator = TaskCoordinator(BrokenStore(str(tmp_path / "t.sqlite3")), upstream, notifier, timer)
        conn = connect()
        outcome = _submit(coordinator, conn)
        assert outcome.status == QUEUED
        assert conn.last(WORKFLOW_CREATED)["uniqueId"] == outcome.unique_id

    def test_webhook_url_is_forwarded(self, store, upstream, notifier, timer, connect):
        coordinator = TaskCoordinator(
            store, upstream, notifier, timer, webhook_base_url="https://relay.example.com/",
        )
        _submit(coordinator, connect())
        assert upstream.calls[0]["webhookUrl"] == "https://relay.example.com/api/webhook/client-a"


# ── Waiting queue driver ─────────────────────────────────────

class TestDriver:
    def test_capacity_rejections_then_success(self, coordinator, upstream, store, timer, connect):
        upstream.script(full(), full(), full(), ok("T1", "RUNNING"))
        conn = connect()
        outcome = _submit(coordinator, conn)

        async def scenario():
            await timer.fire_next()
            assert coordinator.queue.head().unique_id == outcome.unique_id
            await coordinator.try_submit_head()
            assert len(coordinator.queue) == 1
            await coordinator.try_submit_head()

        asyncio.run(scenario())

        assert len(upstream.calls) == 4
        assert len(coordinator.queue) == 0
        assert coordinator.in_flight == 1
        assert timer.scheduled == []
        record = store.get(outcome.unique_id)
        assert record.status == RUNNING
        assert record.task_id == "T1"
        update = conn.last(WORKFLOW_STATUS_UPDATE)
        assert update["uniqueId"] == outcome.unique_id
        assert update["taskId"] == "T1"
        assert update["status"] == RUNNING
        assert len(conn.events(WORKFLOW_STATUS_UPDATE)) == 1

    def test_fifo_order_is_preserved(self, coordinator, upstream, store, connect):
        upstream.script(full(), full(), full())
        conn = connect()
        first = _submit(coordinator, conn)
        second = _submit(coordinator, conn)
        third = _submit(coordinator, conn)
        assert [e.unique_id for e in coordinator.queue.entries()] == [
            first.unique_id, second.unique_id, third.unique_id,
        ]

        async def scenario():
            upstream.script(full())
            await coordinator.try_submit_head()
            # head still full: later entries were never attempted
            assert coordinator.queue.head().unique_id == first.unique_id
            for _ in range(3):
                await coordinator.try_submit_head()

        asyncio.run(scenario())
        assert [store.get(o.unique_id).task_id for o in (first, second, third)] == [
            "auto-1", "auto-2", "auto-3",
        ]

    def test_kicks_coalesce(self, coordinator, upstream, timer, connect):
        upstream.script(full(), full())
        conn = connect()
        _submit(coordinator, conn)
        _submit(coordinator, conn)
        assert timer.delays == [1.0]

    def test_backoff_grows_then_gives_up(self, coordinator, upstream, store, timer, connect):
        upstream.script(*[rejected() for _ in range(7)])
        conn = connect()
        outcome = _submit(coordinator, conn)

        asyncio.run(timer.drain())

        # one kick, then one backoff per failed attempt up to the limit
        assert timer.history == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
        assert all(b >= a for a, b in zip(timer.history[1:], timer.history[2:]))
        assert len(upstream.calls) == 7
        assert len(coordinator.queue) == 0

        record = store.get(outcome.unique_id)
        assert record.status == FAILED
        assert record.error == MAX_RETRIES_ERROR
        assert record.completed_at is not None
        update = conn.last(WORKFLOW_STATUS_UPDATE)
        assert update["status"] == FAILED
        assert update["error"] == MAX_RETRIES_ERROR
        assert update["taskId"] is None

    def test_transport_errors_count_as_failed_attempts(self, coordinator, upstream, timer, connect):
        upstream.script(full(), transport_error(), ok("t-3"))
        conn = connect()
        outcome = _submit(coordinator, conn)

        asyncio.run(timer.drain())

        assert timer.history == [1.0, 2.0]
        assert coordinator.queue.contains(outcome.unique_id) is False
        assert conn.last(WORKFLOW_STATUS_UPDATE)["taskId"] == "t-3"

    def test_sweep_waits_for_pending_backoff(self, coordinator, upstream, timer, connect):
        upstream.script(rejected(), rejected())
        _submit(coordinator, connect())

        async def scenario():
            await timer.fire_next()
            calls = len(upstream.calls)
            await coordinator.sweep()
            await coordinator.try_submit_head()
            assert len(upstream.calls) == calls
            assert coordinator.status()["retry_pending"] is True

        asyncio.run(scenario())

    def test_sweep_retries_parked_head(self, coordinator, upstream, connect):
        upstream.script(full())
        outcome = _submit(coordinator, connect())
        asyncio.run(coordinator.sweep())
        assert not coordinator.queue.contains(outcome.unique_id)
        assert coordinator.in_flight == 1

    def test_acceptance_after_owner_left_goes_to_recovery_update(self, coordinator, upstream, notifier, connect):
        upstream.script(full())
        owner = connect("conn-1")
        outcome = _submit(coordinator, owner)
        notifier.unregister(owner.connection_id)

        successor = connect("conn-2")
        notifier.subscribe(successor.connection_id, "client-a")
        asyncio.run(coordinator.try_submit_head())

        recovery = successor.last(TASK_RECOVERY_UPDATE)
        assert recovery["uniqueId"] == outcome.unique_id
        assert recovery["taskId"] == "auto-1"
        assert recovery["clientId"] == "client-a"
        assert owner.events(WORKFLOW_STATUS_UPDATE) == []

    def test_reentrant_kick_waits_for_outstanding_attempt(self, coordinator, upstream, store, timer, connect):
        upstream.script(full(), full())
        conn = connect()
        first = _submit(coordinator, conn)
        second = _submit(coordinator, conn)
        assert len(upstream.calls) == 2

        async def scenario():
            upstream.during_call = coordinator.try_submit_head
            await timer.fire_next()
            # the nested call was only remembered, then rescheduled once
            assert len(upstream.calls) == 3
            assert timer.delays == [coordinator.kick_delay]
            await timer.fire_next()

        asyncio.run(scenario())
        assert store.get(first.unique_id).task_id == "auto-1"
        assert store.get(second.unique_id).task_id == "auto-2"
        assert len(upstream.calls) == 4
        assert timer.scheduled == []

    def test_entry_deleted_during_attempt_is_discarded(self, coordinator, upstream, store, connect):
        upstream.script(full())
        outcome = _submit(coordinator, connect())

        upstream.during_call = lambda: coordinator.delete_task(unique_id=outcome.unique_id, is_waiting=True)
        asyncio.run(coordinator.try_submit_head())

        assert store.get(outcome.unique_id) is None
        assert coordinator.in_flight == 0
        assert upstream.cancelled == [("key-0123456789", "auto-1")]


# ── Completion ───────────────────────────────────────────────

class TestCompletion:
    def test_success_completion(self, coordinator, upstream, store, connect):
        upstream.script(ok("t-1"))
        conn = connect()
        outcome = _submit(coordinator, conn)

        asyncio.run(coordinator.complete_task("t-1", result={"fileUrl": "https://cdn.example/a.png"}))

        record = store.get(outcome.unique_id)
        assert record.status == SUCCESS
        assert record.result == {"fileUrl": "https://cdn.example/a.png"}
        assert record.completed_at is not None
        assert coordinator.in_flight == 0
        update = conn.last(WORKFLOW_STATUS_UPDATE)
        assert update["status"] == SUCCESS
        assert update["taskId"] == "t-1"

    def test_failed_completion(self, coordinator, upstream, store, connect):
        upstream.script(ok("t-1"))
        conn = connect()
        outcome = _submit(coordinator, conn)
        asyncio.run(coordinator.complete_task("t-1", error="node 6 crashed"))
        record = store.get(outcome.unique_id)
        assert record.status == FAILED
        assert record.error == "node 6 crashed"
        assert conn.last(WORKFLOW_STATUS_UPDATE)["error"] == "node 6 crashed"

    def test_terminal_record_is_not_changed(self, coordinator, upstream, store, connect):
        upstream.script(ok("t-1"))
        outcome = _submit(coordinator, connect())

        async def scenario():
            await coordinator.complete_task("t-1", result={"n": 1})
            coordinator.in_flight = 3
            await coordinator.complete_task("t-1", error="late failure")

        asyncio.run(scenario())
        record = store.get(outcome.unique_id)
        assert record.status == SUCCESS
        assert record.error is None
        assert coordinator.in_flight == 3

    def test_unknown_task_id_decrements_and_never_goes_negative(self, coordinator):
        coordinator.in_flight = 1
        asyncio.run(coordinator.complete_task("ghost"))
        assert coordinator.in_flight == 0
        asyncio.run(coordinator.complete_task("ghost"))
        assert coordinator.in_flight == 0

    def test_completion_kicks_waiting_queue(self, coordinator, upstream, store, timer, connect):
        upstream.script(ok("t-1"), full())
        conn = connect()
        _submit(coordinator, conn)
        waiting = _submit(coordinator, conn)
        assert timer.scheduled == []

        asyncio.run(coordinator.complete_task("t-1"))

        assert len(coordinator.queue) == 0
        assert store.get(waiting.unique_id).task_id == "auto-1"
        assert coordinator.in_flight == 1


# ── Deletion ─────────────────────────────────────────────────

class TestDelete:
    def test_delete_waiting_task(self, coordinator, upstream, store, timer, connect):
        upstream.script(full())
        outcome = _submit(coordinator, connect())

        result = asyncio.run(coordinator.delete_task(unique_id=outcome.unique_id, is_waiting=True))
        assert result.success is True
        assert len(coordinator.queue) == 0
        assert store.get(outcome.unique_id) is None

        # the pending kick finds nothing to submit
        calls = len(upstream.calls)
        asyncio.run(timer.drain())
        assert len(upstream.calls) == calls

    def test_delete_waiting_task_by_created_at(self, coordinator, upstream, store, connect):
        upstream.script(full())
        outcome = _submit(coordinator, connect(), _timestamp="2026-02-02T02:02:02.000Z")
        result = asyncio.run(coordinator.delete_task(created_at="2026-02-02T02:02:02.000Z", is_waiting=True))
        assert result.success is True
        assert result.unique_id == outcome.unique_id
        assert store.get(outcome.unique_id) is None

    def test_delete_unknown_waiting_task(self, coordinator):
        result = asyncio.run(coordinator.delete_task(unique_id="nope", is_waiting=True))
        assert result.success is False
        assert result.error == NOT_FOUND_ERROR
        assert result.to_dict() == {"uniqueId": "nope", "taskId": None, "success": False, "error": NOT_FOUND_ERROR}

    def test_waiting_delete_after_acceptance_frees_slot(self, coordinator, upstream, store, timer, connect):
        upstream.script(full())
        conn = connect()
        first = _submit(coordinator, conn)
        asyncio.run(timer.fire_next())
        assert coordinator.in_flight == 1
        assert store.get(first.unique_id).task_id == "auto-1"

        upstream.script(full())
        second = _submit(coordinator, conn)
        assert timer.scheduled == []

        # browser still shows the first task as waiting
        result = asyncio.run(coordinator.delete_task(unique_id=first.unique_id, is_waiting=True))
        assert result.success is True
        assert result.task_id == "auto-1"
        assert store.get(first.unique_id) is None
        # the freed slot went straight to the next waiting task
        assert store.get(second.unique_id).task_id == "auto-2"
        assert coordinator.in_flight == 1
        assert len(coordinator.queue) == 0

    def test_created_at_fallback_is_scoped_to_client(self, coordinator, store):
        stamp = "2026-03-03T03:03:03.000Z"
        for unique_id, client_id in (("a1", "client-a"), ("b1", "client-b")):
            store.insert(TaskRecord(unique_id=unique_id, client_id=client_id, status=WAITING, created_at=stamp))

        unscoped = asyncio.run(coordinator.delete_task(created_at=stamp, is_waiting=True))
        assert unscoped.success is False

        result = asyncio.run(coordinator.delete_task(created_at=stamp, is_waiting=True, client_id="client-b"))
        assert result.success is True
        assert result.unique_id == "b1"
        assert store.get("a1") is not None
        assert store.get("b1") is None

    def test_delete_active_task_frees_slot(self, coordinator, upstream, store, connect):
        upstream.script(ok("t-1"))
        outcome = _submit(coordinator, connect())
        result = asyncio.run(coordinator.delete_task(task_id="t-1"))
        assert result.success is True
        assert result.unique_id == outcome.unique_id
        assert coordinator.in_flight == 0
        assert store.get(outcome.unique_id) is None

    def test_delete_finished_task(self, coordinator, upstream, connect):
        upstream.script(ok("t-1"))
        outcome = _submit(coordinator, connect())
        asyncio.run(coordinator.complete_task("t-1"))
        result = asyncio.run(coordinator.delete_task(unique_id=outcome.unique_id))
        assert result.success is True
        assert result.to_dict()["taskId"] == "t-1"
        assert "error" not in result.to_dict()

    def test_delete_missing_task(self, coordinator):
        result = asyncio.run(coordinator.delete_task(unique_id="nope", task_id="t-404"))
        assert result.success is False
        assert result.error == NOT_FOUND_ERROR


def test_status_snapshot(coordinator, upstream, connect):
    upstream.script(ok("t-1"), full())
    conn = connect()
    _submit(coordinator, conn)
    _submit(coordinator, conn)
    assert coordinator.status() == {"waiting": 1, "in_flight": 1, "busy": False, "retry_pending": False}
