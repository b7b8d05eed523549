from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import os
from typing import Any, Optional
import uuid

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from hubrelay import __version__
from hubrelay.core.config import Settings
from hubrelay.core.coordinator import AsyncioTimer, TaskCoordinator, Timer, Upstream
from hubrelay.core.events import ChannelHandler
from hubrelay.core.logging_config import setup_logging
from hubrelay.core.notifier import WEBHOOK_CALLBACK, WORKFLOW_ERROR, Notifier
from hubrelay.core.reconcile import Reconciler
from hubrelay.core.tasks import StorageError, TaskStore, utc_now_iso
from hubrelay.integrations.runninghub import RunningHubClient

logger = logging.getLogger("hubrelay.gateway")


class WebSocketConnection:
    """Push-channel connection over a FastAPI WebSocket, ``{event, data}`` envelope."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex

    async def send(self, event: str, data: dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})


def _decode_message(raw: str) -> tuple[str, Any]:
    message = json.loads(raw)
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        raise ValueError("message must be an object with an 'event' name")
    return message["event"], message.get("data")


async def _sweep_loop(coordinator: TaskCoordinator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await coordinator.sweep()
        except Exception:  # noqa: BLE001
            logger.exception("Queue sweep failed")


def create_app(
    settings: Settings | None = None,
    upstream: Upstream | None = None,
    store: TaskStore | None = None,
    timer: Timer | None = None,
) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    if settings is None:
        settings = Settings.from_env()
        setup_logging(
            log_dir=settings.log_dir,
            log_level=settings.log_level,
            clear_on_launch=settings.clear_logs_on_launch,
        )

    os.makedirs(settings.data_dir, exist_ok=True)
    store = store or TaskStore(settings.db_path)
    owns_upstream = upstream is None
    if upstream is None:
        upstream = RunningHubClient(settings.upstream_url, timeout=settings.upstream_timeout)
    timer = timer or AsyncioTimer()

    notifier = Notifier()
    coordinator = TaskCoordinator(
        store,
        upstream,
        notifier,
        timer,
        max_retry_attempts=settings.max_retry_attempts,
        retry_initial_delay=settings.retry_initial_delay,
        retry_max_delay=settings.retry_max_delay,
        kick_delay=settings.kick_delay,
        webhook_base_url=settings.webhook_base_url,
    )
    reconciler = Reconciler(coordinator)
    handler = ChannelHandler(coordinator, reconciler, notifier)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if settings.recover_on_startup:
            recovered = await reconciler.recover_all()
            if recovered:
                logger.info("Startup recovery re-queued %d task(s)", recovered)

        sweeper: Optional[asyncio.Task] = None
        if settings.queue_sweep_interval > 0:
            sweeper = asyncio.create_task(_sweep_loop(coordinator, settings.queue_sweep_interval))

        logger.info("hubrelay %s ready (store=%s, upstream=%s)", __version__, settings.db_path, settings.upstream_url)
        yield

        # Shutdown
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        cancel_all = getattr(timer, "cancel_all", None)
        if cancel_all is not None:
            cancel_all()
        if owns_upstream:
            await upstream.aclose()
        logger.info("hubrelay stopped with %d task(s) still waiting", len(coordinator.queue))

    app = FastAPI(title="hubrelay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.notifier = notifier
    app.state.coordinator = coordinator
    app.state.reconciler = reconciler

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict:
        try:
            tasks_total: Optional[int] = store.count()
        except StorageError as exc:
            logger.warning("Task count unavailable: %s", exc)
            tasks_total = None
        return {
            **coordinator.status(),
            "connections": notifier.live_count,
            "tasks_total": tasks_total,
        }

    # ---- push channel ----

    @app.websocket("/ws")
    async def push_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        notifier.register(connection)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event, data = _decode_message(raw)
                except ValueError as exc:
                    logger.warning("Bad message from %s: %s", connection.connection_id, exc)
                    await notifier.emit(connection.connection_id, WORKFLOW_ERROR, {
                        "error": f"invalid message: {exc}", "code": "INVALID_REQUEST",
                    })
                    continue
                try:
                    await handler.dispatch(connection.connection_id, event, data)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Handling %s from %s failed", event, connection.connection_id)
                    await notifier.emit(connection.connection_id, WORKFLOW_ERROR, {"error": str(exc)})
        except WebSocketDisconnect:
            logger.info("Connection %s closed", connection.connection_id)
        finally:
            notifier.unregister(connection.connection_id)

    # ---- upstream webhook ----

    @app.post("/api/webhook/{client_id}")
    async def upstream_webhook(client_id: str, request: Request) -> dict:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook for %s with a non-JSON body", client_id)
            return {"success": True}
        if not isinstance(body, dict) or not body:
            logger.warning("Webhook for %s with an empty body", client_id)
            return {"success": True}

        task_id = body.get("taskId")
        event = body.get("event")
        if not task_id or not event:
            logger.warning("Webhook for %s missing taskId/event: %s", client_id, body)
            return {"success": True}

        event_data = body.get("eventData")
        if isinstance(event_data, str):
            try:
                event_data = json.loads(event_data)
            except ValueError:
                logger.warning("Webhook eventData for task %s is not JSON; forwarding as text", task_id)

        delivered = await notifier.publish(client_id, WEBHOOK_CALLBACK, {
            "taskId": str(task_id),
            "event": event,
            "data": event_data,
            "receivedAt": utc_now_iso(),
        })
        logger.info("Webhook %s for task %s delivered to %d connection(s)", event, task_id, delivered)
        return {"success": True}

    return app
