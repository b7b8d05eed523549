from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Optional

import httpx

from hubrelay.core.logging_config import log_upstream_call

logger = logging.getLogger("hubrelay.runninghub")

DEFAULT_BASE_URL = "https://www.runninghub.cn"
CREATE_PATH = "/task/openapi/create"
CANCEL_PATH = "/task/openapi/cancel"

SUCCESS_CODES = (0, 200)
CAPACITY_CODE = 421
CAPACITY_MSG = "TASK_QUEUE_MAXED"


class RunningHubError(RuntimeError):
    """Transport, timeout or protocol failure talking to RunningHub."""


@dataclass
class UpstreamResponse:
    code: int
    msg: str = ""
    data: Any = None

    @property
    def is_success(self) -> bool:
        return self.code in SUCCESS_CODES

    @property
    def is_capacity_rejection(self) -> bool:
        return self.code == CAPACITY_CODE and self.msg == CAPACITY_MSG

    @property
    def task_id(self) -> Optional[str]:
        if isinstance(self.data, dict) and self.data.get("taskId") is not None:
            return str(self.data["taskId"])
        return None

    @property
    def task_status(self) -> Optional[str]:
        if isinstance(self.data, dict):
            return self.data.get("taskStatus")
        return None

    @classmethod
    def from_json(cls, body: Any) -> "UpstreamResponse":
        if not isinstance(body, dict) or "code" not in body:
            raise RunningHubError(f"unexpected response body: {str(body)[:200]}")
        try:
            code = int(body["code"])
        except (TypeError, ValueError) as exc:
            raise RunningHubError(f"non-numeric response code: {body['code']!r}") from exc
        return cls(code=code, msg=str(body.get("msg") or ""), data=body.get("data"))


class RunningHubClient:
    """Async client for the RunningHub task API.

    Every request is bounded by *timeout*; a timeout surfaces as
    ``RunningHubError`` like any other transport failure.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> UpstreamResponse:
        started = time.monotonic()
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            self._log(path, payload, started, error=f"timeout: {exc}")
            raise RunningHubError(f"RunningHub request timed out: {path}") from exc
        except httpx.HTTPError as exc:
            self._log(path, payload, started, error=str(exc))
            raise RunningHubError(f"RunningHub request failed: {exc}") from exc

        if resp.status_code >= 400:
            self._log(path, payload, started, error=f"HTTP {resp.status_code}: {resp.text[:500]}")
            raise RunningHubError(f"RunningHub returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            self._log(path, payload, started, error=f"invalid JSON: {resp.text[:500]}")
            raise RunningHubError("RunningHub returned a non-JSON body") from exc

        try:
            result = UpstreamResponse.from_json(body)
        except RunningHubError as exc:
            self._log(path, payload, started, error=str(exc))
            raise
        self._log(path, payload, started, code=result.code, msg=result.msg)
        return result

    @staticmethod
    def _log(
        path: str,
        payload: dict[str, Any],
        started: float,
        code: int | None = None,
        msg: str | None = None,
        error: str | None = None,
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        if error:
            logger.warning("RunningHub %s failed after %.0fms: %s", path, duration_ms, error)
        else:
            logger.debug("RunningHub %s -> code=%s msg=%s (%.0fms)", path, code, msg, duration_ms)
        log_upstream_call(path, payload, code=code, msg=msg, error=error, duration_ms=duration_ms)

    async def create(
        self,
        api_key: str,
        workflow_id: str,
        node_info_list: list[dict[str, Any]] | None = None,
        webhook_url: str | None = None,
    ) -> UpstreamResponse:
        payload: dict[str, Any] = {"apiKey": api_key, "workflowId": workflow_id}
        if node_info_list:
            payload["nodeInfoList"] = node_info_list
        if webhook_url:
            payload["webhookUrl"] = webhook_url
        return await self._post(CREATE_PATH, payload)

    async def cancel(self, api_key: str, task_id: str) -> UpstreamResponse:
        return await self._post(CANCEL_PATH, {"apiKey": api_key, "taskId": task_id})
