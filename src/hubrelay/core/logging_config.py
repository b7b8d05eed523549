"""Centralized logging configuration for hubrelay.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory. Also provides dedicated
JSONL loggers for upstream API calls and task status transitions.

Log directory structure::

    ~/.hubrelay/.logs/
    ├── hubrelay.log           # All Python logger output (rotating)
    ├── upstream-calls.log     # Every RunningHub request/response (JSONL)
    └── task-events.log        # One line per task status transition (JSONL)
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

upstream_call_logger = logging.getLogger("hubrelay._upstream_calls")
task_event_logger = logging.getLogger("hubrelay._task_events")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".hubrelay" / ".logs")
    return os.getenv("HUBRELAY_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files (and rotated siblings) from the log directory.

    Called **before** any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.log.*"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    Safe to call more than once: existing root handlers are replaced.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "hubrelay.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(upstream_call_logger, os.path.join(log_dir, "upstream-calls.log"))
    _setup_jsonl_logger(task_event_logger, os.path.join(log_dir, "task-events.log"))

    logging.getLogger("hubrelay").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def _redact(payload: dict[str, Any]) -> dict[str, Any]:
    redacted = dict(payload)
    key = redacted.get("apiKey")
    if isinstance(key, str) and key:
        redacted["apiKey"] = key[:4] + "…" if len(key) > 8 else "…"
    return redacted


def log_upstream_call(
    endpoint: str,
    payload: dict[str, Any],
    code: int | None = None,
    msg: str | None = None,
    error: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Log a RunningHub API call to the dedicated upstream-calls log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "endpoint": endpoint,
        "request": _redact(payload),
    }
    if code is not None:
        record["code"] = code
    if msg:
        record["msg"] = msg[:500]
    if error:
        record["error"] = error[:2000]
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    try:
        upstream_call_logger.info(json.dumps(record, default=str, ensure_ascii=False))
    except Exception:  # noqa: BLE001
        pass


def log_task_transition(
    unique_id: str,
    client_id: str,
    status: str,
    task_id: str | None = None,
    detail: str = "",
) -> None:
    """Log a task status transition to the task-events log."""
    record = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "unique_id": unique_id,
        "client_id": client_id,
        "status": status,
        "task_id": task_id,
    }
    if detail:
        record["detail"] = detail[:1000]
    try:
        task_event_logger.info(json.dumps(record, default=str, ensure_ascii=False))
    except Exception:  # noqa: BLE001
        pass
