from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    upstream_url: str
    upstream_timeout: float
    max_retry_attempts: int
    retry_initial_delay: float
    retry_max_delay: float
    kick_delay: float
    queue_sweep_interval: float
    webhook_base_url: str | None
    recover_on_startup: bool
    clear_logs_on_launch: bool

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, "tasks.sqlite3")

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".hubrelay")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        webhook_base = os.getenv("HUBRELAY_WEBHOOK_BASE_URL", "").strip().rstrip("/")
        return Settings(
            log_level=os.getenv("HUBRELAY_LOG_LEVEL", "info"),
            log_dir=os.getenv("HUBRELAY_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("HUBRELAY_DATA_DIR") or default_data_dir,
            host=os.getenv("HUBRELAY_HOST", "127.0.0.1"),
            port=int(os.getenv("HUBRELAY_PORT", "5173")),
            upstream_url=os.getenv("HUBRELAY_UPSTREAM_URL", "https://www.runninghub.cn").rstrip("/"),
            upstream_timeout=float(os.getenv("HUBRELAY_UPSTREAM_TIMEOUT", "10")),
            max_retry_attempts=int(os.getenv("HUBRELAY_MAX_RETRY_ATTEMPTS", "5")),
            retry_initial_delay=float(os.getenv("HUBRELAY_RETRY_INITIAL_DELAY", "1.0")),
            retry_max_delay=float(os.getenv("HUBRELAY_RETRY_MAX_DELAY", "30.0")),
            kick_delay=float(os.getenv("HUBRELAY_KICK_DELAY", "1.0")),
            queue_sweep_interval=float(os.getenv("HUBRELAY_QUEUE_SWEEP_INTERVAL", "30")),
            webhook_base_url=webhook_base or None,
            recover_on_startup=_flag("HUBRELAY_RECOVER_ON_STARTUP", "true"),
            clear_logs_on_launch=_flag("HUBRELAY_CLEAR_LOGS_ON_LAUNCH", "false"),
        )
