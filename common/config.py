from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env next to the repo root; real environment variables still win.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str

    redis_url: Optional[str]
    redis_stream: str
    redis_max_len: int

    mqtt_connect_timeout: float
    mqtt_disconnect_timeout: float
    mqtt_keepalive: int
    mqtt_queue_size: int
    mqtt_drop_oldest: bool

    reconcile_interval_seconds: float
    tombstone_ttl_seconds: float
    ingestion_queue_size: int

    api_key: Optional[str]
    log_level: str


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("INTEGRATIONS_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    database_url = os.getenv("DATABASE_URL", "sqlite:///./integrations.db")

    redis_url = os.getenv("REDIS_URL") or None
    redis_stream = os.getenv("INTEGRATIONS_REDIS_STREAM", "readings:mqtt")
    redis_max_len = int(os.getenv("INTEGRATIONS_REDIS_MAX_LEN", "10000"))

    return Settings(
        database_url=database_url,
        redis_url=redis_url,
        redis_stream=redis_stream,
        redis_max_len=redis_max_len,
        mqtt_connect_timeout=float(os.getenv("MQTT_CONNECT_TIMEOUT", "10")),
        mqtt_disconnect_timeout=float(os.getenv("MQTT_DISCONNECT_TIMEOUT", "5")),
        mqtt_keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
        mqtt_queue_size=int(os.getenv("MQTT_QUEUE_MAX_SIZE", "1000")),
        mqtt_drop_oldest=_env_bool("MQTT_DROP_OLDEST", "true"),
        # 0 = only reconcile once at startup
        reconcile_interval_seconds=float(os.getenv("INTEGRATIONS_RECONCILE_INTERVAL", "0")),
        tombstone_ttl_seconds=float(os.getenv("INTEGRATIONS_TOMBSTONE_TTL", "600")),
        ingestion_queue_size=int(os.getenv("INGESTION_QUEUE_MAX_SIZE", "10000")),
        api_key=os.getenv("INTEGRATIONS_API_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
