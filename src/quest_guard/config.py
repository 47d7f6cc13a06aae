from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_path: Path
    quest_catalog_path: Path
    api_host: str
    api_port: int
    admin_panel_token: str | None
    log_level: str
    quest_api_url: str
    queue_store_path: Path
    queue_drain_interval_seconds: float
    request_timeout_seconds: float
    queue_max_retries: int
    queue_initial_delay_ms: int


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text().splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", maxsplit=1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _parse_int(value: str | None, default: int, min_value: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(min_value, parsed)


def _parse_float(value: str | None, default: float, min_value: float = 0.0) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    if parsed <= min_value:
        return default
    return parsed


def load_settings(env_file: Path = Path(".env")) -> Settings:
    _load_env_file(env_file)

    return Settings(
        database_path=Path(os.getenv("DATABASE_PATH", "./data/quests.db")),
        quest_catalog_path=Path(os.getenv("QUEST_CATALOG_PATH", "./quests.yaml")),
        api_host=os.getenv("API_HOST", "127.0.0.1"),
        api_port=_parse_int(os.getenv("API_PORT"), 8080, min_value=1),
        admin_panel_token=os.getenv("ADMIN_PANEL_TOKEN") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        quest_api_url=os.getenv("QUEST_API_URL", "http://127.0.0.1:8080").rstrip("/"),
        queue_store_path=Path(os.getenv("QUEUE_STORE_PATH", "./data/client_queue.db")),
        queue_drain_interval_seconds=_parse_float(os.getenv("QUEUE_DRAIN_INTERVAL_SECONDS"), 30.0),
        request_timeout_seconds=_parse_float(os.getenv("REQUEST_TIMEOUT_SECONDS"), 10.0),
        queue_max_retries=_parse_int(os.getenv("QUEUE_MAX_RETRIES"), 5, min_value=1),
        queue_initial_delay_ms=_parse_int(os.getenv("QUEUE_INITIAL_DELAY_MS"), 1000, min_value=1),
    )
