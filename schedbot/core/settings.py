from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from schedbot.core.env import load_env


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_USER_DATA_DIR = Path.home() / ".schedbot" / "data"
DEFAULT_REMINDER_TIMINGS = ("3d", "1d", "8h")


@dataclass(frozen=True)
class Settings:
    environment: str  # development, production, staging, test
    data_dir: Path
    database_url: str
    sql_echo: bool
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    redis_url: str
    update_broker: str
    chat_api_base: str
    chat_bot_token: str
    chat_http_timeout: float
    log_level: str
    log_json: bool
    log_file: str
    reminder_sweep_interval: float
    reminder_batch_size: int
    reminder_lookback_seconds: int
    reminder_lookahead_seconds: int
    reminder_skip_stale: bool
    default_reminder_timings: Tuple[str, ...]
    update_debounce_seconds: float
    update_max_attempts: int
    update_retry_base_seconds: float
    update_retry_max_seconds: float
    update_min_interval_seconds: float
    update_window_seconds: float
    update_window_limit: int
    update_poll_interval: float
    update_claim_idle_seconds: float


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


load_env()


def _default_data_dir() -> Path:
    env_dir = os.getenv("DATA_DIR")
    if env_dir and env_dir.strip():
        return Path(env_dir).expanduser()
    return DEFAULT_USER_DATA_DIR


def _normalize_database_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    if environment not in {"development", "production", "staging", "test"}:
        environment = "development"

    data_dir = _default_data_dir()
    db_url_env = (os.getenv("DATABASE_URL") or "").strip()
    if db_url_env:
        database_url = _normalize_database_url(db_url_env)
    else:
        data_dir.mkdir(parents=True, exist_ok=True)
        database_url = f"sqlite+aiosqlite:///{data_dir / 'schedbot.db'}"

    redis_url = os.getenv("REDIS_URL", "").strip()
    update_broker = os.getenv("UPDATE_BROKER", "memory").strip().lower() or "memory"
    if update_broker not in {"memory", "redis"}:
        update_broker = "memory"
    if update_broker == "redis" and not redis_url:
        logging.warning("UPDATE_BROKER=redis but REDIS_URL is empty; using in-memory broker")
        update_broker = "memory"

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_json = _get_bool("LOG_JSON", default=environment == "production")
    log_file = os.getenv("LOG_FILE", "").strip()

    update_retry_base = _get_float("UPDATE_RETRY_BASE_SECONDS", 1.0, minimum=0.0)
    update_retry_max = _get_float("UPDATE_RETRY_MAX_SECONDS", 30.0, minimum=0.0)
    if update_retry_max < update_retry_base:
        update_retry_max = update_retry_base

    return Settings(
        environment=environment,
        data_dir=data_dir,
        database_url=database_url,
        sql_echo=_get_bool("SQL_ECHO", default=False),
        db_pool_size=_get_int("DB_POOL_SIZE", 10, minimum=1),
        db_max_overflow=_get_int("DB_MAX_OVERFLOW", 5, minimum=0),
        db_pool_timeout=_get_int("DB_POOL_TIMEOUT", 30, minimum=1),
        db_pool_recycle=_get_int("DB_POOL_RECYCLE", 3600, minimum=60),
        redis_url=redis_url,
        update_broker=update_broker,
        chat_api_base=os.getenv("CHAT_API_BASE", "").strip().rstrip("/"),
        chat_bot_token=os.getenv("CHAT_BOT_TOKEN", "").strip(),
        chat_http_timeout=_get_float("CHAT_HTTP_TIMEOUT", 10.0, minimum=0.5),
        log_level=log_level,
        log_json=log_json,
        log_file=log_file,
        reminder_sweep_interval=_get_float("REMINDER_SWEEP_INTERVAL", 60.0, minimum=1.0),
        reminder_batch_size=_get_int("REMINDER_BATCH_SIZE", 20, minimum=1),
        reminder_lookback_seconds=_get_int("REMINDER_LOOKBACK_SECONDS", 7 * 86400, minimum=0),
        reminder_lookahead_seconds=_get_int("REMINDER_LOOKAHEAD_SECONDS", 30 * 86400, minimum=60),
        reminder_skip_stale=_get_bool("REMINDER_SKIP_STALE", default=True),
        default_reminder_timings=_get_list("DEFAULT_REMINDER_TIMINGS", DEFAULT_REMINDER_TIMINGS),
        update_debounce_seconds=_get_float("UPDATE_DEBOUNCE_SECONDS", 2.0, minimum=0.0),
        update_max_attempts=_get_int("UPDATE_MAX_ATTEMPTS", 3, minimum=1),
        update_retry_base_seconds=update_retry_base,
        update_retry_max_seconds=update_retry_max,
        update_min_interval_seconds=_get_float("UPDATE_MIN_INTERVAL_SECONDS", 1.0, minimum=0.0),
        update_window_seconds=_get_float("UPDATE_WINDOW_SECONDS", 10.0, minimum=0.0),
        update_window_limit=_get_int("UPDATE_WINDOW_LIMIT", 3, minimum=1),
        update_poll_interval=_get_float("UPDATE_POLL_INTERVAL", 1.0, minimum=0.1),
        update_claim_idle_seconds=_get_float("UPDATE_CLAIM_IDLE_SECONDS", 60.0, minimum=1.0),
    )


__all__ = ["Settings", "get_settings", "DEFAULT_REMINDER_TIMINGS"]
