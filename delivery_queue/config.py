# delivery_queue/config.py
"""
Runtime settings, loaded from environment variables (and a ``.env`` file when present).

Every value has a default except ``DATABASE_URL``, which the server needs but the
pure queue logic and the unit tests do not. Bad values fail at startup with a
``ValueError`` naming the variable.
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Attributes:
        database_url: Postgres conninfo. None disables the pool.
        pool_min / pool_max: psycopg_pool sizes.
        max_attempts: attempts for a transaction that hits a conflict, including the first.
        lock_timeout_ms / statement_timeout_ms: applied with SET LOCAL on every
            queue transaction so nothing waits indefinitely.
        queue_lock_key: advisory lock key shared by every queue mutation.
        event_workers: threads delivering status-change events to listeners.
    """
    database_url: Optional[str] = None
    pool_min: int = 1
    pool_max: int = 10
    max_attempts: int = 3
    lock_timeout_ms: int = 2000
    statement_timeout_ms: int = 5000
    queue_lock_key: int = 7341
    event_workers: int = 4
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self):
        if self.pool_min > self.pool_max:
            raise ValueError(
                f"APP_POOL_MIN ({self.pool_min}) must not exceed APP_POOL_MAX ({self.pool_max})"
            )
        if self.max_attempts < 1:
            raise ValueError(f"QUEUE_MAX_ATTEMPTS must be >= 1, got: {self.max_attempts}")

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            pool_min=_int_env("APP_POOL_MIN", 1),
            pool_max=_int_env("APP_POOL_MAX", 10, minimum=1),
            max_attempts=_int_env("QUEUE_MAX_ATTEMPTS", 3, minimum=1),
            lock_timeout_ms=_int_env("QUEUE_LOCK_TIMEOUT_MS", 2000, minimum=1),
            statement_timeout_ms=_int_env("QUEUE_STATEMENT_TIMEOUT_MS", 5000, minimum=1),
            queue_lock_key=_int_env("QUEUE_LOCK_KEY", 7341),
            event_workers=_int_env("EVENT_WORKERS", 4, minimum=1),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_bool_env("LOG_JSON", False),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
