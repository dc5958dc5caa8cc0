import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(name: str, default: Optional[float], minimum: float = 0.0) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the API and worker processes."""

    database_url: str = "sqlite+aiosqlite:///./taskflow.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "tasks"

    worker_concurrency: int = 2
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_type: str = "exponential"
    backoff_delay: float = 2.0
    backoff_multiplier: float = 2.0
    backoff_max_delay: Optional[float] = None

    visibility_timeout: float = 30.0
    block_ms: int = 1000
    max_stalled: int = 1

    work_steps: int = 5
    work_step_delay: float = 2.0

    cors_origin: str = "http://localhost:4200"
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    log_level: str = "INFO"
    log_dir: Optional[str] = None


def load_settings() -> Settings:
    """Build Settings from the environment (and a .env file if present)."""
    load_dotenv()

    backoff_type = os.getenv("TASK_BACKOFF_TYPE", "exponential").strip().lower()
    if backoff_type not in ("exponential", "fixed"):
        raise ValueError(f"TASK_BACKOFF_TYPE must be 'exponential' or 'fixed', got {backoff_type!r}")

    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        redis_url=os.getenv("REDIS_URL", Settings.redis_url),
        queue_name=os.getenv("QUEUE_NAME", Settings.queue_name),
        worker_concurrency=_get_int("WORKER_CONCURRENCY", 2, minimum=1),
        max_attempts=_get_int("TASK_MAX_ATTEMPTS", 3, minimum=1),
        initial_delay=_get_float("TASK_INITIAL_DELAY", 1.0),
        backoff_type=backoff_type,
        backoff_delay=_get_float("TASK_BACKOFF_DELAY", 2.0),
        backoff_multiplier=_get_float("TASK_BACKOFF_MULTIPLIER", 2.0, minimum=1.0),
        backoff_max_delay=_get_float("TASK_BACKOFF_MAX_DELAY", None),
        visibility_timeout=_get_float("QUEUE_VISIBILITY_TIMEOUT", 30.0),
        block_ms=_get_int("QUEUE_BLOCK_MS", 1000),
        max_stalled=_get_int("QUEUE_MAX_STALLED", 1),
        work_steps=_get_int("WORK_STEPS", 5, minimum=1),
        work_step_delay=_get_float("WORK_STEP_DELAY", 2.0),
        cors_origin=os.getenv("CORS_ORIGIN", Settings.cors_origin),
        api_host=os.getenv("API_HOST", Settings.api_host),
        api_port=_get_int("API_PORT", 3000, minimum=1),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
        log_dir=os.getenv("LOG_DIR") or None,
    )
