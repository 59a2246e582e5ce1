import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = _env_int("PORT", 8000)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: list[str] = field(default_factory=lambda: _env_list("CORS_ORIGINS", "*"))

    # STUN/TURN
    STUN_SERVER: str | None = os.getenv("STUN_SERVER")
    TURN_URL: str | None = os.getenv("TURN_URL")
    TURN_USERNAME: str | None = os.getenv("TURN_USERNAME")
    TURN_PASSWORD: str | None = os.getenv("TURN_PASSWORD")

    # Rooms
    MAX_ROOMS: int = _env_int("MAX_ROOMS", 1000)
    MAX_ROOM_CAPACITY: int = _env_int("MAX_ROOM_CAPACITY", 50)
    DEFAULT_ROOM_CAPACITY: int = _env_int("DEFAULT_ROOM_CAPACITY", 10)
    MAX_OBJECTS_PER_ROOM: int = _env_int("MAX_OBJECTS_PER_ROOM", 200)
    MAX_ROOM_NAME_LENGTH: int = _env_int("MAX_ROOM_NAME_LENGTH", 50)
    ROOM_INACTIVITY_TIMEOUT: float = _env_float("ROOM_INACTIVITY_TIMEOUT", 30 * 60)
    PERSISTENT_ROOM_TIMEOUT: float = _env_float("PERSISTENT_ROOM_TIMEOUT", 24 * 60 * 60)
    ROOM_SWEEP_INTERVAL: float = _env_float("ROOM_SWEEP_INTERVAL", 60)
    RECENCY_WINDOW_DAYS: float = _env_float("RECENCY_WINDOW_DAYS", 10)
    AUTO_CREATE_ROOMS: bool = _env_bool("AUTO_CREATE_ROOMS", False)

    # Peer connections
    MAX_CONNECTIONS_PER_PARTICIPANT: int = _env_int("MAX_CONNECTIONS_PER_PARTICIPANT", 10)
    MAX_DATA_CHANNELS: int = _env_int("MAX_DATA_CHANNELS", 8)
    FAILED_CLEANUP_DELAY: float = _env_float("FAILED_CLEANUP_DELAY", 5)
    DISCONNECTED_CLEANUP_DELAY: float = _env_float("DISCONNECTED_CLEANUP_DELAY", 30)
    CLOSED_CLEANUP_DELAY: float = _env_float("CLOSED_CLEANUP_DELAY", 1)
    CONNECTING_TIMEOUT: float = _env_float("CONNECTING_TIMEOUT", 60)
    STALE_CONNECTION_TIMEOUT: float = _env_float("STALE_CONNECTION_TIMEOUT", 5 * 60)
    CONNECTION_SWEEP_INTERVAL: float = _env_float("CONNECTION_SWEEP_INTERVAL", 60)

    # Signaling queue
    SIGNALING_QUEUE_LIMIT: int = _env_int("SIGNALING_QUEUE_LIMIT", 100)
    SIGNALING_MESSAGE_MAX_AGE: float = _env_float("SIGNALING_MESSAGE_MAX_AGE", 10 * 60)
    QUEUE_PURGE_INTERVAL: float = _env_float("QUEUE_PURGE_INTERVAL", 5 * 60)

    # Background maintenance driver
    SCHEDULER_TICK: float = _env_float("SCHEDULER_TICK", 0.5)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

# Convenient module-level alias
settings = get_settings()
