from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8888


@dataclass(frozen=True)
class ApiConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")


@dataclass
class AppConfig:
    log_dir: Optional[str]
    log_level: str
    api: ApiConfig = field(default_factory=ApiConfig)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_config() -> AppConfig:
    load_dotenv(os.getenv("ENV_FILE", ".env"), override=False)

    host = os.getenv("MEDIAPLAYER_HOST", DEFAULT_HOST)
    port = _int_env("MEDIAPLAYER_PORT", DEFAULT_PORT)
    # Empty means console only
    log_dir = os.getenv("MEDIAPLAYER_LOG_DIR") or None
    log_level = os.getenv("MEDIAPLAYER_LOG_LEVEL", "INFO").upper()

    return AppConfig(
        log_dir=log_dir,
        log_level=log_level,
        api=ApiConfig(host=host, port=port),
    )
