from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path

from apl_daily.errors import ConfigError

DEFAULT_PATTERNS_PATH = Path(__file__).parent / "data" / "patterns.json"
DEFAULT_SELECTION_SEED = 39241012
DATA_BACKENDS = {"memory", "redis"}


def _env_str(name: str, default: str) -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = _env_str(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{name} must be a positive finite number, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    data_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "apl-daily"
    app_url: str = "http://localhost:3000"
    patterns_path: Path = DEFAULT_PATTERNS_PATH
    selection_seed: int = DEFAULT_SELECTION_SEED
    notification_timeout_seconds: float = 10.0
    notification_concurrency: int = 16
    neynar_api_key: str = ""
    neynar_hub_url: str = "https://hub-api.neynar.com"
    app_env: str = "production"
    run_counter_ttl_seconds: int = 24 * 60 * 60

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        data_backend = _env_str("DATA_BACKEND", "memory").lower()
        if data_backend not in DATA_BACKENDS:
            raise ConfigError(f"DATA_BACKEND must be one of {sorted(DATA_BACKENDS)}, got {data_backend!r}")
        return cls(
            data_backend=data_backend,
            redis_url=_env_str("REDIS_URL", cls.redis_url),
            key_prefix=_env_str("KEY_PREFIX", cls.key_prefix),
            app_url=_env_str("APP_URL", cls.app_url).rstrip("/"),
            patterns_path=Path(_env_str("PATTERNS_PATH", str(DEFAULT_PATTERNS_PATH))),
            selection_seed=_env_int("SELECTION_SEED", DEFAULT_SELECTION_SEED),
            notification_timeout_seconds=_env_float("NOTIFICATION_TIMEOUT_SECONDS", cls.notification_timeout_seconds),
            notification_concurrency=_env_int("NOTIFICATION_CONCURRENCY", cls.notification_concurrency, minimum=1),
            neynar_api_key=_env_str("NEYNAR_API_KEY", ""),
            neynar_hub_url=_env_str("NEYNAR_HUB_URL", cls.neynar_hub_url).rstrip("/"),
            app_env=_env_str("APP_ENV", cls.app_env).lower(),
            run_counter_ttl_seconds=_env_int("RUN_COUNTER_TTL_SECONDS", cls.run_counter_ttl_seconds, minimum=1),
        )
