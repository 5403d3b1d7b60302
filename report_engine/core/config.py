"""Environment-driven settings for the report engine."""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Runtime settings read once from the environment."""

    database_url: str
    data_warehouse_url: str
    cache_enabled: bool
    cache_backend: str
    default_cache_ttl: int
    execution_timeout: Optional[float]
    log_level: str
    log_dir: str


@lru_cache()
def get_settings() -> Settings:
    """Build settings from the current environment (cached for the process lifetime)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./report_engine_config.db"),
        data_warehouse_url=os.getenv("DATA_WAREHOUSE_URL", "sqlite:///./report_engine_datawarehouse.db"),
        cache_enabled=_env_bool("REPORT_CACHE_ENABLED", True),
        cache_backend=os.getenv("REPORT_CACHE_BACKEND", "database").lower(),
        default_cache_ttl=int(os.getenv("REPORT_DEFAULT_CACHE_TTL", "3600")),
        execution_timeout=_env_float("REPORT_EXECUTION_TIMEOUT"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=os.getenv("LOG_DIR", "logs"),
    )
