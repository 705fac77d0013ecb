import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so RATE_LIMIT_* overrides are picked up automatically.
load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    enable_rate_limit: bool = True
    tiers_file: Optional[str] = None
    cleanup_interval_s: float = 60.0
    key_header: str = "X-Client-Id"
    cors_origins: str = "*"

    service_name: str = "quota-gate"
    host: str = "0.0.0.0"
    http_port: int = 4290


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only the defaults are cached; `get_settings` re-reads the environment on
    every call so tests can flip variables with monkeypatch.
    """

    return Settings()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.
    """

    base = _base_settings()
    port_raw = os.getenv("PORT") or ""

    return Settings(
        enable_rate_limit=_env_bool("ENABLE_RATE_LIMIT", base.enable_rate_limit),
        tiers_file=os.getenv("RATE_LIMIT_TIERS_FILE") or base.tiers_file,
        cleanup_interval_s=_env_float("RATE_LIMIT_CLEANUP_INTERVAL_S", base.cleanup_interval_s),
        key_header=os.getenv("RATE_LIMIT_KEY_HEADER") or base.key_header,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        service_name=os.getenv("SERVICE_NAME") or base.service_name,
        host=os.getenv("HOST") or base.host,
        http_port=int(port_raw) if port_raw.strip() else base.http_port,
    )
