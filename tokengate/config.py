from __future__ import annotations

import os
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError
from .options import ThrottleOptions, parse_options
from .store import BucketStore, MemoryStore, SQLStore

load_dotenv()


class Settings(BaseModel):
    THROTTLE_RATE: Optional[str] = Field(default="10/s", description="e.g 3/s, 5/2min, 5/s:fixed")
    THROTTLE_PERIOD: Optional[str] = Field(default=None, description="fixed window, e.g 100ms, 2h")
    THROTTLE_BURST: Optional[float] = Field(default=None)
    THROTTLE_COST: float = Field(default=1.0, ge=0)
    THROTTLE_AUTO_DRAIN: bool = Field(default=True)
    TRUST_PROXY_HEADERS: bool = Field(default=False)
    STORE_BACKEND: Literal["memory", "sql"] = Field(default="memory")
    STORE_SIZE: int = Field(default=10000, ge=0)
    STORE_DB_PATH: str = Field(default="tokengate.db")
    STORE_MAX_IDLE_SECONDS: int = Field(default=86400, ge=1)
    STORE_PURGE_INTERVAL_SECONDS: float = Field(default=300, gt=0)
    LOG_LEVEL: str = Field(default="INFO")
    CORS_ALLOW_ORIGINS: str = Field(default="*")


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            values[name] = field.get_default(call_default_factory=True)
        elif env_value == "" and not field.is_required() and field.default is None:
            values[name] = None
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        errors = exc.errors()
        name = str(errors[0]["loc"][0]) if errors and errors[0].get("loc") else "settings"
        raise ConfigurationError(name, errors[0]["msg"] if errors else str(exc)) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings


def build_store(cfg: Settings) -> BucketStore:
    if cfg.STORE_BACKEND == "sql":
        return SQLStore(cfg.STORE_DB_PATH)
    return MemoryStore(cfg.STORE_SIZE)


def options_from_settings(cfg: Settings | None = None, **overrides: Any) -> ThrottleOptions:
    """Build validated throttle options; a configured period wins over the rate."""

    cfg = cfg or settings
    opts: dict[str, Any] = {
        "burst": cfg.THROTTLE_BURST,
        "cost": cfg.THROTTLE_COST,
        "auto_drain": cfg.THROTTLE_AUTO_DRAIN,
        "trust_proxy": cfg.TRUST_PROXY_HEADERS,
    }
    if cfg.THROTTLE_PERIOD:
        opts["period"] = cfg.THROTTLE_PERIOD
    else:
        opts["rate"] = cfg.THROTTLE_RATE
    if "store" not in overrides:
        opts["store"] = build_store(cfg)
    opts.update(overrides)
    return parse_options(opts)
