import logging
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .errors import ConfigError

# Load .env from current directory so AGENT_PRESET and friends are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    agent_preset: str
    config_path: Optional[str]
    default_flow: Optional[str]
    capability_timeout_seconds: float = 5.0
    strict_capabilities: bool = False
    memory_max_messages: int = 10
    log_level: str = "INFO"

    service_name: str = "agentflow"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` re-reads the environment on
    every call.
    """

    return Settings(
        agent_preset="assistant",
        config_path=None,
        default_flow=None,
    )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if not raw:
        return default
    lowered = raw.strip().lower()
    if lowered in {"true", "1", "yes"}:
        return True
    if lowered in {"false", "0", "no"}:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime, so we must read directly from the
    environment on each call instead of caching.
    """

    base = _base_settings()
    return Settings(
        agent_preset=os.getenv("AGENT_PRESET") or base.agent_preset,
        config_path=os.getenv("AGENTFLOW_CONFIG") or None,
        default_flow=os.getenv("DEFAULT_FLOW") or None,
        capability_timeout_seconds=_env_float("CAPABILITY_TIMEOUT", base.capability_timeout_seconds),
        strict_capabilities=_env_bool("STRICT_CAPABILITIES", base.strict_capabilities),
        memory_max_messages=_env_int("MEMORY_MAX_MESSAGES", base.memory_max_messages),
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Basic logging setup for processes that embed the engine."""
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
