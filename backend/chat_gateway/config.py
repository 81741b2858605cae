"""Chat gateway configuration.

Loads settings from a YAML file:
  * chat_gateway.settings.yaml: non-secret configuration

The file location can be changed with ``CHAT_GATEWAY_SETTINGS``. A few
values are also read from the environment so the gateway can be deployed
next to the main web application without a settings file:
  * APP_BASE_URL: base URL of the membership API
  * CHAT_SERVER_PORT: listening port
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat_gateway.settings.yaml")
SETTINGS_ENV_VAR = "CHAT_GATEWAY_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 4000
    log_level:       str  = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class MembershipSettings(BaseModel):
    """Where and how to ask which rooms a user belongs to."""
    base_url:        str   = "http://localhost:3000/api"
    rooms_path:      str   = "/users/{user_id}/rooms"
    timeout_seconds: float = 5.0
    recheck_on_send: bool  = False

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("rooms_path")
    @classmethod
    def _has_user_placeholder(cls, v: str) -> str:
        if "{user_id}" not in v:
            raise ValueError("rooms_path must contain a {user_id} placeholder")
        return v


class DirectorySettings(BaseModel):
    """Where to look up sender display names and avatars.

    ``base_url`` defaults to the membership API's base URL.
    """
    enabled:         bool          = True
    base_url:        Optional[str] = None
    user_path:       str           = "/users/{user_id}"
    timeout_seconds: float         = 2.0

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("user_path")
    @classmethod
    def _has_user_placeholder(cls, v: str) -> str:
        if "{user_id}" not in v:
            raise ValueError("user_path must contain a {user_id} placeholder")
        return v


class RetentionSettings(BaseModel):
    """Message retention window and the eviction sweep interval."""
    enabled:                bool  = True
    retention_seconds:      float = 2 * 24 * 60 * 60
    sweep_interval_seconds: float = 60 * 60

    @field_validator("retention_seconds", "sweep_interval_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("retention intervals must be positive")
        return v


class ChatSettings(BaseModel):
    default_page_size:           int  = 50
    max_page_size:               int  = 100
    max_message_length:          int  = 0     # 0 = no limit at this layer
    history_requires_membership: bool = False
    send_queue_size:             int  = 256

    @field_validator("default_page_size", "max_page_size", "send_queue_size")
    @classmethod
    def _positive_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("page and queue sizes must be at least 1")
        return v

    @field_validator("max_message_length")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_message_length cannot be negative")
        return v


class AppConfig(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    membership: MembershipSettings = Field(default_factory=MembershipSettings)
    directory:  DirectorySettings  = Field(default_factory=DirectorySettings)
    retention:  RetentionSettings  = Field(default_factory=RetentionSettings)
    chat:       ChatSettings       = Field(default_factory=ChatSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay APP_BASE_URL and CHAT_SERVER_PORT from the environment."""
    base_url = os.environ.get("APP_BASE_URL")
    if base_url:
        data.setdefault("membership", {})["base_url"] = base_url
        logger.info("Membership base_url taken from APP_BASE_URL")

    port = os.environ.get("CHAT_SERVER_PORT")
    if port:
        data.setdefault("server", {})["port"] = int(port)
        logger.info("Server port taken from CHAT_SERVER_PORT=%s", port)

    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML, apply env overrides and validate them."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))

    data = _apply_env_overrides(_load_yaml(Path(settings_path)))
    config = AppConfig(**data)
    logger.info(
        "Settings loaded (server=%s:%s, oracle=%s, retention=%ss, sweep=%ss)",
        config.server.host,
        config.server.port,
        config.membership.base_url,
        config.retention.retention_seconds,
        config.retention.sweep_interval_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Replace the process-wide configuration (used by tests and embedders)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
