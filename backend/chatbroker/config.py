"""Chatbroker application configuration.

Loads settings from a single YAML file:
  * chatbroker.settings.yaml: room, presence, server and logging settings

The path can be overridden with the CHATBROKER_SETTINGS environment variable
or by passing ``settings_path`` to :func:`load_config`.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatbroker.settings.yaml")
SETTINGS_ENV_VAR = "CHATBROKER_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def normalize_room_name(name: str) -> str:
    """Room names are keyed trimmed and lowercased."""
    return name.strip().lower()


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:               str       = "0.0.0.0"
    port:               int       = 5000
    allowed_origins:    List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    # Frames queued per connection before it is dropped as stalled
    max_pending_frames: int       = Field(default=256, ge=1)


class LoggingSettings(BaseModel):
    level: str = "info"


class RoomSettings(BaseModel):
    """Room directory and lifecycle sweep configuration."""
    default_rooms:          List[str] = Field(
        default_factory=lambda: ["general", "gaming", "movies", "music"]
    )
    default_room:           str       = "general"
    idle_expiry_hours:      float     = 24
    sweep_interval_seconds: float     = 3600
    seed_system_messages:   bool      = True

    @field_validator("default_rooms")
    @classmethod
    def _normalize_defaults(cls, value: List[str]) -> List[str]:
        rooms: List[str] = []
        for name in value:
            normalized = normalize_room_name(name)
            if normalized and normalized not in rooms:
                rooms.append(normalized)
        if not rooms:
            raise ValueError("at least one default room is required")
        return rooms

    @field_validator("default_room")
    @classmethod
    def _normalize_default_room(cls, value: str) -> str:
        return normalize_room_name(value)

    @model_validator(mode="after")
    def _default_room_is_permanent(self) -> "RoomSettings":
        if self.default_room not in self.default_rooms:
            raise ValueError(
                f"default_room {self.default_room!r} must be one of default_rooms"
            )
        return self

    @property
    def idle_expiry_seconds(self) -> float:
        return self.idle_expiry_hours * 3600


class PresenceSettings(BaseModel):
    avatar_count:       int = 9
    idle_after_seconds: int = 30


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    rooms:    RoomSettings     = Field(default_factory=RoomSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_data = _load_yaml(Path(settings_path))

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, default_rooms=%s, idle_expiry_hours=%s)",
        config.server.host,
        config.server.port,
        ",".join(config.rooms.default_rooms),
        config.rooms.idle_expiry_hours,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or with ``None`` reset) the cached process-wide config."""
    global _config
    _config = config
