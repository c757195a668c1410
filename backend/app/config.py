"""Relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml: non-secret configuration
  * relay.secrets.yaml: secrets (never committed)

Relative storage paths are resolved against the directory holding the
settings file, so a deployment can keep its database and uploads next to
its configuration.
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

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")

# Overrides secrets.jwt.secret_key when set
JWT_SECRET_ENV = "JWT_SECRET_KEY"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class HeartbeatSettings(BaseModel):
    """Liveness timing for every live connection."""
    ping_interval_seconds: float = 10.0
    pong_timeout_seconds:  float = 5.0

    @field_validator("ping_interval_seconds", "pong_timeout_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("heartbeat timings must be positive")
        return value

    @model_validator(mode="after")
    def _timeout_within_interval(self) -> "HeartbeatSettings":
        if self.pong_timeout_seconds >= self.ping_interval_seconds:
            raise ValueError("pong_timeout_seconds must be shorter than ping_interval_seconds")
        return self


class StorageSettings(BaseModel):
    database_path:        str = "messages.duckdb"
    upload_dir:           str = "uploads"
    max_attachment_bytes: int = 20 * 1024 * 1024


class AuthSettings(BaseModel):
    cookie_name: str = "token"


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_storage_paths(config: AppConfig, base_dir: Path) -> None:
    """Anchor relative storage paths at *base_dir* (in place)."""
    storage = config.storage
    if storage.database_path != ":memory:" and not Path(storage.database_path).is_absolute():
        storage.database_path = str(base_dir / storage.database_path)
    if not Path(storage.upload_dir).is_absolute():
        storage.upload_dir = str(base_dir / storage.upload_dir)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        config.secrets.jwt.secret_key = env_secret
        logger.info("JWT secret taken from %s", JWT_SECRET_ENV)

    _resolve_storage_paths(config, settings_path.resolve().parent)

    logger.info(
        "Settings loaded (server=%s:%s, heartbeat=%ss/%ss, database=%s)",
        config.server.host,
        config.server.port,
        config.heartbeat.ping_interval_seconds,
        config.heartbeat.pong_timeout_seconds,
        config.storage.database_path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
