"""chatrelay application configuration.

Loads settings from two YAML files:
  * chatrelay.settings.yaml: non-secret configuration
  * chatrelay.secrets.yaml: secrets (never committed)

Either path can be overridden with the CHATRELAY_SETTINGS / CHATRELAY_SECRETS
environment variables. Relative file paths inside the settings (database,
upload directory) resolve against the directory of the settings file.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatrelay.settings.yaml")
SECRETS_FILE  = Path("chatrelay.secrets.yaml")

_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve(base_dir: Path, value: str) -> str:
    if value == _MEMORY_DB or Path(value).is_absolute():
        return value
    return str(base_dir / value)


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
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StoreSettings(BaseModel):
    """Document store (DuckDB) settings."""
    db_path:         str   = "chatrelay.duckdb"
    timeout_seconds: float = 5.0

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class ConversationSettings(BaseModel):
    min_group_others: int = 1
    max_group_size:   int = 256
    max_body_length:  int = 4000
    page_size:        int = 50
    max_page_size:    int = 100


class RealtimeSettings(BaseModel):
    send_timeout_seconds: float = 5.0

    @field_validator("send_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("send_timeout_seconds must be positive")
        return v


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60


class MediaSettings(BaseModel):
    upload_dir:      str = "uploads"
    public_base_url: str = "/media"
    max_size_bytes:  int = 20 * 1024 * 1024


class AppSettings(BaseModel):
    server:        ServerSettings       = Field(default_factory=ServerSettings)
    logging:       LoggingSettings      = Field(default_factory=LoggingSettings)
    store:         StoreSettings        = Field(default_factory=StoreSettings)
    conversations: ConversationSettings = Field(default_factory=ConversationSettings)
    realtime:      RealtimeSettings     = Field(default_factory=RealtimeSettings)
    auth:          AuthSettings         = Field(default_factory=AuthSettings)
    media:         MediaSettings        = Field(default_factory=MediaSettings)
    secrets:       Secrets              = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(
        settings_path or os.environ.get("CHATRELAY_SETTINGS") or SETTINGS_FILE
    )
    secrets_path = Path(
        secrets_path or os.environ.get("CHATRELAY_SECRETS") or SECRETS_FILE
    )

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)

    base_dir = settings_path.resolve().parent
    app_settings.store.db_path = _resolve(base_dir, app_settings.store.db_path)
    app_settings.media.upload_dir = _resolve(base_dir, app_settings.media.upload_dir)

    if app_settings.secrets.jwt.secret_key == JWTSecrets().secret_key:
        logger.warning("Using the default JWT secret; set jwt.secret_key in %s", secrets_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, timeout=%.1fs)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.db_path,
        app_settings.store.timeout_seconds,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_config()
