"""Roomwire application configuration.

Loads settings from two YAML files:
  * roomwire.settings.yaml: non-secret configuration
  * roomwire.secrets.yaml: secrets (never committed)

Relative storage paths resolve against the directory that holds the settings
file, or against the project root when the settings file lives in ./config.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomwire.settings.yaml")
SECRETS_FILE  = Path("roomwire.secrets.yaml")

IN_MEMORY = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _base_dir(settings_path: Path) -> Path:
    parent = settings_path.resolve().parent
    if parent.name == "config":
        return parent.parent
    return parent


def _resolve(path: str, base: Path) -> str:
    if path == IN_MEMORY or Path(path).is_absolute():
        return path
    return str(base / path)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production-use-a-long-random-value"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    """Which identity verifier admits WebSocket handshakes."""
    verifier:          Literal["jwt", "http"] = "jwt"
    identity_url:      str   = "http://localhost:5000/api/users/me"
    timeout_seconds:   float = 5.0
    token_query_param: str   = "token"


class ChatSettings(BaseModel):
    """Presence and broadcast engine tuning."""
    outbound_queue_size:    int   = 256
    send_timeout_seconds:   float = 10.0
    typing_timeout_seconds: float = 5.0
    message_cache_size:     int   = 100
    lock_shards:            int   = 64
    strict_invariants:      bool  = False

    @field_validator("outbound_queue_size", "message_cache_size", "lock_shards")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class HistorySettings(BaseModel):
    db_path:                str = "chat_messages.duckdb"
    default_page_size:      int = 50
    max_page_size:          int = 100
    retention_days:         int = 30
    purge_interval_minutes: int = 60


class FileSettings(BaseModel):
    upload_dir:       str = "uploads"
    db_path:          str = "file_metadata.duckdb"
    public_base_url:  str = "http://localhost:8000"
    max_file_size_mb: int = 20

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    files:   FileSettings    = Field(default_factory=FileSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    config = AppSettings(**settings_data)

    base = _base_dir(settings_path)
    config.history.db_path = _resolve(config.history.db_path, base)
    config.files.db_path = _resolve(config.files.db_path, base)
    config.files.upload_dir = _resolve(config.files.upload_dir, base)

    logger.info(
        "Settings loaded (server=%s:%s, verifier=%s, history=%s)",
        config.server.host,
        config.server.port,
        config.auth.verifier,
        config.history.db_path,
    )
    return config


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace (or with None, forget) the process-wide settings."""
    global _config
    _config = config
