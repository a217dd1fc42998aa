"""CitrusLab application configuration.

Loads settings from two YAML files:
  * citruslab.settings.yaml: non-secret configuration
  * citruslab.secrets.yaml: secrets (never committed)

Both files are optional; every field has a default so the server starts
with an in-repo checkout and no configuration at all.
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

SETTINGS_FILE = Path("citruslab.settings.yaml")
SECRETS_FILE  = Path("citruslab.secrets.yaml")


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


class SendGridSecrets(BaseModel):
    api_key: Optional[str] = None


class Secrets(BaseModel):
    jwt:      JWTSecrets      = Field(default_factory=JWTSecrets)
    sendgrid: SendGridSecrets = Field(default_factory=SendGridSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    reload:          bool      = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    """DuckDB file holding collaborations and live chat messages.

    ``:memory:`` keeps everything in-process (used by the test suite).
    """
    path: str = "citruslab.duckdb"


class PresenceSettings(BaseModel):
    ttl_seconds: int = Field(default=300, gt=0)


class CollaborationSettings(BaseModel):
    frontend_url:      str = "http://localhost:3000"
    share_token_bytes: int = Field(default=24, ge=16, le=64)

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class AuthSettings(BaseModel):
    algorithm:            str  = "HS256"
    token_expire_minutes: int  = 60 * 24 * 7
    # POST /auth/token hands out tokens for any email; disable in production
    allow_token_issuance: bool = True


class MailSettings(BaseModel):
    provider:        Literal["console", "sendgrid"] = "console"
    from_email:      str   = "noreply@citruslab.dev"
    from_name:       str   = "CitrusLab"
    timeout_seconds: float = 10.0


class AppConfig(BaseModel):
    server:        ServerSettings        = Field(default_factory=ServerSettings)
    logging:       LoggingSettings       = Field(default_factory=LoggingSettings)
    database:      DatabaseSettings      = Field(default_factory=DatabaseSettings)
    presence:      PresenceSettings      = Field(default_factory=PresenceSettings)
    collaboration: CollaborationSettings = Field(default_factory=CollaborationSettings)
    auth:          AuthSettings          = Field(default_factory=AuthSettings)
    mail:          MailSettings          = Field(default_factory=MailSettings)
    secrets:       Secrets               = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(
    settings_path: Path = SETTINGS_FILE,
    secrets_path: Path = SECRETS_FILE,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, mail.provider=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.mail.provider,
    )
    if config.secrets.jwt.secret_key == JWTSecrets().secret_key:
        logger.warning("Using the default JWT secret; set jwt.secret_key in %s", secrets_path)
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
