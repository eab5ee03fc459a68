"""Warden — Service configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. System config: /etc/warden/config.yaml
    3. User config:   ~/.warden/config.yaml
    4. Explicit file passed to ``Settings.load()``
    5. Environment variables prefixed with WARDEN_

Nested blocks are addressed with a double underscore, e.g.
``WARDEN_SECRETS__MASTER_KEY`` or ``WARDEN_MONITOR__WINDOW_MINUTES``.

All settings are immutable after load.  Call ``Settings.load()`` once at
startup and inject the instance through FastAPI dependencies.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8400, ge=1024, le=65535)
    workers: int = Field(default=1, ge=1, le=16)
    reload: bool = False
    cors_origins: list[str] = Field(default_factory=list)
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="Proxy addresses whose X-Forwarded-For header uvicorn may trust.",
    )


class AuthConfig(BaseModel):
    jwt_secret: SecretStr | None = Field(
        default=None,
        description="HMAC key used to sign bearer tokens. Required to issue or verify tokens.",
    )
    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    access_ttl_minutes: Annotated[int, Field(ge=1, le=60 * 24 * 30)] = 60 * 24
    max_login_attempts: Annotated[int, Field(ge=1, le=100)] = 5
    lock_duration_minutes: Annotated[int, Field(ge=1, le=60 * 24 * 7)] = 120


class AuditConfig(BaseModel):
    db_path: Path = Path("~/.warden/audit.db")
    max_records: Annotated[int, Field(ge=100)] = Field(
        default=100_000,
        description="Oldest events are evicted once the trail grows past this size.",
    )
    retention_days: Annotated[int, Field(ge=1)] = 365
    write_timeout_seconds: Annotated[float, Field(gt=0, le=60)] = 5.0
    fallback_file: Path | None = Field(
        default=Path("~/.warden/audit-fallback.ndjson"),
        description="NDJSON file receiving events that could not be persisted.",
    )


class MonitorConfig(BaseModel):
    enabled: bool = True
    window_minutes: Annotated[int, Field(ge=1, le=60 * 24)] = 60
    thresholds: dict[str, int] = Field(
        default_factory=dict,
        description="Per event-type overrides of the built-in threshold table.",
    )
    default_threshold: Annotated[int, Field(ge=1)] = 5
    alert_roles: list[str] = Field(default_factory=lambda: ["ADMIN"])
    counting: Literal["audit", "memory"] = "audit"
    alert_cooldown_seconds: Annotated[float, Field(ge=0)] = Field(
        default=0.0,
        description="Suppress repeat alerts per (subject, type) for this long. 0 = disabled.",
    )
    alert_file: Path | None = Field(
        default=None,
        description="When set, alerts are also written to this NDJSON file.",
    )


class SecretsConfig(BaseModel):
    master_key: SecretStr | None = Field(
        default=None,
        description="Master key for secret encryption. Required before first encrypt/decrypt.",
    )
    kdf_iterations: Annotated[int, Field(ge=1_000)] = 100_000


class UsersConfig(BaseModel):
    db_path: Path = Path("~/.warden/users.db")


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WARDEN_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    users: UsersConfig = Field(default_factory=UsersConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("audit", "users", mode="before")
    @classmethod
    def expand_db_paths(cls, v: object) -> object:
        if isinstance(v, dict):
            for key in ("db_path", "fallback_file"):
                if key in v and isinstance(v[key], str):
                    v[key] = Path(v[key]).expanduser()
        return v

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from file + environment variables."""
        data: dict[str, object] = {}

        candidates = [
            Path("/etc/warden/config.yaml"),
            Path.home() / ".warden" / "config.yaml",
        ]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                import yaml

                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                    data.update(loaded)

        return cls(**data)


# Module-level singleton, replaced by ``Settings.load()`` at startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings) -> None:
    """Replace the module-level singleton. Used in tests."""
    global _settings
    _settings = settings
