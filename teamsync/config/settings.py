from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from teamsync.constants import (
    DB_SCHEMA,
    MAX_RECONNECTION_ATTEMPTS,
    MAX_RETRIES,
    TEAM_CHANGES_CHANNEL,
)

# Load .env once at module import; all BaseSettings subclasses will see the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """Remote PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "teamsync"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")
    lock_timeout_ms: int = Field(5000, gt=0)

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')"
            raise ValueError(msg)
        return v


class LocalStoreSettings(BaseSettings):
    """Client-local durable store (SQLite). Env vars prefixed with LOCAL_STORE_."""

    model_config = SettingsConfigDict(env_prefix="LOCAL_STORE_")

    path: Path = Path("workspace/teamsync_local.db")
    busy_timeout_s: float = 30.0


class QueueSettings(BaseSettings):
    """Completion queue retry limit. Env vars prefixed with QUEUE_."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

    max_retries: int = Field(MAX_RETRIES, gt=0)


class SubscriptionSettings(BaseSettings):
    """Live-read reconnection policy. Env vars prefixed with SUBSCRIPTION_."""

    model_config = SettingsConfigDict(env_prefix="SUBSCRIPTION_")

    max_reconnection_attempts: int = Field(MAX_RECONNECTION_ATTEMPTS, gt=0)
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    stale_after_s: float = 120.0
    notify_channel: str = TEAM_CHANGES_CHANNEL

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.base_delay_s < 0:
            raise ValueError(f"base_delay_s must be >= 0, got {self.base_delay_s}")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError(
                f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})"
            )
        if self.stale_after_s <= 0:
            raise ValueError(f"stale_after_s must be > 0, got {self.stale_after_s}")
        return self

    @field_validator("notify_channel")
    @classmethod
    def _validate_channel(cls, v: str) -> str:
        if not v.isidentifier():
            raise ValueError(
                f"SUBSCRIPTION_NOTIFY_CHANNEL must be a plain identifier (got '{v}')"
            )
        return v


class GatewaySettings(BaseSettings):
    """Host process settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "0.0.0.0"
    port: int = 19790
    client_id: str = "default"
    json_logs: bool = False
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            msg = f"GATEWAY_LOG_LEVEL must be one of {allowed} (got '{v}')"
            raise ValueError(msg)
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    local_store: LocalStoreSettings = Field(default_factory=LocalStoreSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    subscription: SubscriptionSettings = Field(default_factory=SubscriptionSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
