"""
Centralized configuration management for the outbox relay.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoSettings(BaseSettings):
    """MongoDB source configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="mongodb://localhost:27017/?replicaSet=rs0",
        description="MongoDB connection URI (change streams need a replica set)"
    )
    database: Optional[str] = Field(default=None, description="Database to watch (all if unset)")
    collection: Optional[str] = Field(default=None, description="Collection to watch (requires database)")
    namespace_filter: Optional[str] = Field(
        default="outbox",
        description="Match only changes whose ns.coll equals this name"
    )
    full_document: Optional[str] = Field(default=None, description="Change stream full_document option")

    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    def client_options(self) -> Dict[str, Any]:
        """Keyword arguments for the MongoDB client."""
        return {
            "connectTimeoutMS": self.connect_timeout * 1000,
            "serverSelectionTimeoutMS": self.server_selection_timeout * 1000,
        }

    def watch_filter(self) -> Dict[str, Any]:
        """Caller filter AND-ed with the insert match."""
        if self.namespace_filter:
            return {"ns.coll": self.namespace_filter}
        return {}

    def watch_options(self) -> Dict[str, Any]:
        if self.full_document:
            return {"full_document": self.full_document}
        return {}


class CheckpointSettings(BaseSettings):
    """Resume token persistence configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: str = Field(default="file", description="memory, file or sql")
    file_path: str = Field(default="outbox_token.json", description="Token file for the file backend")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL for the sql backend")
    job_id: str = Field(default="outbox-relay", description="Checkpoint owner for the sql backend")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = {"memory", "file", "sql"}
        if v.lower() not in allowed:
            raise ValueError(f"Checkpoint backend must be one of: {allowed}")
        return v.lower()


class RunnerSettings(BaseSettings):
    """Runner behaviour and process configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    restart_delay: float = Field(default=1.0, description="Fixed delay before each restart, seconds")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("restart_delay")
    @classmethod
    def validate_restart_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("restart_delay must be non-negative")
        return v


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
