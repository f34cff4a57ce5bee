"""Base configuration settings."""

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Values are read from the environment and from an optional ``.env``
    file; field names are matched case-insensitively.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Clinical Store"
    environment: str = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    # MongoDB
    mongo_url: str = "mongodb://localhost:27017"
    mongo_database: str = "clinical_store"
    mongo_server_selection_timeout_ms: int = Field(
        default=5000, description="How long the driver waits for a server"
    )
    mongo_read_retries: int = Field(
        default=2, ge=0, description="Retries for reads interrupted by a reconnect"
    )
    mongo_retry_delay: float = Field(default=0.2, ge=0)
    history_collection_suffix: str = "History"

    # FHIR
    fhir_base_version: str = "4_0_0"
    wrap_fhir_models: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Reject level names the logging module does not know."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only console and json renderers are available."""
        if v not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return v

    def history_collection(self, collection: str) -> str:
        """Name of the history collection paired with ``collection``."""
        return f"{collection}{self.history_collection_suffix}"
