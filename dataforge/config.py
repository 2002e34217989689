"""Configuration management for the connector pipeline."""

from __future__ import annotations

import socket

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dataforge.exceptions import ConfigurationError


class DataforgeConfig(BaseSettings):
    """Process-wide settings for ingestion runs and the dispatch consumer."""

    model_config = SettingsConfigDict(
        env_file="dataforge.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bus / key-value store
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL backing the bus")
    kv_bucket: str = Field(default="dataforge", description="Key-value namespace prefix")
    output_subject: str = Field(default="OUTPUT")
    dead_letter_subject: str = Field(default="OUTPUT.DLQ")
    consumer_group: str = Field(default="CONS")
    consumer_name: str = Field(default_factory=socket.gethostname)
    stream_max_length: int | None = Field(default=None, ge=1, description="Approximate cap on entries kept per subject")

    # Metadata store (ODBC connection string)
    metadata_dsn: str | None = Field(default=None)

    # Incremental state
    lookback_hours: int = Field(default=10000, ge=1)

    # Pipeline runner
    max_concurrent_runs: int = Field(default=4, ge=1, le=64)

    # Dispatch
    dispatch_max_attempts: int = Field(default=3, ge=1, le=20)
    dispatch_read_count: int = Field(default=10, ge=1, le=1000)
    dispatch_block_ms: int = Field(default=5000, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must start with redis://, rediss:// or unix://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in {"json", "text"}:
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @model_validator(mode="after")
    def validate_subjects(self) -> "DataforgeConfig":
        if self.output_subject == self.dead_letter_subject:
            raise ValueError("DEAD_LETTER_SUBJECT must differ from OUTPUT_SUBJECT")
        return self


def get_config() -> DataforgeConfig:
    """Load configuration from environment."""
    try:
        load_dotenv("dataforge.env")
        return DataforgeConfig()
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e
