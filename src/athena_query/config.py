"""Configuration system for Athena Query.

Loads configuration from:
1. JSON file specified by ATHENA_QUERY_CONFIG env var
2. Environment variable overrides with ATHENA_QUERY_ prefix
   - Nested keys use double underscore: ATHENA_QUERY_ATHENA__WORKGROUP
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ResultShape(str, Enum):
    """Output shapes a caller can request for a completed query."""

    INLINE = "inline"
    DELIMITED = "delimited"
    RECORDS = "records"
    COLUMNAR = "columnar"


class AwsConfig(BaseSettings):
    """Explicit AWS credentials. Empty values fall back to the ambient chain."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_QUERY_AWS__",
        env_nested_delimiter="__",
    )

    region: str = Field(default="", description="AWS region hosting Athena")
    access_key_id: str = Field(default="", description="AWS access key ID")
    secret_access_key: str = Field(default="", description="AWS secret access key")
    token: str = Field(default="", description="AWS session token")


class AthenaConfig(BaseSettings):
    """Configuration for the Athena query target."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_QUERY_ATHENA__",
        env_nested_delimiter="__",
    )

    database: str = Field(default="default", description="Athena database name")
    workgroup: str = Field(default="", description="Athena workgroup")
    output_location: str = Field(default="", description="S3 URL for query results")
    cache_query: bool = Field(
        default=True, description="Reuse results of identical queries via the request token"
    )
    endpoint_url: str | None = Field(
        default=None, description="Override for https://athena.<region>.amazonaws.com"
    )


class QueryConfig(BaseSettings):
    """Configuration for query execution and result handling."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_QUERY_QUERY__",
        env_nested_delimiter="__",
    )

    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between status polls")
    wait_log_threshold: int = Field(
        default=3, ge=1, description="Consecutive pending polls before logging"
    )
    raise_on_failure: bool = Field(
        default=False, description="Raise EngineQueryFailure on FAILED instead of returning it"
    )
    output_shape: ResultShape = ResultShape.INLINE
    decode_body: bool = Field(
        default=True, description="Fetch out-of-band results instead of returning locations"
    )
    fetch_concurrency: int = Field(
        default=1, ge=1, le=64, description="Parallel fetches of manifest-listed objects"
    )
    request_timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds")


class OTelConfig(BaseSettings):
    """Configuration for OpenTelemetry."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_QUERY_OTEL__",
        env_nested_delimiter="__",
    )

    enabled: bool = Field(default=False, description="Enable OpenTelemetry instrumentation")
    endpoint: str = Field(
        default="http://localhost:4317", description="OTLP exporter endpoint"
    )
    service_name: str = Field(default="athena-query", description="Service name for traces")
    insecure: bool = Field(default=True, description="Use an insecure OTLP channel")


class Settings(BaseSettings):
    """Root configuration for Athena Query."""

    model_config = SettingsConfigDict(
        env_prefix="ATHENA_QUERY_",
        env_nested_delimiter="__",
        env_file=None,
        extra="ignore",
    )

    aws: AwsConfig = Field(default_factory=AwsConfig)
    athena: AthenaConfig = Field(default_factory=AthenaConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    otel: OTelConfig = Field(default_factory=OTelConfig)

    @model_validator(mode="before")
    @classmethod
    def load_from_json_file(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Load configuration from JSON file if ATHENA_QUERY_CONFIG is set."""
        import os

        config_path = os.environ.get("ATHENA_QUERY_CONFIG")
        if config_path:
            path = Path(config_path)
            if not path.exists():
                raise ValueError(f"Config file not found: {config_path}")
            with path.open() as f:
                file_config = json.load(f)
            for key, value in file_config.items():
                if key not in data:
                    data[key] = value
                elif isinstance(value, dict) and isinstance(data.get(key), dict):
                    data[key] = {**value, **data[key]}
        return data


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the application settings (cached)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings, optionally from a specific config file.

    Args:
        config_path: Path to JSON config file. If None, uses ATHENA_QUERY_CONFIG env var.

    Returns:
        Loaded Settings instance.
    """
    import os

    if config_path is not None:
        os.environ["ATHENA_QUERY_CONFIG"] = str(config_path)

    global _settings
    _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset cached settings (useful for testing)."""
    global _settings
    _settings = None
