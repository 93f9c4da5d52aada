"""
Configuration settings for the ARN reconciler.

Uses Pydantic Settings to load environment variables for the results database,
AWS access, the source table layout, and the reconciliation engine defaults.
Values can also come from a local `.env` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("push_endpoints", alias="DB_NAME")
    db_connect_timeout: int = Field(30, alias="DB_CONNECT_TIMEOUT")

    # Application
    app_env: str = Field("staging", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # AWS
    aws_region: str = Field("us-east-1", alias="AWS_REGION")
    aws_profile: Optional[str] = Field(None, alias="AWS_PROFILE")
    aws_access_key_id: Optional[str] = Field(None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(None, alias="AWS_SECRET_ACCESS_KEY")
    aws_role_arn: Optional[str] = Field(None, alias="AWS_ROLE_ARN")
    aws_role_session_name: str = Field("sns-cleanup-session", alias="AWS_ROLE_SESSION_NAME")
    aws_grant_duration_seconds: int = Field(3600, alias="AWS_GRANT_DURATION_SECONDS")
    credential_safety_margin_seconds: int = Field(300, alias="CREDENTIAL_SAFETY_MARGIN_SECONDS")

    # Source table
    source_table_name: str = Field("push_notifications", alias="SOURCE_TABLE_NAME")
    source_arn_column: str = Field("arn", alias="SOURCE_ARN_COLUMN")
    source_id_column: str = Field("id", alias="SOURCE_ID_COLUMN")

    # Result tables
    results_table_name: str = Field("push_arn_cleanup_results", alias="RESULTS_TABLE_NAME")
    runs_table_name: str = Field("push_arn_cleanup_runs", alias="RUNS_TABLE_NAME")

    # Engine defaults
    batch_size: int = Field(100, alias="BATCH_SIZE")
    chunk_size: int = Field(5_000, alias="CHUNK_SIZE")
    max_concurrency: int = Field(50, alias="MAX_CONCURRENCY")
    max_retries: int = Field(3, alias="MAX_RETRIES")
    retry_delay_ms: int = Field(1_000, alias="RETRY_DELAY_MS")
    max_credential_refreshes: int = Field(2, alias="MAX_CREDENTIAL_REFRESHES")
    batch_pause_ms: int = Field(500, alias="BATCH_PAUSE_MS")
    chunk_pause_ms: int = Field(1_000, alias="CHUNK_PAUSE_MS")
    persist_attempts: int = Field(3, alias="PERSIST_ATTEMPTS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
