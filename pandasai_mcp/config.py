"""
Application configuration settings using Pydantic Settings.

This module defines a `Settings` class that loads configuration values from
environment variables and .env files. It covers service identity, the HTTP
bind address, upload staging and limits, the default LLM provider, the SSE
timer periods, and logging. A validator creates the upload staging directory
on startup.
"""
from pathlib import Path
from typing import Set
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator, Field

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables and .env file.
    """
    # Service identity, echoed by /status, /docs and SSE status events
    SERVICE_NAME: str = Field(default="PandasAI MCP Service", description="Human-readable service name.")
    SERVICE_VERSION: str = Field(default="1.0.0", description="Service version string.")

    # Server settings
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8001

    # File upload settings
    UPLOAD_DIR: Path = Field(default_factory=lambda: Path.cwd() / "uploads", description="Directory where uploads are staged before loading.")
    MAX_UPLOAD_FILE_SIZE_BYTES: int = Field(default=100 * 1024 * 1024, description="Maximum allowed file size for uploads in bytes (default: 100MB).")
    ALLOWED_EXTENSIONS: Set[str] = Field(default={'.csv', '.xlsx', '.xls'}, description="Set of file extensions the table loader accepts.")
    PREVIEW_ROWS: int = Field(default=5, description="Number of rows returned as a preview after an upload.")

    # LLM settings
    DEFAULT_LLM_PROVIDER: str = Field(default="openai", description="Provider used when a backend configuration does not name one.")
    ANALYSIS_SAMPLE_ROWS: int = Field(default=20, description="Number of sample rows included in the analysis prompt.")
    ANALYSIS_SYSTEM_PROMPT: str = Field(
        default="""You are a careful data analyst. You answer questions about a single table.
You are given a summary of the table (shape, columns, types, missing values,
numeric statistics) and a sample of its rows.

Rules:
- Base every statement on the summary and sample provided.
- When the answer needs rows that are not in the sample, say so and explain how it could be computed.
- Keep answers short and concrete. Use plain numbers, not code, unless asked for code."""
    )

    # SSE settings
    SSE_HEARTBEAT_SECONDS: float = Field(default=30.0, description="Interval between heartbeat events on each SSE connection.")
    SSE_STATUS_SECONDS: float = Field(default=60.0, description="Interval between status events on each SSE connection.")
    SSE_QUEUE_SIZE: int = Field(default=100, description="Events buffered per SSE subscriber before new events are dropped.")
    SSE_DISCONNECT_POLL_SECONDS: float = Field(default=1.0, description="How often an idle SSE stream checks whether its client went away.")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Root log level.")

    # Pydantic-settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",                # Load .env file
        env_file_encoding="utf-8",      # Encoding for .env file
        extra="ignore"                  # Ignore extra fields from environment/dotenv
    )

    @model_validator(mode='after')
    def _create_dirs(self) -> 'Settings':
        """
        Creates the upload staging directory.
        This validator runs after the model is initialized.
        """
        self.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        return self

# Instantiate settings
settings = Settings()
