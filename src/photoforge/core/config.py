"""Configuration management for Photoforge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PHOTOFORGE_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PHOTOFORGE_* prefix)
2. .env file in the project root
3. Default values defined in PhotoforgeConfig

Example .env file:
    PHOTOFORGE_GOOGLE_API_KEY=AIza...
    PHOTOFORGE_FREE_ALLOWANCE=3
    PHOTOFORGE_DATA_DIR=data
    PHOTOFORGE_PUBLIC_BASE_URL=https://photos.example.com

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from photoforge.core.config import config

    print(config.primary_model)
    print(config.archives_dir)

Gemini Constraints
------------------
- The primary model must support image output (``responseModalities: IMAGE``)
- Source images are capped at 15 MiB before they are uploaded
- Transient upstream failures (429 / 5xx) are retried up to ``max_attempts``
  times per strategy with exponential backoff starting at ``retry_base_delay``
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTION_TEMPLATE = (
    "Enhance this real estate listing photo. {instruction}. "
    "Preserve the original room layout and architecture. "
    "Return only enhanced image data and no text."
)


class PhotoforgeConfig(BaseSettings):
    """Main configuration for Photoforge.

    Values are loaded from environment variables with the PHOTOFORGE_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Generation Service:
        google_api_key : str
            API key sent as ``x-goog-api-key`` on every Gemini call
        gemini_base_url : str
            Base URL of the content-generation endpoint
        gemini_upload_url : str
            Resumable upload endpoint of the Files API
        primary_model : str
            Model tried first for every item
        fallback_model : str
            Model tried once the primary model's strategies are exhausted
        max_attempts : int
            Attempts per strategy for transient failures
        retry_base_delay : float
            First backoff delay in seconds (doubles on every retry)
        request_timeout : float
            Timeout in seconds for every outbound HTTP call

    Limits:
        max_source_bytes : int
            Largest accepted source image (declared or actual)
        max_references : int
            Largest batch size accepted per job

    Billing:
        free_allowance : int
            Lifetime free-trial items per user
        price_per_item : Decimal
            Monetary cost recorded per item

    Paths and Server:
        data_dir : Path
            Directory holding the SQLite database
        archives_dir : Path
            Directory served as the public object store
        public_base_url : str
            Prefix of retrievable archive URLs
        server_host / server_port : str / int
            uvicorn bind address

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PHOTOFORGE_",
        case_sensitive=False,
    )

    # Generation service
    google_api_key: str = Field(
        default="",
        description="Google Generative Language API key",
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL for generateContent calls",
    )
    gemini_upload_url: str = Field(
        default="https://generativelanguage.googleapis.com/upload/v1beta/files",
        description="Resumable upload endpoint of the Files API",
    )
    primary_model: str = Field(
        default="gemini-2.5-flash-image-preview",
        description="Model tried first for every item",
    )
    fallback_model: str = Field(
        default="gemini-2.5-flash",
        description="Model tried after the primary model is exhausted",
    )
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.3, ge=0.0)
    request_timeout: float = Field(default=120.0, gt=0.0)
    instruction_template: str = Field(
        default=DEFAULT_INSTRUCTION_TEMPLATE,
        description="Prompt wrapper; must contain '{instruction}'",
    )

    # Limits
    max_source_bytes: int = Field(default=15 * 1024 * 1024, ge=1)
    max_references: int = Field(default=30, ge=1)

    # Billing
    free_allowance: int = Field(default=3, ge=0)
    price_per_item: Decimal = Field(default=Decimal("1.00"), ge=0)
    preview_count: int = Field(
        default=2,
        ge=0,
        description="Individual outputs stored as previews next to the archive",
    )
    allow_anonymous: bool = Field(
        default=False,
        description="Accept jobs without a user id (demo mode, no credit accounting)",
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for the SQLite database",
    )
    archives_dir: Path = Field(
        default=Path("archives"),
        description="Directory for stored archives and previews",
    )
    public_base_url: str = Field(
        default="/files",
        description="URL prefix under which archives_dir is served",
    )

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.archives_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Location of the jobs and credits database."""
        return self.data_dir / "photoforge.db"


# Global configuration instance
# Loads values from environment variables (PHOTOFORGE_* prefix) and .env file.
config = PhotoforgeConfig()
