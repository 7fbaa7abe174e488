"""
Central configuration loaded from environment variables.
All settings have sensible defaults so the service works out of the box
with a local SQLite file, local disk uploads and no manual configuration.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------ #
    # Service identity
    # ------------------------------------------------------------------ #
    app_name: str = "getglow-api"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # ------------------------------------------------------------------ #
    # API authentication
    # Set API_KEY to a non-empty string to enable authentication.
    # Leave blank (default) to run in open / unauthenticated mode.
    # ------------------------------------------------------------------ #
    api_key: str = ""

    # ------------------------------------------------------------------ #
    # Rate limiting  (slowapi, enabled by default)
    # ------------------------------------------------------------------ #
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 60        # requests per client IP per minute

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    database_path: str = "data/analyses.db"

    # ------------------------------------------------------------------ #
    # Blob storage
    #   local → files under UPLOADS_DIR, served at UPLOADS_URL_PREFIX
    #   r2    → Cloudflare R2 (S3 API) via boto3
    # ------------------------------------------------------------------ #
    storage_backend: Literal["local", "r2"] = "local"
    uploads_dir: str = "uploads"
    uploads_url_prefix: str = "/uploads"

    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "getglow-images"
    r2_public_domain: str = ""

    # ------------------------------------------------------------------ #
    # Upload limits and image normalisation
    # ------------------------------------------------------------------ #
    max_upload_bytes: int = 10 * 1024 * 1024       # 10 MB
    image_max_width: int = 1200
    image_max_height: int = 1200
    image_quality: int = 85
    image_target_bytes: int = 2 * 1024 * 1024      # 2 MB

    # ------------------------------------------------------------------ #
    # LLM wellness analysis (via LiteLLM)
    # Set the API key for the provider you want to use:
    #   OpenAI    → OPENAI_API_KEY
    #   Anthropic → ANTHROPIC_API_KEY
    #   Gemini    → GEMINI_API_KEY
    # ------------------------------------------------------------------ #
    llm_default_model: str = "openai/gpt-4o"
    llm_stream: bool = True
    llm_timeout_seconds: float = 120.0
    llm_progress_every_chunks: int = 10
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""

    # Active prompt configuration is persisted here when changed at runtime.
    prompt_config_path: str = "data/active-prompt.json"

    # ------------------------------------------------------------------ #
    # Live updates (Server-Sent Events)
    # ------------------------------------------------------------------ #
    sse_keepalive_seconds: float = 15.0
    sse_channel_buffer: int = 64

    # ------------------------------------------------------------------ #
    # Logging
    # ------------------------------------------------------------------ #
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True          # structured JSON logs in production

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @field_validator("api_key", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def r2_configured(self) -> bool:
        return bool(
            self.r2_account_id and self.r2_access_key_id and self.r2_secret_access_key
        )

    @property
    def llm_key_configured(self) -> bool:
        return bool(self.openai_api_key or self.anthropic_api_key or self.gemini_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return a cached Settings singleton.
    The cache is reset between tests via `get_settings.cache_clear()`.
    """
    return Settings()
