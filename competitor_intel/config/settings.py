"""
Application settings and configuration management.

This module handles all environment variables, API keys, and pipeline
configuration using Pydantic settings management for type safety and validation.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


OPTIONAL_MODULES = ("pricing", "catalog", "marketing")
REANALYSIS_TRIGGERS = ("price_change", "stock_change", "product_update")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values are stored as SecretStr to prevent accidental logging.
    Settings are validated on load and cached for performance.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # API Keys
    anthropic_api_key: Optional[SecretStr] = Field(default=None, alias="ANTHROPIC_API_KEY")
    tavily_api_key: Optional[SecretStr] = Field(default=None, alias="TAVILY_API_KEY")
    brave_api_key: Optional[SecretStr] = Field(default=None, alias="BRAVE_API_KEY")

    # Application Configuration
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="APP_ENV"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        alias="LOG_LEVEL"
    )
    log_json: bool = Field(default=True, alias="LOG_JSON")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    # AI Configuration
    ai_provider: Literal["claude", "ollama"] = Field(default="claude", alias="AI_PROVIDER")
    ai_model: str = Field(default="claude-sonnet-4-20250514", alias="AI_MODEL")
    ai_max_tokens: int = Field(default=4000, alias="AI_MAX_TOKENS")
    ai_temperature: float = Field(default=0.3, alias="AI_TEMPERATURE")
    ollama_url: str = Field(default="http://localhost:11434", alias="OLLAMA_URL")
    enabled_modules: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="ENABLED_MODULES",
    )

    # Search Configuration
    search_provider: Literal["tavily", "brave"] = Field(default="tavily", alias="SEARCH_PROVIDER")
    search_result_limit: int = Field(default=10, ge=1, le=50, alias="SEARCH_RESULT_LIMIT")

    # Network
    request_timeout_seconds: int = Field(default=60, alias="REQUEST_TIMEOUT_SECONDS")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")

    # Alerts
    notification_email: str = Field(default="", alias="NOTIFICATION_EMAIL")
    price_drop_threshold: Decimal = Field(default=Decimal("10"), alias="PRICE_DROP_THRESHOLD")
    default_currency: str = Field(default="USD", alias="DEFAULT_CURRENCY")
    notification_backend: Literal["smtp", "log"] = Field(default="log", alias="NOTIFICATION_BACKEND")
    smtp_host: str = Field(default="localhost", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, alias="SMTP_USER")
    smtp_password: Optional[SecretStr] = Field(default=None, alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    smtp_sender: str = Field(default="alerts@localhost", alias="SMTP_SENDER")

    # Persistence
    database_url: str = Field(
        default="sqlite+aiosqlite:///./competitor_intel.db",
        alias="DATABASE_URL",
    )
    entities_file: Optional[str] = Field(default=None, alias="ENTITIES_FILE")

    # Re-analysis
    auto_reanalysis_triggers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="AUTO_REANALYSIS_TRIGGERS",
    )
    auto_reanalysis_cooldown_hours: int = Field(default=24, ge=0, alias="AUTO_REANALYSIS_COOLDOWN_HOURS")
    scheduled_analysis_enabled: bool = Field(default=False, alias="SCHEDULED_ANALYSIS_ENABLED")
    scheduled_analysis_frequency: Literal["daily", "weekly", "monthly"] = Field(
        default="weekly",
        alias="SCHEDULED_ANALYSIS_FREQUENCY",
    )
    scheduled_analysis_categories: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="SCHEDULED_ANALYSIS_CATEGORIES",
    )
    scheduled_analysis_batch_size: int = Field(default=50, ge=1, alias="SCHEDULED_ANALYSIS_BATCH_SIZE")

    @field_validator(
        "enabled_modules",
        "auto_reanalysis_triggers",
        "scheduled_analysis_categories",
        mode="before",
    )
    @classmethod
    def split_comma_list(cls, v: str | list[str] | None) -> list[str]:
        """Accept comma separated strings from the environment."""
        if v is None:
            return []
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return list(v)

    @field_validator("enabled_modules")
    @classmethod
    def validate_modules(cls, v: list[str]) -> list[str]:
        """Only known optional analysis modules may be enabled."""
        unknown = [m for m in v if m not in OPTIONAL_MODULES]
        if unknown:
            raise ValueError(f"Unknown analysis modules: {', '.join(unknown)}")
        return v

    @field_validator("auto_reanalysis_triggers")
    @classmethod
    def validate_triggers(cls, v: list[str]) -> list[str]:
        unknown = [t for t in v if t not in REANALYSIS_TRIGGERS]
        if unknown:
            raise ValueError(f"Unknown re-analysis triggers: {', '.join(unknown)}")
        return v

    @field_validator("anthropic_api_key", mode="before")
    @classmethod
    def validate_anthropic_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate Anthropic API key format."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if v is None or v == "":
            return None
        if not str(v).startswith("sk-"):
            raise ValueError("Invalid Anthropic API key format")
        return v

    def get_search_api_key(self) -> Optional[str]:
        """Return the API key of the configured search provider, if any."""
        key = self.tavily_api_key if self.search_provider == "tavily" else self.brave_api_key
        return key.get_secret_value() if key else None


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
