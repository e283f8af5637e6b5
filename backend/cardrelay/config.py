"""Application configuration via pydantic-settings.

Reads from environment variables and .env file.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream completion API
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    model_name: str = Field(default="gpt-4o-mini", alias="MODEL_NAME")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    model_temperature: float = Field(default=0.2, alias="MODEL_TEMPERATURE")

    # Streaming
    relay_timeout_seconds: float = Field(default=60.0, alias="RELAY_TIMEOUT_SECONDS")
    upstream_connect_timeout_seconds: float = Field(
        default=10.0, alias="UPSTREAM_CONNECT_TIMEOUT_SECONDS"
    )

    # Tenant store (Firestore)
    firebase_service_account: str = Field(default="", alias="FIREBASE_SERVICE_ACCOUNT")
    firebase_project_id: str = Field(default="", alias="FIREBASE_PROJECT_ID")

    # Read cache
    cache_ttl_seconds: int = Field(default=90, alias="CACHE_TTL_SECONDS")
    redis_url: str = Field(default="", alias="REDIS_URL")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def upstream_configured(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def tenant_store_configured(self) -> bool:
        return bool(self.firebase_service_account)


settings = Settings()


def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return settings
