from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "ideas-lab"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "IDEAS_LAB_ENVIRONMENT"))
    backend_base_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("BACKEND_BASE_URL", "IDEAS_LAB_BACKEND_BASE_URL"),
    )
    api_token: str | None = Field(default=None, validation_alias=AliasChoices("API_TOKEN", "IDEAS_LAB_API_TOKEN"))
    request_timeout_sec: float = Field(default=30.0, validation_alias=AliasChoices("REQUEST_TIMEOUT_SEC", "IDEAS_LAB_REQUEST_TIMEOUT_SEC"))
    poll_interval_sec: float = Field(default=1.0, validation_alias=AliasChoices("POLL_INTERVAL_SEC", "IDEAS_LAB_POLL_INTERVAL_SEC"))
    run_logs_limit: int = Field(default=50, validation_alias=AliasChoices("RUN_LOGS_LIMIT", "IDEAS_LAB_RUN_LOGS_LIMIT"))
    notification_ttl_sec: float = Field(default=8.0, validation_alias=AliasChoices("NOTIFICATION_TTL_SEC", "IDEAS_LAB_NOTIFICATION_TTL_SEC"))
    notification_throttle_sec: float = Field(
        default=2.0,
        validation_alias=AliasChoices("NOTIFICATION_THROTTLE_SEC", "IDEAS_LAB_NOTIFICATION_THROTTLE_SEC"),
    )
    database_url: str = Field(
        default="sqlite:///./ideas_lab.db",
        validation_alias=AliasChoices("DATABASE_URL", "IDEAS_LAB_DATABASE_URL"),
    )

    @property
    def api_base(self) -> str:
        return self.backend_base_url.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
