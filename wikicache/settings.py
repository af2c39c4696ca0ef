import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    # GitHub API
    github_token: str = Field(default="", alias="GITHUB_TOKEN")
    github_api_url: str = Field(
        default="https://api.github.com", alias="GITHUB_API_URL"
    )
    github_user_agent: str = Field(
        default="github-wiki-cache/1.0", alias="GITHUB_USER_AGENT"
    )
    request_timeout: float = Field(default=30.0, alias="GITHUB_REQUEST_TIMEOUT")

    # Retry / backoff
    retry_max_retries: int = Field(default=3, alias="RETRY_MAX_RETRIES")
    retry_initial_delay_ms: int = Field(default=2000, alias="RETRY_INITIAL_DELAY_MS")
    retry_max_delay_ms: int = Field(default=60000, alias="RETRY_MAX_DELAY_MS")
    retry_backoff_multiplier: float = Field(
        default=2.0, alias="RETRY_BACKOFF_MULTIPLIER"
    )

    # Cache
    cache_database_url: str = Field(default="", alias="CACHE_DATABASE_URL")
    cache_namespace: str = Field(default="cache", alias="CACHE_NAMESPACE")
    cache_cleanup_interval_minutes: int = Field(
        default=5, alias="CACHE_CLEANUP_INTERVAL_MINUTES"
    )
    server_mode: bool = Field(default=False, alias="SERVER_MODE")
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")

    # Custom avatar registry (non-GitHub endpoint)
    avatar_api_url: str = Field(default="", alias="AVATAR_API_URL")

    @field_validator("github_api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("request_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("GITHUB_REQUEST_TIMEOUT must be positive")
        return value

    @field_validator("cache_namespace")
    @classmethod
    def _namespace_not_empty(cls, value: str) -> str:
        if not value or ":" in value:
            raise ValueError("CACHE_NAMESPACE must be non-empty and contain no ':'")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the process environment (after .env loading)."""
        return cls.model_validate(dict(os.environ))

    def retry_config(self):
        """Build a validated RetryConfig from the retry fields."""
        from wikicache.services.retry import RetryConfig

        return RetryConfig(
            max_retries=self.retry_max_retries,
            initial_delay=self.retry_initial_delay_ms / 1000,
            max_delay=self.retry_max_delay_ms / 1000,
            backoff_multiplier=self.retry_backoff_multiplier,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
