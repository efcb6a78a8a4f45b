from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_gateway.gateway.types import RetryPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # LLM vendors (keys may also be passed per request)
    openai_api_key: str = ""
    claude_api_key: str = ""
    gemini_api_key: str = ""
    custom_api_key: str = ""
    custom_base_url: str = ""

    # Retry executor
    llm_timeout_seconds: float = 120.0
    llm_stream_timeout_seconds: float = 180.0
    llm_max_attempts: int = 3  # total attempts, not retries
    llm_base_retry_delay: float = 1.0
    llm_max_retry_delay: float = 60.0

    # Web search
    web_search_timeout_seconds: float = 30.0
    web_search_default_provider: str = "model"  # tavily | exa | model
    tavily_api_key: str = ""
    exa_api_key: str = ""
    web_search_api_key: str = ""  # shared key used for whichever vendor is preferred

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def vendor_api_keys(self) -> dict[str, str]:
        return {
            "openai": self.openai_api_key,
            "claude": self.claude_api_key,
            "gemini": self.gemini_api_key,
            "custom": self.custom_api_key,
        }

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.llm_max_attempts,
            base_retry_delay=self.llm_base_retry_delay,
            max_retry_delay=self.llm_max_retry_delay,
            timeout_seconds=self.llm_timeout_seconds,
        )

    def stream_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.llm_max_attempts,
            base_retry_delay=self.llm_base_retry_delay,
            max_retry_delay=self.llm_max_retry_delay,
            timeout_seconds=self.llm_stream_timeout_seconds,
        )


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.llm_max_attempts < 1:
        errors.append("LLM_MAX_ATTEMPTS must be at least 1")

    if settings.llm_max_retry_delay < settings.llm_base_retry_delay:
        errors.append("LLM_MAX_RETRY_DELAY must not be lower than LLM_BASE_RETRY_DELAY")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
