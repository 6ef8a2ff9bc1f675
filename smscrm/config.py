from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./smscrm.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Inbound webhook security (Twilio request signatures)
    TWILIO_AUTH_TOKEN: str = ""
    WEBHOOK_SIGNATURE_MODE: str = "enforce"  # enforce | off

    # Public URL Twilio calls back on; used to rebuild the signed URL
    PUBLIC_BASE_URL: str = ""

    # Phone normalization: country code assumed for bare 10-digit numbers
    DEFAULT_COUNTRY_CODE: str = "1"

    # Remote conversation provider
    CONVERSATION_PROVIDER: str = "twilio"  # twilio | memory
    REMOTE_TIMEOUT_SECONDS: float = 15.0
    CONVERSATION_SEARCH_LIMIT: int = 1000

    # Serialize resolutions for the same (customer, sender) pair in-process
    RESOLVER_PAIR_LOCK: bool = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
