import logging
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="Payment Providers")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Outbound gateway calls
    http_timeout_seconds: int = Field(default=30, description="Total timeout for a gateway request in seconds")
    http_connect_timeout_seconds: int = Field(default=10, description="Connect timeout for a gateway request in seconds")

    # Optional callback idempotency guard (disabled when redis_url is unset)
    redis_url: Optional[str] = Field(default=None, description="Redis URL used to de-duplicate gateway callbacks")
    callback_lock_ttl_seconds: int = Field(default=3600)

    # Host supplied provider configuration, keyed by provider name
    provider_settings: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="JSON map of provider name to settings overrides",
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_provider_settings(cls, data: dict) -> dict:
        """
        Normalize provider setting overrides.

        Provider names are lower-cased so "SagePay" and "sagepay" address the
        same provider. Setting values must be strings, numbers and booleans are
        converted the way the host configuration store would write them.
        """
        if not isinstance(data, dict):
            return data
        data = data.copy()

        provider_settings = data.get("provider_settings")
        if not isinstance(provider_settings, dict):
            return data

        normalized: Dict[str, Dict[str, str]] = {}
        for provider_name, values in provider_settings.items():
            if not isinstance(values, dict):
                raise ValueError(f"provider_settings['{provider_name}'] must be a mapping of setting keys to values")
            converted = {}
            for key, value in values.items():
                if isinstance(value, bool):
                    converted[key] = "1" if value else "0"
                elif isinstance(value, (int, float, str)):
                    converted[key] = str(value)
                elif value is None:
                    converted[key] = ""
                else:
                    raise ValueError(
                        f"provider_settings['{provider_name}']['{key}'] must be a string, got {type(value).__name__}"
                    )
            normalized[str(provider_name).lower()] = converted

        data["provider_settings"] = normalized
        return data

    @model_validator(mode="after")
    def check_configuration_consistency(self) -> "Settings":
        level = self.log_level.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"log_level must be a standard logging level name, got '{self.log_level}'")
        self.log_level = level

        if self.http_connect_timeout_seconds > self.http_timeout_seconds:
            logger.warning(
                "http_connect_timeout_seconds is larger than http_timeout_seconds, the total timeout wins"
            )
        return self

    def get_provider_settings(self, provider_name: str) -> Dict[str, str]:
        """Return the configured overrides for a provider (empty when none are configured)."""
        return dict(self.provider_settings.get(provider_name.lower(), {}))


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The cached settings instance
    """
    return Settings()


def clear_settings_cache() -> None:
    """
    Clear the cached settings instance.

    After calling this function, the next call to get_settings() will
    create a new Settings instance with updated configuration.
    """
    get_settings.cache_clear()
