from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """
    Gateway settings loaded from environment variables (or a .env file).
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    LOG_LEVEL: str = "INFO"

    GATEWAY_HOST: str = "0.0.0.0"
    GATEWAY_PORT: int = 8080
    BACKEND_URL: str = "http://backend:3000"
    API_PREFIX: str = "/api"

    UPSTREAM_TIMEOUT: float = 30.0  # seconds
    MAX_CONTENT_LENGTH: int = 50 * 1024 * 1024  # bytes, request and response


@lru_cache
def get_settings() -> GatewaySettings:
    """Return the cached gateway settings instance."""
    return GatewaySettings()
