"""Configuration module for the CodeSense collaboration server."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Redis (pub/sub transport). Empty string selects the in-process transport.
    redis_url: str = "redis://localhost:6379"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    cors_allowed_origins: str = "*"

    # Channel registry
    channel_sweep_interval: float = 120.0  # seconds between idle sweeps
    channel_idle_threshold: float = 60.0  # seconds unreferenced before teardown

    # Cursor broadcast
    cursor_throttle_ms: int = 50

    # WebSocket
    max_ws_message_size: int = 64 * 1024  # 64KB

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if self.cors_allowed_origins == "*":
            return ["*"]
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
