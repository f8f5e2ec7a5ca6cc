"""
Configuration management for the pickup logistics service.
"""
from datetime import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: str = "development"

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database (postgres:// URLs from hosting providers are accepted)
    database_url: str = "sqlite:///./pickup.db"

    # Frontend URL (for CORS)
    frontend_url: str = "http://localhost:5173"

    # Operator local time - lock cutoffs are evaluated in this zone
    timezone: str = "Asia/Bangkok"

    # Seats per session when the session row has no max_capacity
    default_session_capacity: int = 12

    # Driver console refresh interval (client side polling)
    driver_poll_interval_seconds: int = 30

    # GeoJSON seed for pickup zones (optional)
    zones_geojson_path: str = ""

    # Insert default sessions/zones on startup when tables are empty
    seed_reference_data: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def local_now() -> datetime:
    """Current wall-clock time in the operator's timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone))
