"""
BarSync Application Settings
Configuration management using Pydantic Settings
"""

import re
from datetime import date
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "BarSync"
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(default="sqlite:///./barsync.db")

    # Market Data APIs
    polygon_api_key: Optional[str] = Field(default=None)
    polygon_base_url: str = Field(default="https://api.polygon.io")
    requests_per_second: float = Field(default=5.0, gt=0)

    # Exchange session calendar
    exchange_timezone: str = Field(default="America/New_York")
    session_open: str = Field(default="09:30", description="Session open (HH:MM, exchange time)")
    session_close: str = Field(default="16:00", description="Session close (HH:MM, exchange time)")

    # Synchronization
    request_delay_seconds: float = Field(default=0.1, ge=0)
    max_requests_per_chunk: int = Field(default=50, ge=1)
    page_limit: int = Field(default=5000, ge=1)
    chunk_delay_seconds: float = Field(default=0.2, ge=0)
    write_batch_size: int = Field(default=1000, ge=1)
    monthly_partition_threshold_days: int = Field(default=90, ge=1)
    max_chunk_retries: int = Field(default=1, ge=0)
    chunk_retry_delay_seconds: float = Field(default=1.0, ge=0)
    history_start: date = Field(default=date(2010, 1, 1))

    @field_validator("session_open", "session_close")
    @classmethod
    def validate_session_time(cls, value: str) -> str:
        """Session boundaries are 24h HH:MM in exchange time"""
        value = value.strip()
        match = re.fullmatch(r"(\d{1,2}):(\d{2})", value)
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError(f"expected HH:MM, got {value!r}")
        return f"{int(match.group(1)):02d}:{match.group(2)}"


# Global settings instance
settings = Settings()
