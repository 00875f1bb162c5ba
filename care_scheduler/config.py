# care_scheduler/config.py
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App
    APP_ENV: str = Field(default="dev", description="Environment name: dev|test|prod")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="", description="Optional log file, console only when empty")

    # Caregiver civil time: "today", service-date midnight and lead days
    TIMEZONE: str = Field(default="Asia/Ho_Chi_Minh")

    # Business rules
    CANCELLATION_MIN_LEAD_DAYS: int = Field(default=3, ge=0)

    # Retries for ledger releases that follow an already committed appointment write
    CAS_RETRY_ATTEMPTS: int = Field(default=3, ge=1)

    # Background deadline sweep, 0 disables it
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = Field(default=0, ge=0)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.TIMEZONE)


@lru_cache
def get_settings() -> Settings:
    return Settings()
