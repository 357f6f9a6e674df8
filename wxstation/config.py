from datetime import timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "weather"
    postgres_user: str = "weather"
    postgres_password: str = "weatherpass"
    database_url: str | None = None
    pgssl: bool = False
    pool_min_size: int = 1
    pool_max_size: int = 5

    station_lat: float = 44.05
    station_lon: float = -123.09
    station_timezone: str = "America/Los_Angeles"

    wind_window_minutes: int = Field(default=10, ge=1, description="Trailing window for mean wind and gust factor.")
    variability_window_minutes: int = Field(default=10, ge=1, description="Trailing window for direction variability.")

    full_moon_step_minutes: int = Field(default=10, ge=1, le=10)
    full_moon_horizon_days: int = Field(default=30, ge=1, le=30)
    full_moon_tolerance: float = Field(default=0.001, gt=0.0, lt=0.5)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @property
    def station_tz(self) -> ZoneInfo:
        return ZoneInfo(self.station_timezone)

    @property
    def wind_window(self) -> timedelta:
        return timedelta(minutes=self.wind_window_minutes)

    @property
    def variability_window(self) -> timedelta:
        return timedelta(minutes=self.variability_window_minutes)

    @property
    def postgres_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
