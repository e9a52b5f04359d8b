from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # GPS filter / segment engine
    segment_threshold_meters: float = 10.0
    max_accuracy_meters: float = 25.0
    min_distance_meters: float = 3.0
    max_speed_kmh: float = 36.0
    max_gap_seconds: float = 15.0

    # Scheduling
    background_poll_interval_ms: int = 1000
    timer_interval_ms: int = 1000

    # Sensors / calories
    sensor_stale_seconds: float = 5.0
    body_weight_kg: float = 70.0
    age_years: int = 30
    instant_pace_window_seconds: float = 10.0

    # Remote session API
    api_base_url: str = "http://localhost:8080/api/v1"
    api_token: str = ""
    api_timeout_seconds: float = 30.0

    # Durable storage / offline queue
    database_url: str = "sqlite:///./runtrack.db"
    upload_max_attempts: int = 3
    upload_retry_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "RUNTRACK_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
