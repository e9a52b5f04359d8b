"""Tests for environment-driven settings."""
from runtrack.config import Settings
from runtrack.tracking.gps_filter import GpsFilterConfig


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.segment_threshold_meters == 10.0
        assert settings.max_accuracy_meters == 25.0
        assert settings.min_distance_meters == 3.0
        assert settings.max_speed_kmh == 36.0
        assert settings.background_poll_interval_ms == 1000
        assert settings.upload_max_attempts == 3

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("RUNTRACK_SEGMENT_THRESHOLD_METERS", "25")
        monkeypatch.setenv("RUNTRACK_API_TOKEN", "secret")
        settings = Settings(_env_file=None)
        assert settings.segment_threshold_meters == 25.0
        assert settings.api_token == "secret"

    def test_filter_config_from_settings(self):
        settings = Settings(_env_file=None, max_accuracy_meters=15.0, max_speed_kmh=30.0)
        config = GpsFilterConfig.from_settings(settings)
        assert config == GpsFilterConfig(max_accuracy_meters=15.0, min_distance_meters=3.0, max_speed_kmh=30.0)
