"""Tests for environment-driven settings."""

from app.config.settings import Settings


class TestSettings:
    """Test Settings validation."""

    def test_invalid_log_level_defaults_to_info(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "verbose")

        assert Settings().log_level == "INFO"

    def test_log_level_is_uppercased(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")

        assert Settings().log_level == "DEBUG"

    def test_base_urls_are_normalized(self, monkeypatch):
        monkeypatch.setenv("STAGE_BASE_URL", "http://workers.internal:8000/")
        monkeypatch.setenv("LINKER_URL", "http://linker.internal/")

        config = Settings()

        assert config.stage_base_url == "http://workers.internal:8000"
        assert config.effective_linker_url == "http://linker.internal"

    def test_series_needs_two_points(self, monkeypatch):
        monkeypatch.setenv("SERIES_MAX_POINTS", "1")

        assert Settings().series_max_points == 2

    def test_database_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://report:secret@db:5432/report")

        assert Settings().database_url == "postgresql://report:secret@db:5432/report"
