import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    ⚠️ WARNING: SQLite is NOT suitable for production deployments!
    - Advisory locks fall back to a process-local registry on SQLite
    - Row locks (SELECT ... FOR UPDATE) are ignored by SQLite
    - Use PostgreSQL by setting DATABASE_URL environment variable
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info(f"Using DATABASE_URL from environment: {db_url}")
        is_production = bool(os.getenv("RENDER") or os.getenv("RAILWAY_ENVIRONMENT") or os.getenv("DYNO"))
        if db_url.startswith("sqlite://") and is_production:
            logger.error(
                "⚠️ CRITICAL: SQLite detected in production environment! "
                "Concurrent stages cannot be serialized across processes. "
                "Set DATABASE_URL to a PostgreSQL connection string."
            )
        return db_url

    db_path = Path(__file__).parent.parent.parent / "execution_report.db"
    abs_path = db_path.resolve()
    db_url = f"sqlite:///{abs_path}"
    logger.warning(
        f"⚠️ Using SQLite database (LOCAL DEV ONLY): {db_url}\n"
        "⚠️ Set DATABASE_URL environment variable to use PostgreSQL in production."
    )
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str = Field(default="", validation_alias="LOG_FILE")
    stage_base_url: str = Field(
        default="http://localhost:8000",
        validation_alias="STAGE_BASE_URL",
        description="Base URL the orchestrator uses to reach the stage workers",
    )
    linker_url: str = Field(
        default="",
        validation_alias="LINKER_URL",
        description="Base URL of the linker service (defaults to STAGE_BASE_URL)",
    )
    stage_http_timeout_seconds: float = Field(default=10.0, validation_alias="STAGE_HTTP_TIMEOUT_SECONDS")
    linker_http_timeout_seconds: float = Field(default=15.0, validation_alias="LINKER_HTTP_TIMEOUT_SECONDS")
    series_max_points: int = Field(
        default=500,
        validation_alias="SERIES_MAX_POINTS",
        description="Maximum number of points kept in analysis.series",
    )
    stuck_processing_seconds: int = Field(
        default=300,
        validation_alias="STUCK_PROCESSING_SECONDS",
        description="Age after which a processing stage is reported as stale",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("series_max_points")
    @classmethod
    def validate_series_max_points(cls, value: int) -> int:
        if value < 2:
            logger.warning(f"SERIES_MAX_POINTS must be at least 2, got {value}. Using 2.")
            return 2
        return value

    @field_validator("stage_base_url", "linker_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def effective_linker_url(self) -> str:
        """Linker base URL, falling back to the stage base URL."""
        return self.linker_url or self.stage_base_url


settings = Settings()
