# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for the invoice anomaly engine.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading and validation for the API, storage, AI
narrative provider and the anomaly detector thresholds.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provides configuration for database connections, the AI narrative
    provider, observability, authentication and the heuristic constants
    used by the anomaly detectors.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "invoice-anomaly-engine"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str

    # --► AUTHENTICATION SETTINGS
    JWT_SECRET: str = "change-me-please-and-keep-long-random"
    JWT_ALGORITHM: str = "HS256"

    # --► AI NARRATIVE PROVIDER
    AI_PROVIDER_BASE_URL: str = "https://openrouter.ai/api/v1"
    AI_MODEL: str = "google/gemini-2.0-flash-exp:free"
    AI_API_KEY: str | None = None
    AI_TIMEOUT_SECONDS: float = 15.0

    # --► AUDIT LOG
    AUDIT_TIMEOUT_SECONDS: float = 5.0

    # --► SCAN WINDOW
    ANOMALY_LOOKBACK_DAYS: int = 90
    ANOMALY_MAX_INVOICES_PER_SOURCE: int = 500
    ANOMALY_MAX_VENDOR_LOOKUP: int = 200
    ANOMALY_NARRATIVE_TOP_N: int = 20
    ANOMALY_PARALLEL_DETECTORS: bool = False

    # --► DETECTOR THRESHOLDS
    ANOMALY_DUPLICATE_WINDOW_DAYS: int = 7
    ANOMALY_DUPLICATE_AMOUNT_TOLERANCE: float = 0.01
    ANOMALY_ROUND_NUMBER_UNIT: int = 10_000
    ANOMALY_OUTLIER_SIGMA: float = 3.0
    ANOMALY_OUTLIER_MIN_SAMPLES: int = 3
    ANOMALY_UNUSUAL_VENDOR_MULTIPLIER: float = 2.0

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► METRICS CONFIGURATION
    PROMETHEUS_SCRAPE_PATH: str = "/metrics"

    @property
    def narrative_enabled(self) -> bool:
        """True when an AI provider is configured for narratives."""
        return bool(self.AI_API_KEY) and self.AI_PROVIDER_BASE_URL != "disabled"


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
