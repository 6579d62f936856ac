"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "PixelMill Image Processing Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = False

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    STORAGE_BACKEND: str = "local"  # local, memory
    LOCAL_STORAGE_PATH: str = "./data/blobs"
    MAX_IMAGE_SIZE_BYTES: int = 20 * 1024 * 1024  # 20MB
    MAX_IMAGE_PIXELS: int = 50_000_000  # decompression bomb guard

    # ==========================================================================
    # Job Queue & Worker Pool
    # ==========================================================================
    WORKER_COUNT: int = 4
    QUEUE_MAX_DEPTH: int = 256
    MAX_IN_FLIGHT_PER_SUBMITTER: int = 2
    QUEUE_POLL_INTERVAL_SECONDS: float = 0.5

    # Retry settings with exponential backoff (transient failures only)
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 0.5
    RETRY_BACKOFF_MAX_SECONDS: float = 8.0

    # ==========================================================================
    # Result Cache
    # ==========================================================================
    CACHE_MAX_BYTES: int = 256 * 1024 * 1024

    # ==========================================================================
    # Upscaler Inference Service
    # ==========================================================================
    UPSCALER_URL: Optional[str] = None  # None -> interpolation fallback only
    UPSCALER_API_KEY: Optional[str] = None
    UPSCALER_TIMEOUT_SECONDS: float = 30.0
    UPSCALER_FALLBACK_ENABLED: bool = True
    UPSCALER_SUPPORTED_SCALES: List[int] = [2, 4]

    # ==========================================================================
    # Algorithm Tunables
    # ==========================================================================
    # Smart crop
    CROP_UNIFORMITY_FLOOR: float = 4.0
    CROP_UNIFORMITY_RATIO: float = 0.05
    CROP_COLOR_TOLERANCE: float = 10.0
    CROP_MAX_FRACTION: float = 0.15
    CROP_MIN_AREA_FRACTION: float = 0.60

    # Palette extraction
    PALETTE_MAX_ITERATIONS: int = 20
    PALETTE_CONVERGENCE: float = 0.5
    PALETTE_SAMPLE_PIXELS: int = 65536
    PALETTE_MAX_K: int = 32

    # Compression
    COMPRESSION_MAX_STEPS: int = 8
    DEFAULT_LOSSY_QUALITY: int = 90

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8000"


# Global settings instance
settings = Settings()
