"""
Runtime Configuration

All settings come from environment variables with development defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import structlog


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Engine settings."""
    database_url: str = "sqlite:///genledger.db"
    api_key: str = "dev-key-change-in-production"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    app_url: str = "http://localhost:5173"
    currency: str = "MXN"

    # Payments
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    # Object storage (S3 compatible)
    storage_endpoint_url: Optional[str] = None
    storage_region: Optional[str] = None
    storage_public_base_url: Optional[str] = None
    storage_image_bucket: str = "images"
    storage_video_bucket: str = "videos"

    # Image generation
    image_model: str = "imagen-4.0-generate-001"
    image_fallback_model: Optional[str] = "gemini-2.5-flash-image"

    # Long-running video generation
    vertex_project_id: Optional[str] = None
    vertex_location: str = "us-central1"
    vertex_access_token: Optional[str] = None
    video_model: str = "veo-3.1-generate-001"
    video_fallback_model: Optional[str] = "veo-3.0-fast-generate-001"
    poll_interval_seconds: float = 3.0
    poll_max_attempts: int = 90  # 90 * 3s = 4.5 minutes
    poll_max_transient_failures: int = 5

    log_json: bool = False
    port: int = 8000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///genledger.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            app_url=os.environ.get("APP_URL", "http://localhost:5173"),
            currency=os.environ.get("CURRENCY", "MXN"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            storage_endpoint_url=os.environ.get("STORAGE_ENDPOINT_URL"),
            storage_region=os.environ.get("STORAGE_REGION"),
            storage_public_base_url=os.environ.get("STORAGE_PUBLIC_BASE_URL"),
            storage_image_bucket=os.environ.get("STORAGE_IMAGE_BUCKET", "images"),
            storage_video_bucket=os.environ.get("STORAGE_VIDEO_BUCKET", "videos"),
            image_model=os.environ.get("IMAGE_MODEL", "imagen-4.0-generate-001"),
            image_fallback_model=os.environ.get("IMAGE_FALLBACK_MODEL", "gemini-2.5-flash-image") or None,
            vertex_project_id=os.environ.get("VERTEX_PROJECT_ID"),
            vertex_location=os.environ.get("VERTEX_LOCATION", "us-central1"),
            vertex_access_token=os.environ.get("VERTEX_ACCESS_TOKEN"),
            video_model=os.environ.get("VIDEO_MODEL", "veo-3.1-generate-001"),
            video_fallback_model=os.environ.get("VIDEO_FALLBACK_MODEL", "veo-3.0-fast-generate-001") or None,
            poll_interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "3")),
            poll_max_attempts=int(os.environ.get("POLL_MAX_ATTEMPTS", "90")),
            poll_max_transient_failures=int(os.environ.get("POLL_MAX_TRANSIENT_FAILURES", "5")),
            log_json=_env_bool("LOG_JSON"),
            port=int(os.environ.get("PORT", "8000")),
            debug=_env_bool("DEBUG"),
        )


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Configure structlog rendering for the process."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
