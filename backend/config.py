"""Environment-based configuration for the RecallAR backend."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).parent / "recallar.db"


class Settings(BaseSettings):
    """Application settings loaded from RECALLAR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RECALLAR_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    log_level: str = "INFO"

    # Storage
    database_path: Path = DEFAULT_DB_PATH

    # Matching (empirically chosen; 0.4 similarity == 0.6 Euclidean distance)
    match_threshold: float = Field(default=0.4, ge=0.0, le=1.0)

    # Detection poller cadence, seconds
    poll_interval: float = Field(default=0.2, gt=0)
    not_ready_interval: float = Field(default=0.5, gt=0)

    # Overlay animation
    animation_fps: float = Field(default=60.0, gt=0)
    smoothing_alpha: float = Field(default=0.12, gt=0.0, le=1.0)
    overlay_start_x: float = 75.0
    overlay_start_y: float = 30.0
    overlay_offset_x: float = 8.0
    overlay_offset_y: float = 5.0
    overlay_max_x: float = 85.0
    overlay_min_y: float = 10.0

    # Face detection / embedding extractor
    face_model_name: str = "buffalo_l"
    face_det_size: int = Field(default=320, ge=32)
    face_det_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # Camera (None = frames are streamed by the WebSocket client)
    camera_device: int | None = None
    camera_width: int = 1280
    camera_height: int = 720
    # Streamed frames older than this read as "no frame", seconds
    stream_frame_max_age: float = Field(default=2.0, gt=0)

    # Summarizer (None = always use the local fallback)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-3-flash-preview"
    gemini_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    summarizer_timeout: float = Field(default=30.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
