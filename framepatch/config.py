"""
Configuration module using Pydantic Settings for environment variable management.

Only essential environment variables are exposed. All other settings are hardcoded
for consistency and simplicity.
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# ============================================================
# RENDER PROFILES
# ============================================================

class RenderProfile:
    """
    Target aspect identifiers attached to every render plan.

    Profiles are carried through the plan for downstream publishing; the
    differential render itself always keeps the source geometry.
    """
    PORTRAIT = "9:16"
    SQUARE = "1:1"
    LANDSCAPE = "16:9"


DEFAULT_RENDER_PROFILES = [RenderProfile.PORTRAIT, RenderProfile.SQUARE, RenderProfile.LANDSCAPE]


class Settings(BaseSettings):
    """
    Application settings.

    Only essential configuration is loaded from environment variables.
    All processing/rendering settings are hardcoded for consistency.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES (minimal set)
    # ============================================================

    # Application
    app_name: str = "framepatch-studio"
    debug: bool = False
    log_level: str = "INFO"

    # Storage root for state ledger, patch assets and renders
    data_root: str = "./data"

    # Image provider
    openai_api_key: Optional[str] = None
    image_api_base_url: str = "https://api.openai.com/v1"

    # AWS S3 (only used to resolve s3:// sources)
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # Security - API authentication
    framepatch_api_key: Optional[str] = None  # API key for authenticating incoming requests

    # Performance tuning
    max_workers: int = 4  # Max concurrent jobs
    max_render_workers: int = 3  # Max concurrent FFmpeg segment processes per job

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def max_concurrent_jobs(self) -> int:
        return self.max_workers

    @property
    def max_concurrent_renders(self) -> int:
        return self.max_render_workers

    # Directories
    @property
    def temp_directory(self) -> str:
        return os.path.join(self.data_root, "tmp")

    @property
    def patches_directory(self) -> str:
        return os.path.join(self.data_root, "patches")

    @property
    def renders_directory(self) -> str:
        return os.path.join(self.data_root, "renders")

    @property
    def logs_directory(self) -> str:
        return os.path.join(self.data_root, "logs")

    @property
    def state_file_path(self) -> str:
        return os.path.join(self.data_root, "automation", "automation-state.json")

    # Rendering quality profile
    @property
    def ffmpeg_preset(self) -> str:
        return "veryfast"

    @property
    def ffmpeg_crf(self) -> int:
        return 20

    @property
    def audio_bitrate(self) -> str:
        return "192k"

    # External tool timeouts (seconds)
    @property
    def probe_timeout_seconds(self) -> float:
        return 30.0

    @property
    def frame_extract_timeout_seconds(self) -> float:
        return 60.0

    @property
    def segment_timeout_seconds(self) -> float:
        return 600.0

    @property
    def keyframe_probe_timeout_seconds(self) -> float:
        return 120.0

    @property
    def concat_timeout_seconds(self) -> float:
        return 900.0

    @property
    def download_timeout_seconds(self) -> float:
        return 300.0

    @property
    def provider_timeout_seconds(self) -> float:
        return 120.0

    # Planning
    @property
    def merge_padding_seconds(self) -> float:
        return 0.04

    @property
    def min_segment_seconds(self) -> float:
        return 0.04

    @property
    def default_propagation_window_seconds(self) -> float:
        return 0.6

    @property
    def default_motion_method(self) -> str:
        return "optical_flow_reprojection"

    # Image generation defaults
    @property
    def default_image_provider(self) -> str:
        return "openai"

    @property
    def default_image_model(self) -> str:
        return "gpt-image-1"

    @property
    def default_image_size(self) -> str:
        return "1024x1024"

    # State ledger history caps (most recent first)
    @property
    def history_limits(self) -> dict[str, int]:
        return {
            "ingest_runs": 50,
            "patch_layers": 300,
            "motion_jobs": 300,
            "render_plans": 300,
        }

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
