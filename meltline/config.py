import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Meltline Render API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:5173,http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        # Try JSON first
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Try pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # melt (MLT render engine)
    melt_path: str = "melt"
    melt_search_paths: list[str] = [
        "/usr/bin/melt",
        "/usr/local/bin/melt",
        "/opt/homebrew/bin/melt",
    ]
    # x264 speed preset passed to the avformat consumer
    melt_x264_preset: str = "medium"
    # Seconds to wait after SIGTERM before killing a cancelled melt process
    melt_cancel_grace_s: float = 5.0

    # Render files
    render_temp_dir: str = "/tmp/meltline-mlt"
    # Base directory for relative output paths
    render_output_dir: str = "/tmp/meltline-renders"
    # Preset used when a request does not name one
    default_preset: Literal["preview", "draft", "high", "master"] = "high"

    # Job registry
    # Delay before a finished job's progress callback is released
    progress_callback_release_s: float = 5.0
    # Finished jobs kept in memory; oldest by completion time are evicted first
    max_retained_jobs: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()
