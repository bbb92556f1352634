from datetime import datetime
from fractions import Fraction
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RenderPreset = Literal["preview", "draft", "high", "master"]
ExportPreset = Literal["draft", "high", "master"]


# =============================================================================
# Encode target
# =============================================================================


class Profile(BaseModel):
    """MLT profile: the encode target of a compiled program."""

    model_config = ConfigDict(frozen=True)

    description: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    frame_rate_num: int = Field(gt=0)
    frame_rate_den: int = Field(default=1, gt=0)
    sample_rate: int = Field(default=48000, gt=0)
    channels: int = Field(default=2, gt=0)
    progressive: bool = True

    @property
    def frame_rate(self) -> Fraction:
        return Fraction(self.frame_rate_num, self.frame_rate_den)


class ProfileOverride(BaseModel):
    """Caller-supplied profile fields; unset fields come from the preset."""

    model_config = ConfigDict(frozen=True)

    description: str | None = None
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    frame_rate_num: int | None = Field(default=None, gt=0)
    frame_rate_den: int | None = Field(default=None, gt=0)
    sample_rate: int | None = Field(default=None, gt=0)
    channels: int | None = Field(default=None, gt=0)
    progressive: bool | None = None


class RenderOptions(BaseModel):
    """Render request options; unset encode fields are filled from the preset."""

    model_config = ConfigDict(frozen=True)

    output_path: str  # Relative paths are placed under Settings.render_output_dir
    preset: RenderPreset | None = None  # None selects Settings.default_preset
    profile: ProfileOverride | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    video_bitrate: str | None = None  # e.g. "8M", for bitrate-based encoding
    audio_bitrate: str | None = None
    crf: int | None = Field(default=None, ge=0, le=51)
    start_frame: int | None = Field(default=None, ge=0)
    end_frame: int | None = Field(default=None, ge=0)


class ResolvedRender(BaseModel):
    """Concrete profile and fully-populated options for one render."""

    model_config = ConfigDict(frozen=True)

    profile: Profile
    options: RenderOptions


# =============================================================================
# Engine boundary
# =============================================================================


class EngineInvocationOptions(BaseModel):
    """Consumer settings handed to the render engine."""

    model_config = ConfigDict(frozen=True)

    video_codec: str
    audio_codec: str
    video_bitrate: str | None = None
    audio_bitrate: str
    crf: int
    width: int
    height: int
    frame_rate_num: int
    frame_rate_den: int = 1
    start_frame: int | None = None
    end_frame: int | None = None
    # Frames the engine is expected to produce; used to report progress
    total_frames: int = 0


class EngineCheckResult(BaseModel):
    available: bool
    version: str | None = None
    path: str | None = None
    error: str | None = None


class EngineRunResult(BaseModel):
    success: bool
    output_path: str | None = None
    error: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    errors: list[str] = Field(default_factory=list)


# =============================================================================
# API
# =============================================================================


class RenderRequest(BaseModel):
    timeline: dict[str, Any]
    options: RenderOptions
    validate_program: bool = False  # Run structural + engine validation before rendering


class CompileRequest(BaseModel):
    timeline: dict[str, Any]
    preset: RenderPreset | None = None
    profile: ProfileOverride | None = None


class CompileResponse(BaseModel):
    xml: str
    total_frames: int
    duration_timecode: str
    producer_count: int
    playlist_ids: list[str]
    profile: Profile


class RenderProgressResponse(BaseModel):
    status: str
    current_frame: int
    total_frames: int
    percentage: int
    estimated_remaining: float | None = None
    fps: float | None = None
    error: str | None = None
    output_path: str | None = None


class RenderJobResponse(BaseModel):
    id: str
    status: str
    options: RenderOptions
    progress: RenderProgressResponse
    total_frames: int
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
