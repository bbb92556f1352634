"""OpenTimelineIO-shaped timeline model.

The render core only reads timelines. Models accept both snake_case field
names and the camelCase keys used by the editor's JSON (``sourceRange``,
``mediaReference``, ``targetUrl``).
"""

from fractions import Fraction
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from meltline.exceptions import InvalidTimelineError
from meltline.services import rational_time as rt
from meltline.services.rational_time import DEFAULT_RATE, FrameRate, RationalTime, TimeRange

TrackKind = Literal["video", "audio"]


def _new_id() -> str:
    return str(uuid4())


class TimelineModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, arbitrary_types_allowed=True)


# =============================================================================
# Settings
# =============================================================================


class TimelineSettings(TimelineModel):
    """Project-level settings; the frame rate drives every conversion."""

    frame_rate: FrameRate = DEFAULT_RATE
    width: int = 1920
    height: int = 1080
    sample_rate: int = 48000
    audio_channels: int = 2


DEFAULT_TIMELINE_SETTINGS = TimelineSettings()


# =============================================================================
# Media references
# =============================================================================


class ExternalReference(TimelineModel):
    """Points to a file on disk or URL."""

    type: Literal["external"] = "external"
    id: str
    target_url: str
    available_range: TimeRange | None = None
    name: str | None = None
    mime_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MissingReference(TimelineModel):
    """Placeholder for media that is no longer available."""

    type: Literal["missing"] = "missing"
    id: str = Field(default_factory=_new_id)
    available_range: TimeRange | None = None
    original_url: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class GeneratorReference(TimelineModel):
    """Procedurally generated media (black, color bars, tone...)."""

    type: Literal["generator"] = "generator"
    id: str = Field(default_factory=_new_id)
    generator_kind: Literal["black", "color", "bars", "tone", "silence"] = "black"
    available_range: TimeRange | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EmbeddedReference(TimelineModel):
    """Media embedded in the project document; not renderable by melt."""

    type: Literal["embedded"] = "embedded"
    id: str = Field(default_factory=_new_id)
    available_range: TimeRange | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


MediaReference = Annotated[
    Union[ExternalReference, MissingReference, GeneratorReference, EmbeddedReference],
    Field(discriminator="type"),
]


# =============================================================================
# Track items and containers
# =============================================================================


class Clip(TimelineModel):
    """A portion of source media placed on a track."""

    type: Literal["clip"] = "clip"
    id: str = Field(default_factory=_new_id)
    name: str = ""
    source_range: TimeRange
    media_reference: MediaReference
    volume: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Gap(TimelineModel):
    """Empty space on a track; renders as black/silence."""

    type: Literal["gap"] = "gap"
    id: str = Field(default_factory=_new_id)
    name: str = "Gap"
    source_range: TimeRange
    metadata: dict[str, Any] = Field(default_factory=dict)


TrackItem = Annotated[Union[Clip, Gap], Field(discriminator="type")]


class Track(TimelineModel):
    """Ordered sequence of clips and gaps."""

    type: Literal["track"] = "track"
    id: str = Field(default_factory=_new_id)
    name: str = ""
    kind: TrackKind
    children: list[TrackItem] = Field(default_factory=list)
    index: int = 1
    metadata: dict[str, Any] = Field(default_factory=dict)


class Stack(TimelineModel):
    """Layered tracks; index 0 is the bottom (background) track."""

    type: Literal["stack"] = "stack"
    id: str = Field(default_factory=_new_id)
    name: str = "Tracks"
    children: list[Track] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Marker(TimelineModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    marked_range: TimeRange
    color: str = "red"
    metadata: dict[str, Any] = Field(default_factory=dict)


class Timeline(TimelineModel):
    """Top-level container for a project's timeline."""

    id: str = Field(default_factory=_new_id)
    name: str = "Untitled"
    schema_version: str = "1.0"
    global_start_time: RationalTime | None = None
    tracks: Stack = Field(default_factory=Stack)
    markers: list[Marker] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AssetMetadata(TimelineModel):
    id: str
    name: str
    type: Literal["video", "audio", "image"]
    url: str
    local_path: str | None = None
    duration: float | None = None
    width: int | None = None
    height: int | None = None
    mime_type: str | None = None


class Project(TimelineModel):
    """Serializable project document."""

    version: str = "1.0"
    settings: TimelineSettings = Field(default_factory=TimelineSettings)
    timeline: Timeline
    assets: dict[str, AssetMetadata] = Field(default_factory=dict)


# =============================================================================
# Construction helpers
# =============================================================================


def create_timeline(
    name: str = "Untitled",
    settings: TimelineSettings | None = None,
    tracks: list[Track] | None = None,
) -> Timeline:
    settings = settings or TimelineSettings()
    return Timeline(
        name=name,
        tracks=Stack(children=tracks or []),
        metadata={"settings": settings.model_dump(by_alias=True)},
    )


def create_track(kind: TrackKind, index: int = 1, children: list[Clip | Gap] | None = None) -> Track:
    label = "Video" if kind == "video" else "Audio"
    return Track(kind=kind, index=index, name=f"{label} {index}", children=children or [])


def create_external_ref(
    media_id: str,
    target_url: str,
    available_duration: RationalTime | None = None,
) -> ExternalReference:
    available_range = None
    if available_duration is not None:
        available_range = TimeRange(start_time=rt.zero(available_duration.rate), duration=available_duration)
    return ExternalReference(id=media_id, target_url=target_url, available_range=available_range)


def create_clip(
    media_reference: ExternalReference | MissingReference | GeneratorReference | EmbeddedReference,
    duration: RationalTime,
    start_time: RationalTime | None = None,
    name: str = "",
) -> Clip:
    start_time = start_time or rt.zero(duration.rate)
    return Clip(
        name=name,
        source_range=TimeRange(start_time=start_time, duration=duration),
        media_reference=media_reference,
    )


def create_gap(duration: RationalTime) -> Gap:
    return Gap(source_range=TimeRange(start_time=rt.zero(duration.rate), duration=duration))


# =============================================================================
# Read-only queries
# =============================================================================


def get_settings(timeline: Timeline) -> TimelineSettings:
    """Timeline settings, falling back to the defaults."""
    raw = timeline.metadata.get("settings")
    if raw is None:
        return DEFAULT_TIMELINE_SETTINGS
    if isinstance(raw, TimelineSettings):
        return raw
    try:
        return TimelineSettings.model_validate(raw)
    except ValidationError as e:
        raise InvalidTimelineError(f"Invalid timeline settings: {e}") from e


def get_frame_rate(timeline: Timeline) -> Fraction:
    return get_settings(timeline).frame_rate


def get_tracks(timeline: Timeline, kind: TrackKind | None = None) -> list[Track]:
    """Tracks in stack order, optionally filtered by kind."""
    tracks = timeline.tracks.children
    if kind:
        return [t for t in tracks if t.kind == kind]
    return list(tracks)


def get_all_clips(timeline: Timeline) -> list[Clip]:
    return [item for track in timeline.tracks.children for item in track.children if item.type == "clip"]


def track_duration_seconds(track: Track) -> Fraction:
    """Exact total duration of a track in seconds."""
    return sum((rt.to_seconds(item.source_range.duration) for item in track.children), Fraction(0))


def get_track_duration(track: Track, rate: Any = DEFAULT_RATE) -> RationalTime:
    """Total track duration, converted to frames at rate in one rounding."""
    fps = rt.to_rate(rate)
    return RationalTime(value=rt.round_half_up(track_duration_seconds(track) * fps), rate=fps)


def get_timeline_duration(timeline: Timeline) -> RationalTime:
    """Duration of the longest track at the timeline frame rate (zero if no tracks)."""
    fps = get_frame_rate(timeline)
    longest = max((track_duration_seconds(t) for t in timeline.tracks.children), default=Fraction(0))
    return RationalTime(value=rt.round_half_up(longest * fps), rate=fps)


def validate_timeline(timeline: Timeline) -> tuple[bool, list[str]]:
    """Check timeline integrity without compiling.

    Returns:
        (valid, errors) where errors lists non-positive durations and clips
        whose media is missing.
    """
    errors: list[str] = []
    for track in timeline.tracks.children:
        label = track.name or track.id
        for item in track.children:
            if item.source_range.duration.value <= 0:
                errors.append(f"Track {label}: Item {item.id} has non-positive duration")
            if item.type == "clip" and item.media_reference.type == "missing":
                errors.append(f"Track {label}: Clip {item.name or item.id} has missing media")
    return len(errors) == 0, errors


# =============================================================================
# Serialization
# =============================================================================


def coerce_timeline(data: Timeline | dict[str, Any] | str | bytes) -> Timeline:
    """Accept a Timeline, a decoded JSON dict or a JSON document."""
    if isinstance(data, Timeline):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return Timeline.model_validate_json(data)
        return Timeline.model_validate(data)
    except ValidationError as e:
        raise InvalidTimelineError(f"Invalid timeline: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


def timeline_from_json(json_text: str | bytes) -> Timeline:
    return coerce_timeline(json_text)


def timeline_to_json(timeline: Timeline, pretty: bool = True) -> str:
    return timeline.model_dump_json(by_alias=True, indent=2 if pretty else None)


def project_from_json(json_text: str | bytes) -> Project:
    """Parse a project document, rejecting unknown versions."""
    try:
        project = Project.model_validate_json(json_text)
    except ValidationError as e:
        raise InvalidTimelineError(f"Invalid project document: {e.errors()[0]['msg']}") from e
    if project.version != "1.0":
        raise InvalidTimelineError(f"Unsupported project version: {project.version}")
    return project


def project_to_json(timeline: Timeline, assets: list[AssetMetadata] | None = None) -> str:
    project = Project(
        settings=get_settings(timeline),
        timeline=timeline,
        assets={asset.id: asset for asset in assets or []},
    )
    return project.model_dump_json(by_alias=True, indent=2)
