"""
Timeline to MLT XML compiler.

Translates a timeline (stack of video/audio tracks holding clips and gaps)
into an MLT XML program that ``melt`` can render:

1. Collect one producer per distinct external media source
2. Emit a single black fallback producer sized to the whole program
3. Emit one playlist per track (blanks and entries, integer frames)
4. Multiplex the playlists in a ``main`` tractor, video before audio

Compilation is pure: the same timeline and profile always produce the same
bytes. All frame values are expressed at the profile frame rate and derived
from exact ``Fraction`` seconds, so track totals never drift.
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Literal, Optional
from xml.sax.saxutils import escape

from meltline.exceptions import (
    InvalidRenderRangeError,
    NegativeDurationError,
    ProducerCollisionError,
    UnsupportedMediaReferenceError,
)
from meltline.schemas.render import Profile, ValidationResult
from meltline.schemas.timeline import Clip, ExternalReference, Gap, Timeline, Track, coerce_timeline, get_tracks
from meltline.services import rational_time as rt
from meltline.services.preset_resolver import DEFAULT_PROFILE

logger = logging.getLogger(__name__)

BLACK_PRODUCER_ID = "black"
MAIN_TRACTOR_ID = "main"
MLT_VERSION = "7.0.0"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff")
# Still images with no known duration are held at least this long
DEFAULT_IMAGE_SECONDS = 5

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_XML_ATTR_ENTITIES = {'"': "&quot;", "'": "&apos;"}

ProducerKind = Literal["video", "audio", "image"]


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class ProducerInfo:
    """One physical media source in the program."""

    id: str
    url: str
    kind: ProducerKind
    # Known source length; None when unknown or under one frame
    available_frames: Optional[int] = None
    # Furthest source frame any clip reads; sizes images with no known duration
    max_end_frame: int = 0


@dataclass
class CompiledProgram:
    """MLT XML plus the metadata callers need to drive a render."""

    xml: str
    total_frames: int
    profile: Profile
    producer_count: int = 0
    playlist_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "xml": self.xml,
            "total_frames": self.total_frames,
            "producer_count": self.producer_count,
            "playlist_ids": self.playlist_ids,
        }


# ============================================================================
# Helpers
# ============================================================================


def escape_xml(value: Any) -> str:
    """Escape the five reserved XML characters."""
    return escape(str(value), _XML_ATTR_ENTITIES)


def sanitize_id(value: str) -> str:
    """Restrict an identifier to letters, digits, ``_`` and ``-``."""
    return _UNSAFE_ID_CHARS.sub("_", value)


def producer_id_for(reference: ExternalReference) -> str:
    return f"producer_{sanitize_id(reference.id)}"


def is_image_url(url: str) -> bool:
    return url.lower().endswith(IMAGE_EXTENSIONS)


def _resource_path(url: str) -> str:
    if url.startswith("file://"):
        return url[len("file://"):]
    return url


def _frames(seconds: Fraction, fps: Fraction) -> int:
    return rt.round_half_up(seconds * fps)


def _check_item(item: Clip | Gap, track: Track) -> None:
    duration = item.source_range.duration
    if duration.value < 0:
        raise NegativeDurationError(item.id, track.id, value=duration.value)
    start = item.source_range.start_time
    if start.value < 0:
        raise NegativeDurationError(item.id, track.id, field="start_time", value=start.value)


def _track_items(track: Track, fps: Fraction):
    """Yield (item, length) for each child, lengths taken from cumulative positions.

    Each item's length is the difference between its rounded end and start
    positions on the track, so the lengths always sum to the rounded track
    total even when items use rates other than fps.
    """
    elapsed = Fraction(0)
    position = 0
    for item in track.children:
        _check_item(item, track)
        elapsed += rt.to_seconds(item.source_range.duration)
        end = _frames(elapsed, fps)
        yield item, end - position
        position = end


def track_frames(track: Track, fps: Fraction) -> int:
    """Rounded frame length of a track at fps."""
    return sum(length for _, length in _track_items(track, fps))


def program_frames(timeline: Timeline, fps: Fraction) -> int:
    """Frame length of the whole program: its longest track (0 with no tracks)."""
    return max((track_frames(t, fps) for t in timeline.tracks.children), default=0)


def validate_render_range(start_frame: int, end_frame: Optional[int] = None) -> None:
    """Reject ranges unless 0 <= start_frame <= end_frame.

    Raises:
        InvalidRenderRangeError: If the range is empty or negative.
    """
    if start_frame < 0 or (end_frame is not None and end_frame < start_frame):
        raise InvalidRenderRangeError(start_frame, end_frame)


# ============================================================================
# Producer collection
# ============================================================================


def collect_producers(timeline: Timeline, fps: Fraction) -> dict[str, ProducerInfo]:
    """Collect one producer per distinct external source, in first-seen order.

    Raises:
        UnsupportedMediaReferenceError: If a clip uses an embedded reference.
        ProducerCollisionError: If two sources sanitize to the same producer id.
    """
    producers: dict[str, ProducerInfo] = {}

    for track in timeline.tracks.children:
        for item, _length in _track_items(track, fps):
            if item.type != "clip":
                continue
            reference = item.media_reference
            if reference.type == "embedded":
                raise UnsupportedMediaReferenceError(reference.type, item.id)
            if reference.type != "external":
                continue

            producer_id = producer_id_for(reference)
            in_frame = _frames(rt.to_seconds(item.source_range.start_time), fps)
            end_frame = in_frame + _frames(rt.to_seconds(item.source_range.duration), fps)

            producer = producers.get(producer_id)
            if producer is None:
                if track.kind == "audio":
                    kind: ProducerKind = "audio"
                elif is_image_url(reference.target_url):
                    kind = "image"
                else:
                    kind = "video"

                available = None
                if reference.available_range is not None:
                    available = _frames(rt.to_seconds(reference.available_range.duration), fps)
                    if available <= 0:
                        logger.warning(
                            f"[COMPILE] {reference.target_url}: available range is under one frame, "
                            "treating its length as unknown"
                        )
                        available = None

                producer = ProducerInfo(
                    id=producer_id,
                    url=reference.target_url,
                    kind=kind,
                    available_frames=available,
                )
                producers[producer_id] = producer
            elif producer.url != reference.target_url:
                raise ProducerCollisionError(producer_id, producer.url, reference.target_url, item.id)

            producer.max_end_frame = max(producer.max_end_frame, end_frame)

    return producers


# ============================================================================
# XML emission
# ============================================================================


def _profile_xml(profile: Profile) -> list[str]:
    return [
        "  <profile",
        f'    description="{escape_xml(profile.description)}"',
        f'    width="{profile.width}"',
        f'    height="{profile.height}"',
        f'    frame_rate_num="{profile.frame_rate_num}"',
        f'    frame_rate_den="{profile.frame_rate_den}"',
        '    sample_aspect_num="1"',
        '    sample_aspect_den="1"',
        f'    progressive="{1 if profile.progressive else 0}"',
        "  />",
    ]


def _producer_xml(producer: ProducerInfo, fps: Fraction) -> list[str]:
    resource = escape_xml(_resource_path(producer.url))

    if producer.kind == "image":
        if producer.available_frames is not None:
            length = producer.available_frames
        else:
            length = max(producer.max_end_frame, _frames(Fraction(DEFAULT_IMAGE_SECONDS), fps))
        return [
            f'  <producer id="{producer.id}">',
            '    <property name="mlt_service">qimage</property>',
            f'    <property name="resource">{resource}</property>',
            f'    <property name="length">{length}</property>',
            "  </producer>",
        ]

    bounds = ""
    if producer.available_frames is not None:
        bounds = f' in="0" out="{producer.available_frames - 1}"'
    return [
        f'  <producer id="{producer.id}"{bounds}>',
        '    <property name="mlt_service">avformat</property>',
        f'    <property name="resource">{resource}</property>',
        "  </producer>",
    ]


def _black_producer_xml(total_frames: int) -> list[str]:
    return [
        f'  <producer id="{BLACK_PRODUCER_ID}">',
        '    <property name="mlt_service">color</property>',
        '    <property name="resource">black</property>',
        f'    <property name="length">{total_frames}</property>',
        "  </producer>",
    ]


def _playlist_xml(track: Track, playlist_id: str, fps: Fraction) -> list[str]:
    lines = [f'  <playlist id="{playlist_id}">']

    for item, length in _track_items(track, fps):
        if length <= 0:
            continue

        if item.type == "gap":
            lines.append(f'    <blank length="{length}"/>')
            continue

        reference = item.media_reference
        if reference.type != "external":
            # Missing/generator media still occupies its slot
            lines.append(f'    <entry producer="{BLACK_PRODUCER_ID}" in="0" out="{length - 1}"/>')
            continue

        in_frame = _frames(rt.to_seconds(item.source_range.start_time), fps)
        out_frame = in_frame + length - 1
        lines.append(f'    <entry producer="{producer_id_for(reference)}" in="{in_frame}" out="{out_frame}"/>')

    lines.append("  </playlist>")
    return lines


# ============================================================================
# Public API
# ============================================================================


def compile_program(timeline: Timeline | dict[str, Any] | str, profile: Optional[Profile] = None) -> CompiledProgram:
    """Compile a timeline into an MLT program.

    Args:
        timeline: Timeline model, decoded JSON dict, or JSON text.
        profile: Encode target. Defaults to 1080p 30fps.

    Returns:
        CompiledProgram with the XML and its frame total.

    Raises:
        CompileError: If the timeline is malformed (invalid payload, negative
            durations, embedded media, producer id collision).
    """
    timeline = coerce_timeline(timeline)
    profile = profile or DEFAULT_PROFILE
    fps = profile.frame_rate

    video_tracks = get_tracks(timeline, "video")
    audio_tracks = get_tracks(timeline, "audio")

    producers = collect_producers(timeline, fps)
    total_frames = program_frames(timeline, fps)

    video_ids = [f"video_track_{i}" for i in range(1, len(video_tracks) + 1)]
    audio_ids = [f"audio_track_{i}" for i in range(1, len(audio_tracks) + 1)]

    xml: list[str] = [
        '<?xml version="1.0" encoding="utf-8"?>',
        f'<mlt LC_NUMERIC="C" version="{MLT_VERSION}" producer="{MAIN_TRACTOR_ID}">',
        "",
        "  <!-- Profile -->",
        *_profile_xml(profile),
        "",
        "  <!-- Producers (Source Media) -->",
    ]
    for producer in producers.values():
        xml.extend(_producer_xml(producer, fps))

    xml += ["", "  <!-- Black/Silence for gaps -->", *_black_producer_xml(total_frames)]

    xml += ["", "  <!-- Video Tracks -->"]
    for track, playlist_id in zip(video_tracks, video_ids):
        xml.extend(_playlist_xml(track, playlist_id, fps))

    xml += ["", "  <!-- Audio Tracks -->"]
    for track, playlist_id in zip(audio_tracks, audio_ids):
        xml.extend(_playlist_xml(track, playlist_id, fps))

    # Earlier video tracks composite beneath later ones
    xml += ["", "  <!-- Main Tractor (Timeline) -->", f'  <tractor id="{MAIN_TRACTOR_ID}">', "    <multitrack>"]
    xml += [f'      <track producer="{playlist_id}"/>' for playlist_id in video_ids]
    xml += [f'      <track producer="{playlist_id}" hide="video"/>' for playlist_id in audio_ids]
    xml += ["    </multitrack>", "  </tractor>", "", "</mlt>"]

    logger.info(
        f"[COMPILE] Timeline {timeline.id}: {len(producers)} producers, "
        f"{len(video_ids)} video / {len(audio_ids)} audio tracks, {total_frames} frames"
    )

    return CompiledProgram(
        xml="\n".join(xml),
        total_frames=total_frames,
        profile=profile,
        producer_count=len(producers),
        playlist_ids=video_ids + audio_ids,
    )


def compile_timeline(timeline: Timeline | dict[str, Any] | str, profile: Optional[Profile] = None) -> str:
    """Compile a timeline into MLT XML text."""
    return compile_program(timeline, profile).xml


def compile_timeline_for_range(
    timeline: Timeline | dict[str, Any] | str,
    start_frame: int,
    end_frame: int,
    profile: Optional[Profile] = None,
) -> str:
    """Compile the program for a frame range.

    The full program is emitted; melt clips to the range via its ``in``/``out``
    arguments at render time.

    Raises:
        InvalidRenderRangeError: Unless ``0 <= start_frame <= end_frame``.
    """
    validate_render_range(start_frame, end_frame)
    return compile_timeline(timeline, profile)


def validate_program_structure(xml_text: str) -> ValidationResult:
    """Structural checks on a compiled program.

    Requires an ``<mlt>`` root with a ``<profile>`` and a ``<tractor>``, and
    every producer referenced by an entry or track to be declared.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        message = f"XML parse error: {e}"
        return ValidationResult(valid=False, error=message, errors=[message])

    errors: list[str] = []
    if root.tag != "mlt":
        errors.append("Missing <mlt> root element")
    if root.find("profile") is None:
        errors.append("Missing <profile> element")
    if root.find("tractor") is None:
        errors.append("Missing <tractor> element")

    declared = {el.get("id") for el in root.iter() if el.tag in ("producer", "playlist", "tractor")}
    for el in root.iter():
        if el.tag not in ("entry", "track"):
            continue
        ref = el.get("producer")
        if ref not in declared:
            errors.append(f"<{el.tag}> references undeclared producer '{ref}'")

    if errors:
        return ValidationResult(valid=False, error=errors[0], errors=errors)
    return ValidationResult(valid=True)
