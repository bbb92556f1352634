"""Render preset resolution.

Merges a named quality preset with caller overrides into one concrete
``(Profile, RenderOptions)`` pair. Presets only supply defaults: any field the
caller sets explicitly wins. The resolver is pure and deterministic.
"""

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from meltline.exceptions import InvalidPresetError, MeltlineError
from meltline.schemas.render import Profile, ProfileOverride, RenderOptions, ResolvedRender

logger = logging.getLogger(__name__)


# ============================================
# PROFILES
# ============================================

DEFAULT_PROFILE = Profile(
    description="HD 1080p 30fps",
    width=1920,
    height=1080,
    frame_rate_num=30,
    frame_rate_den=1,
    sample_rate=48000,
    channels=2,
    progressive=True,
)

PREVIEW_PROFILE = Profile(
    description="Preview 540p 30fps",
    width=960,
    height=540,
    frame_rate_num=30,
    frame_rate_den=1,
    sample_rate=48000,
    channels=2,
    progressive=True,
)


# ============================================
# PRESETS
# ============================================

RENDER_PRESETS: dict[str, dict[str, Any]] = {
    "preview": {
        "profile": PREVIEW_PROFILE,
        "video_codec": "libx264",
        "audio_codec": "aac",
        "audio_bitrate": "128k",
        "crf": 28,
    },
    "draft": {
        "profile": DEFAULT_PROFILE,
        "video_codec": "libx264",
        "audio_codec": "aac",
        "audio_bitrate": "192k",
        "crf": 23,
    },
    "high": {
        "profile": DEFAULT_PROFILE,
        "video_codec": "libx264",
        "audio_codec": "aac",
        "audio_bitrate": "320k",
        "crf": 18,
    },
    "master": {
        "profile": DEFAULT_PROFILE,
        "video_codec": "libx264",
        "audio_codec": "aac",
        "audio_bitrate": "320k",
        "crf": 15,
    },
}

_ENCODE_FIELDS = ("video_codec", "audio_codec", "audio_bitrate", "crf")


def get_preset_names() -> list[str]:
    return list(RENDER_PRESETS)


def get_preset_profile(preset: str) -> Profile:
    """Base profile a preset renders at, before any override."""
    if preset not in RENDER_PRESETS:
        raise InvalidPresetError(preset)
    return RENDER_PRESETS[preset]["profile"]


def merge_profile(base: Profile, override: ProfileOverride | Mapping[str, Any] | None) -> Profile:
    """Overlay the set fields of override onto base."""
    if override is None:
        return base
    if isinstance(override, Mapping):
        override = ProfileOverride.model_validate(override)
    changes = override.model_dump(exclude_none=True)
    if not changes:
        return base
    return base.model_copy(update=changes)


def resolve_preset(
    preset: str,
    overrides: RenderOptions | Mapping[str, Any] | None = None,
) -> ResolvedRender:
    """Resolve a preset plus caller overrides into a concrete render.

    Args:
        preset: One of ``preview``, ``draft``, ``high``, ``master``.
        overrides: Either ``RenderOptions`` or a plain mapping of option fields.
            Fields left unset (``None``) take the preset default. A ``profile``
            override is merged field-by-field over the preset's base profile.

    Returns:
        ResolvedRender with every encode option populated.

    Raises:
        InvalidPresetError: If preset is unknown.
        MeltlineError: If overrides do not form valid render options.
    """
    if preset not in RENDER_PRESETS:
        raise InvalidPresetError(preset)
    defaults = RENDER_PRESETS[preset]

    if isinstance(overrides, RenderOptions):
        values = overrides.model_dump(exclude_none=True)
    else:
        values = {k: v for k, v in dict(overrides or {}).items() if v is not None}
    values["preset"] = preset
    values.setdefault("output_path", "")

    for name in _ENCODE_FIELDS:
        values.setdefault(name, defaults[name])

    try:
        profile = merge_profile(defaults["profile"], values.get("profile"))
        options = RenderOptions.model_validate(values)
    except ValidationError as e:
        raise MeltlineError(
            f"Invalid render options: {e.errors()[0]['msg']}",
            code="VALIDATION_ERROR",
            status_code=400,
        ) from e

    logger.debug(
        f"[PRESET] Resolved {preset}: {profile.width}x{profile.height} "
        f"@ {profile.frame_rate_num}/{profile.frame_rate_den}, crf={options.crf}"
    )
    return ResolvedRender(profile=profile, options=options)
