"""Frame-accurate time utilities.

All time values are stored as integer frame counts at a rational frame rate
(``fractions.Fraction``), so conversions never accumulate floating-point
error across a timeline.
"""

import math
import re
from fractions import Fraction
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer, WithJsonSchema
from pydantic.alias_generators import to_camel

DEFAULT_RATE = Fraction(30)

_HALF = Fraction(1, 2)
_NTSC_TOLERANCE = 1e-3


# ============================================
# RATES
# ============================================


def _exact(value: Any) -> Fraction:
    """Convert a number to a Fraction without binary float artifacts."""
    if isinstance(value, Fraction):
        return value
    if isinstance(value, int):
        return Fraction(value)
    return Fraction(str(value))


def to_rate(value: Any) -> Fraction:
    """Coerce a frame rate to a positive Fraction.

    Accepts ints, floats, Fractions and strings (``"30"``, ``"29.97"``,
    ``"30000/1001"``). Decimal NTSC rates such as 29.97 and 23.976 map to
    their exact ``N*1000/1001`` form.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid frame rate: {value!r}")
    if isinstance(value, Fraction):
        rate = value
    elif isinstance(value, int):
        rate = Fraction(value)
    elif isinstance(value, (float, str)):
        text = str(value).strip()
        if "/" in text:
            rate = Fraction(text)
        else:
            number = float(text)
            nominal = round(number * 1.001)
            if not number.is_integer() and nominal and abs(number * 1.001 - nominal) < _NTSC_TOLERANCE:
                rate = Fraction(nominal * 1000, 1001)
            else:
                rate = Fraction(text).limit_denominator(1001)
    else:
        raise ValueError(f"Invalid frame rate: {value!r}")

    if rate <= 0:
        raise ValueError(f"Frame rate must be positive, got {value!r}")
    return rate


def _rate_to_json(rate: Fraction) -> int | str:
    if rate.denominator == 1:
        return rate.numerator
    return f"{rate.numerator}/{rate.denominator}"


FrameRate = Annotated[
    Fraction,
    BeforeValidator(to_rate),
    PlainSerializer(_rate_to_json),
    WithJsonSchema({"anyOf": [{"type": "number"}, {"type": "string"}]}),
]


# ============================================
# TYPES
# ============================================


class RationalTime(BaseModel):
    """A frame count at a rational frame rate."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: int
    rate: FrameRate = DEFAULT_RATE


class TimeRange(BaseModel):
    """A span of time with start and duration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    start_time: RationalTime
    duration: RationalTime


def round_half_up(value: Fraction) -> int:
    """Round to the nearest integer, halves away from minus infinity."""
    return math.floor(value + _HALF)


# ============================================
# CREATION
# ============================================


def from_frames(frames: int | float, rate: Any = DEFAULT_RATE) -> RationalTime:
    """Create a RationalTime from a frame count."""
    return RationalTime(value=round_half_up(_exact(frames)), rate=to_rate(rate))


def from_seconds(seconds: int | float | Fraction, rate: Any = DEFAULT_RATE) -> RationalTime:
    """Create a RationalTime from seconds."""
    fps = to_rate(rate)
    return RationalTime(value=round_half_up(_exact(seconds) * fps), rate=fps)


def zero(rate: Any = DEFAULT_RATE) -> RationalTime:
    return RationalTime(value=0, rate=to_rate(rate))


def range_from_seconds(start_seconds: float, duration_seconds: float, rate: Any = DEFAULT_RATE) -> TimeRange:
    """Create a TimeRange from start and duration in seconds."""
    return TimeRange(
        start_time=from_seconds(start_seconds, rate),
        duration=from_seconds(duration_seconds, rate),
    )


# ============================================
# CONVERSION
# ============================================


def to_seconds(rt: RationalTime) -> Fraction:
    """Exact seconds of a RationalTime."""
    return Fraction(rt.value) / rt.rate


def to_frames(rt: RationalTime, rate: Any = None) -> int:
    """Exact frame count, optionally at a different rate.

    At the native rate this is the stored value. At another rate the value is
    rescaled exactly and rounded once.
    """
    if rate is None:
        return rt.value
    target = to_rate(rate)
    if target == rt.rate:
        return rt.value
    return round_half_up(to_seconds(rt) * target)


def rescale(rt: RationalTime, new_rate: Any) -> RationalTime:
    """Rescale a RationalTime to a different frame rate."""
    target = to_rate(new_rate)
    if target == rt.rate:
        return rt
    return RationalTime(value=to_frames(rt, target), rate=target)


def range_end_time(time_range: TimeRange) -> RationalTime:
    """End time of a range (start + duration) at the start's rate."""
    return add(time_range.start_time, time_range.duration)


# ============================================
# ARITHMETIC
# ============================================


def add(a: RationalTime, b: RationalTime) -> RationalTime:
    """Add two RationalTimes, normalized to the first operand's rate."""
    return RationalTime(value=a.value + to_frames(b, a.rate), rate=a.rate)


def subtract(a: RationalTime, b: RationalTime) -> RationalTime:
    """Subtract b from a, normalized to the first operand's rate."""
    return RationalTime(value=a.value - to_frames(b, a.rate), rate=a.rate)


# ============================================
# COMPARISON
# ============================================


def compare(a: RationalTime, b: RationalTime) -> int:
    """Return -1, 0 or 1 comparing a to b by exact time."""
    sa, sb = to_seconds(a), to_seconds(b)
    if sa < sb:
        return -1
    if sa > sb:
        return 1
    return 0


def is_time_in_range(time: RationalTime, time_range: TimeRange) -> bool:
    """Whether time falls in [start, end)."""
    end = range_end_time(time_range)
    return compare(time, time_range.start_time) >= 0 and compare(time, end) < 0


def ranges_overlap(a: TimeRange, b: TimeRange) -> bool:
    return compare(a.start_time, range_end_time(b)) < 0 and compare(b.start_time, range_end_time(a)) < 0


def range_intersection(a: TimeRange, b: TimeRange) -> TimeRange | None:
    """Intersection of two ranges, or None if they do not overlap."""
    if not ranges_overlap(a, b):
        return None
    start = a.start_time if compare(a.start_time, b.start_time) >= 0 else b.start_time
    a_end, b_end = range_end_time(a), range_end_time(b)
    end = a_end if compare(a_end, b_end) <= 0 else b_end
    return TimeRange(start_time=start, duration=subtract(end, start))


# ============================================
# FORMATTING
# ============================================


def frames_to_timecode(frames: int, rate: Any) -> str:
    """Convert a frame count to an MLT clock string ``HH:MM:SS.mmm``.

    The total is rounded to whole milliseconds once and then decomposed, so a
    value that rounds up to 1000 ms carries into seconds (and onwards).

    Raises:
        ValueError: If rate is not positive or frames is negative.
    """
    fps = to_rate(rate)
    if frames < 0:
        raise ValueError(f"Frame count must not be negative, got {frames}")

    total_ms = round_half_up(_exact(frames) * 1000 / fps)
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def to_timecode(rt: RationalTime, show_frames: bool = False) -> str:
    """Format as ``HH:MM:SS.mmm`` or, with show_frames, ``HH:MM:SS:FF``."""
    if not show_frames:
        return frames_to_timecode(rt.value, rt.rate)

    whole_seconds = math.floor(to_seconds(rt))
    frame_in_second = rt.value - round_half_up(whole_seconds * rt.rate)
    hours, remainder = divmod(whole_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}:{frame_in_second:02d}"


_FRAMES_TC = re.compile(r"^(\d+):(\d+):(\d+):(\d+)$")
_CLOCK_TC = re.compile(r"^(\d+):(\d+):(\d+)\.(\d+)$")


def from_timecode(tc: str, rate: Any = DEFAULT_RATE) -> RationalTime:
    """Parse ``HH:MM:SS:FF``, ``HH:MM:SS.mmm``, ``SS.mmm`` or ``SS``."""
    fps = to_rate(rate)
    text = tc.strip()

    match = _FRAMES_TC.match(text)
    if match:
        h, m, s, f = (int(g) for g in match.groups())
        return RationalTime(value=round_half_up((h * 3600 + m * 60 + s) * fps) + f, rate=fps)

    match = _CLOCK_TC.match(text)
    if match:
        h, m, s = (int(g) for g in match.groups()[:3])
        fraction = Fraction(int(match.group(4)), 10 ** len(match.group(4)))
        return from_seconds(h * 3600 + m * 60 + s + fraction, fps)

    try:
        return from_seconds(Fraction(text), fps)
    except ValueError:
        raise ValueError(f"Invalid timecode format: {tc}") from None


def to_human_duration(rt: RationalTime) -> str:
    """Format as a short duration such as ``"45s"``, ``"1m 30s"`` or ``"2h 5m"``."""
    total_seconds = round_half_up(to_seconds(rt))
    if total_seconds < 60:
        return f"{total_seconds}s"

    minutes, seconds = divmod(total_seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s" if seconds else f"{minutes}m"

    hours, mins = divmod(minutes, 60)
    parts = [f"{hours}h"]
    if mins:
        parts.append(f"{mins}m")
    if seconds:
        parts.append(f"{seconds}s")
    return " ".join(parts)
