"""Custom exceptions for the meltline render core.

These exceptions carry machine-readable error codes and suggested recovery
actions, so the HTTP layer can turn any of them into an error envelope.
"""

from typing import Any

from meltline.constants.error_codes import get_error_spec
from meltline.schemas.envelope import ErrorInfo, ErrorLocation, SuggestedAction


class MeltlineError(Exception):
    """Base exception for all meltline application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        retryable = spec.get("retryable", False)

        suggested_actions: list[SuggestedAction] = []
        if "suggested_action" in spec:
            action = SuggestedAction(
                action=spec["suggested_action"],
                endpoint=spec.get("suggested_endpoint"),
                parameters=spec.get("parameters", {}),
            )
            suggested_actions.append(action)

        # Use suggested_fix from spec, or explicit override from exception
        suggested_fix = self.suggested_fix or spec.get("suggested_fix")

        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=retryable,
            suggested_fix=suggested_fix,
            suggested_actions=suggested_actions,
        )


# =============================================================================
# Compile Errors (422)
# =============================================================================


class CompileError(MeltlineError):
    """Timeline cannot be compiled into an MLT program."""

    code = "COMPILE_ERROR"
    status_code = 422
    message = "Timeline could not be compiled"


class InvalidTimelineError(CompileError):
    """Timeline payload does not match the timeline schema."""

    code = "INVALID_TIMELINE"
    message = "Invalid timeline"


class NegativeDurationError(CompileError):
    """A track item has a negative duration or start time."""

    code = "NEGATIVE_DURATION"
    message = "Negative duration in timeline"

    def __init__(
        self,
        item_id: str | None = None,
        track_id: str | None = None,
        *,
        field: str = "duration",
        value: int | None = None,
    ):
        message = self.message
        if item_id:
            message = f"Item {item_id} has negative {field}"
            if value is not None:
                message += f" ({value} frames)"
        location = ErrorLocation(item_id=item_id, track_id=track_id, field=field)
        super().__init__(message, location=location)


class UnsupportedMediaReferenceError(CompileError):
    """Clip uses a media reference variant the compiler does not recognize."""

    code = "UNSUPPORTED_MEDIA_REFERENCE"
    message = "Unsupported media reference"

    def __init__(self, reference_type: str | None = None, item_id: str | None = None):
        message = self.message
        if reference_type:
            message = f"Unsupported media reference type '{reference_type}'"
            if item_id:
                message += f" on clip {item_id}"
        location = ErrorLocation(item_id=item_id) if item_id else None
        super().__init__(message, location=location)


class ProducerCollisionError(CompileError):
    """Two distinct media sources map to the same producer id."""

    code = "PRODUCER_COLLISION"
    message = "Producer id collision"

    def __init__(
        self,
        producer_id: str | None = None,
        first_url: str | None = None,
        second_url: str | None = None,
        item_id: str | None = None,
    ):
        message = self.message
        if producer_id:
            message = f"Producer id '{producer_id}' refers to both '{first_url}' and '{second_url}'"
        location = ErrorLocation(item_id=item_id) if item_id else None
        super().__init__(message, location=location)


# =============================================================================
# Request Errors (400/404/422)
# =============================================================================


class InvalidPresetError(MeltlineError):
    """Unknown render preset."""

    code = "INVALID_PRESET"
    status_code = 400
    message = "Invalid render preset"

    def __init__(self, preset: Any = None):
        message = f"Unknown render preset: {preset}" if preset is not None else self.message
        location = ErrorLocation(field="preset")
        super().__init__(message, location=location)


class InvalidRenderRangeError(MeltlineError):
    """Requested start/end frames do not form a valid range."""

    code = "INVALID_RENDER_RANGE"
    status_code = 400
    message = "Invalid render range"

    def __init__(self, start_frame: int | None = None, end_frame: int | None = None):
        message = self.message
        if start_frame is not None and end_frame is not None:
            message = f"Invalid render range: frame {start_frame} to {end_frame}"
        super().__init__(message, location=ErrorLocation(field="start_frame"))


class ProgramValidationError(MeltlineError):
    """Compiled program failed structural or engine validation."""

    code = "PROGRAM_VALIDATION_FAILED"
    status_code = 422
    message = "MLT program failed validation"


class JobNotFoundError(MeltlineError):
    """Render job not found."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Render job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Render job not found: {job_id}" if job_id else self.message
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(message, location=location)


# =============================================================================
# Engine Errors (502/503)
# =============================================================================


class EngineUnavailableError(MeltlineError):
    """The melt render engine is not installed or cannot be started."""

    code = "ENGINE_UNAVAILABLE"
    status_code = 503
    message = "Render engine is not available"


class EngineInvocationError(MeltlineError):
    """The render engine process failed."""

    code = "ENGINE_INVOCATION_FAILED"
    status_code = 502
    message = "Render engine failed"
