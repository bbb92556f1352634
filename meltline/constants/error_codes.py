"""Error codes dictionary for the render API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import Any, TypedDict


class SuggestedActionSpec(TypedDict, total=False):
    """Specification for suggested recovery action."""

    action: str
    endpoint: str
    parameters: dict[str, Any]


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_action: str
    suggested_endpoint: str
    suggested_fix: str
    parameters: dict[str, Any]


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Compile errors (not retryable, fix the timeline)
    # ==========================================================================
    "COMPILE_ERROR": {
        "retryable": False,
        "suggested_action": "validate_timeline",
        "suggested_endpoint": "POST /api/compile",
    },
    "INVALID_TIMELINE": {
        "retryable": False,
        "suggested_fix": "Send an OTIO-style timeline with id, tracks and children",
    },
    "NEGATIVE_DURATION": {
        "retryable": False,
        "suggested_fix": "Trim or remove the item so its duration is zero or more",
    },
    "UNSUPPORTED_MEDIA_REFERENCE": {
        "retryable": False,
        "suggested_fix": "Replace the reference with an external, missing or generator reference",
    },
    "PRODUCER_COLLISION": {
        "retryable": False,
        "suggested_fix": "Give each distinct media source a unique media reference id",
    },
    # ==========================================================================
    # Request errors
    # ==========================================================================
    "INVALID_PRESET": {
        "retryable": False,
        "suggested_fix": "Use one of: preview, draft, high, master",
    },
    "INVALID_RENDER_RANGE": {
        "retryable": False,
    },
    "PROGRAM_VALIDATION_FAILED": {
        "retryable": False,
    },
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_action": "list_jobs",
        "suggested_endpoint": "GET /api/renders",
    },
    # ==========================================================================
    # Engine errors
    # ==========================================================================
    "ENGINE_UNAVAILABLE": {
        "retryable": True,
        "suggested_action": "check_engine",
        "suggested_endpoint": "GET /api/engine",
        "suggested_fix": "Install melt (e.g. sudo apt install melt) or set MELT_PATH",
    },
    "ENGINE_INVOCATION_FAILED": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    # ==========================================================================
    # System errors (retryable with backoff)
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    "BAD_REQUEST": {
        "retryable": False,
    },
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "NOT_FOUND": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})
