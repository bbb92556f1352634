"""
Public render API.

Thin module-level functions over one process-wide ``RenderJobOrchestrator``
backed by ``MeltGateway``. Tests and embedders can swap the orchestrator with
``set_orchestrator``.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from meltline.config import get_settings
from meltline.exceptions import InvalidPresetError
from meltline.render.engine_gateway import MeltGateway
from meltline.render.job_orchestrator import ProgressCallback, RenderJob, RenderJobOrchestrator
from meltline.render.mlt_compiler import validate_program_structure
from meltline.schemas.render import EngineCheckResult, RenderOptions, ValidationResult
from meltline.schemas.timeline import Timeline

logger = logging.getLogger(__name__)

EXPORT_PRESETS = ("draft", "high", "master")

_orchestrator: Optional[RenderJobOrchestrator] = None
_orchestrator_lock = threading.Lock()

TimelineInput = Timeline | dict[str, Any] | str


def get_orchestrator() -> RenderJobOrchestrator:
    """Process-wide orchestrator, created on first use."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            settings = get_settings()
            _orchestrator = RenderJobOrchestrator(MeltGateway(settings), settings)
        return _orchestrator


def set_orchestrator(orchestrator: Optional[RenderJobOrchestrator]) -> None:
    """Replace the process-wide orchestrator (``None`` resets it)."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = orchestrator


# ============================================================================
# Rendering
# ============================================================================


async def submit_render(
    timeline: TimelineInput,
    options: RenderOptions,
    on_progress: Optional[ProgressCallback] = None,
    validate: bool = False,
) -> RenderJob:
    """Render a timeline to a video file."""
    return await get_orchestrator().submit(timeline, options, on_progress=on_progress, validate=validate)


async def submit_preview_render(
    timeline: TimelineInput,
    output_path: str,
    on_progress: Optional[ProgressCallback] = None,
) -> RenderJob:
    """Render a fast, low-resolution preview."""
    options = RenderOptions(output_path=output_path, preset="preview")
    return await submit_render(timeline, options, on_progress=on_progress)


async def submit_export_render(
    timeline: TimelineInput,
    output_path: str,
    preset: str = "high",
    on_progress: Optional[ProgressCallback] = None,
) -> RenderJob:
    """Render a final export.

    Raises:
        InvalidPresetError: If preset is not draft, high or master.
    """
    if preset not in EXPORT_PRESETS:
        raise InvalidPresetError(preset)
    options = RenderOptions(output_path=output_path, preset=preset)
    return await submit_render(timeline, options, on_progress=on_progress)


# ============================================================================
# Job management
# ============================================================================


def get_job(job_id: str) -> Optional[RenderJob]:
    return get_orchestrator().get_job(job_id)


def get_active_jobs() -> list[RenderJob]:
    return get_orchestrator().get_active_jobs()


async def cancel_job(job_id: str) -> bool:
    """Cancel a running job; False if unknown or not running."""
    return await get_orchestrator().cancel(job_id)


# ============================================================================
# Engine
# ============================================================================


async def check_engine() -> EngineCheckResult:
    """Check whether melt is available, without raising."""
    try:
        return await get_orchestrator().gateway.check_availability()
    except Exception as e:
        logger.error(f"[MELT] Availability check failed: {e}")
        return EngineCheckResult(available=False, error=f"Failed to check melt: {e}")


async def get_engine_version() -> Optional[str]:
    result = await check_engine()
    return result.version


async def validate_program(program: str, use_engine: bool = True) -> ValidationResult:
    """Validate a compiled program structurally and, optionally, with melt."""
    structural = validate_program_structure(program)
    if not structural.valid or not use_engine:
        return structural
    try:
        return await get_orchestrator().gateway.validate(program)
    except Exception as e:
        message = f"Validation failed: {e}"
        return ValidationResult(valid=False, error=message, errors=[message])


# ============================================================================
# Helpers
# ============================================================================


def generate_output_path(base_name: str, preset: str) -> str:
    """Output file name from base name, preset and an ISO timestamp.

    A relative base name is placed under ``render_output_dir``.

    Collision resistant to the millisecond, not unique under concurrent
    identical calls.
    """
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    timestamp = timestamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
    if not os.path.isabs(base_name):
        base_name = os.path.join(get_settings().render_output_dir, base_name)
    return f"{base_name}_{preset}_{timestamp}.mp4"
