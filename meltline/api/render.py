"""Render API endpoints: compile timelines and run melt render jobs."""

import logging

from fastapi import APIRouter, BackgroundTasks, status

from meltline.api.deps import Orchestrator
from meltline.api.websocket import progress_notifier
from meltline.config import get_settings
from meltline.exceptions import JobNotFoundError
from meltline.render.job_orchestrator import RenderJob
from meltline.render.mlt_compiler import compile_program
from meltline.schemas.render import (
    CompileRequest,
    CompileResponse,
    EngineCheckResult,
    RenderJobResponse,
    RenderRequest,
)
from meltline.services.preset_resolver import resolve_preset
from meltline.services.rational_time import frames_to_timecode

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(job: RenderJob) -> RenderJobResponse:
    return RenderJobResponse.model_validate(job.to_dict())


@router.get("/engine", response_model=EngineCheckResult)
async def get_engine_status(orchestrator: Orchestrator) -> EngineCheckResult:
    """Report whether melt is installed and which version."""
    return await orchestrator.gateway.check_availability()


@router.post("/compile", response_model=CompileResponse)
async def compile_timeline(request: CompileRequest) -> CompileResponse:
    """
    Compile a timeline to MLT XML without rendering it.

    Compile errors are returned as 422 error envelopes.
    """
    overrides = {"profile": request.profile} if request.profile else {}
    preset = request.preset or get_settings().default_preset
    profile = resolve_preset(preset, overrides).profile
    program = compile_program(request.timeline, profile)

    return CompileResponse(
        xml=program.xml,
        total_frames=program.total_frames,
        duration_timecode=frames_to_timecode(program.total_frames, profile.frame_rate),
        producer_count=program.producer_count,
        playlist_ids=program.playlist_ids,
        profile=profile,
    )


@router.post(
    "/renders",
    response_model=RenderJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_render(
    render_request: RenderRequest,
    orchestrator: Orchestrator,
    background_tasks: BackgroundTasks,
) -> RenderJobResponse:
    """
    Start a render job.

    The job is registered as pending and rendered in the background; poll
    ``GET /renders/{job_id}`` or connect to ``/ws/renders/{job_id}`` for progress.
    """
    job = orchestrator.create_job(
        render_request.timeline,
        render_request.options,
        validate=render_request.validate_program,
    )
    orchestrator.register_progress_callback(job.id, progress_notifier.forwarder(job.id))
    background_tasks.add_task(orchestrator.run_job, job.id)

    logger.info(f"[RENDER] Queued job {job.id} -> {render_request.options.output_path}")
    return _to_response(job)


@router.get("/renders", response_model=list[RenderJobResponse])
async def list_active_renders(orchestrator: Orchestrator) -> list[RenderJobResponse]:
    """List pending and running render jobs."""
    return [_to_response(job) for job in orchestrator.get_active_jobs()]


@router.get("/renders/{job_id}", response_model=RenderJobResponse)
async def get_render(job_id: str, orchestrator: Orchestrator) -> RenderJobResponse:
    job = orchestrator.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return _to_response(job)


@router.post("/renders/{job_id}/cancel")
async def cancel_render(job_id: str, orchestrator: Orchestrator) -> dict[str, object]:
    """Cancel a running render. ``cancelled`` is false if it was not running."""
    job = orchestrator.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    cancelled = await orchestrator.cancel(job_id)
    return {"job_id": job_id, "cancelled": cancelled, "status": job.status.value}
