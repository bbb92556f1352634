"""
Render job orchestration.

``RenderJobOrchestrator`` owns the job registry and drives every job through

    pending -> running -> completed | failed | cancelled

Terminal states are final: any later transition is ignored. A submission
always yields a job that reaches a terminal state; compile, validation and
engine failures are recorded in ``job.progress.error`` instead of raised.

The registry is guarded by a ``threading.Lock`` that is never held across an
``await``. Engine progress for one job is applied in arrival order; frames
lower than the last recorded one are discarded.
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from typing import Any, Callable, Optional
from uuid import uuid4

from meltline.config import Settings, get_settings
from meltline.exceptions import EngineUnavailableError, JobNotFoundError, MeltlineError, ProgramValidationError
from meltline.render.engine_gateway import RenderEngineGateway
from meltline.render.mlt_compiler import (
    compile_program,
    program_frames,
    validate_program_structure,
    validate_render_range,
)
from meltline.schemas.render import EngineInvocationOptions, EngineRunResult, RenderOptions, ResolvedRender
from meltline.schemas.timeline import Timeline, coerce_timeline
from meltline.services.preset_resolver import resolve_preset
from meltline.services.rational_time import round_half_up

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================


class RenderStatus(Enum):
    """Render job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RenderStatus.COMPLETED, RenderStatus.FAILED, RenderStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({RenderStatus.PENDING, RenderStatus.RUNNING})

_TRANSITIONS: dict[RenderStatus, frozenset[RenderStatus]] = {
    RenderStatus.PENDING: frozenset({RenderStatus.RUNNING}),
    RenderStatus.RUNNING: TERMINAL_STATUSES,
}


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class RenderProgress:
    """Progress information for a render job."""

    status: RenderStatus
    current_frame: int = 0
    total_frames: int = 0
    percentage: int = 0
    estimated_remaining: Optional[float] = None  # seconds
    fps: Optional[float] = None
    error: Optional[str] = None
    output_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "current_frame": self.current_frame,
            "total_frames": self.total_frames,
            "percentage": self.percentage,
            "estimated_remaining": self.estimated_remaining,
            "fps": self.fps,
            "error": self.error,
            "output_path": self.output_path,
        }


@dataclass
class RenderJob:
    """Render job information."""

    id: str
    status: RenderStatus
    options: RenderOptions
    progress: RenderProgress
    # Fixed at creation from the timeline duration at the resolved frame rate
    total_frames: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    program: Optional[str] = field(default=None, repr=False)
    timeline: Optional[Timeline] = field(default=None, repr=False)
    resolved: Optional[ResolvedRender] = field(default=None, repr=False)
    validate_program: bool = False
    cancel_requested: bool = False
    # Set once the program has been handed to the engine
    engine_started: bool = False
    setup_error: Optional[MeltlineError] = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "status": self.status.value,
            "options": self.options.model_dump(),
            "progress": self.progress.to_dict(),
            "total_frames": self.total_frames,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


ProgressCallback = Callable[[RenderProgress], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def compute_percentage(current_frame: int, total_frames: int) -> int:
    """Half-up rounded percentage clamped to [0, 100]; 0 when total is unknown."""
    if total_frames <= 0:
        return 0
    percentage = round_half_up(Fraction(current_frame * 100, total_frames))
    return max(0, min(100, percentage))


# ============================================================================
# Orchestrator
# ============================================================================


class RenderJobOrchestrator:
    """Owns render jobs and drives them through the render engine gateway."""

    def __init__(self, gateway: RenderEngineGateway, settings: Optional[Settings] = None):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._jobs: dict[str, RenderJob] = {}
        self._callbacks: dict[str, ProgressCallback] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # Registry
    # ========================================================================

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        """Get a render job by ID."""
        with self._lock:
            return self._jobs.get(job_id)

    def get_active_jobs(self) -> list[RenderJob]:
        """Jobs that are pending or running."""
        with self._lock:
            return [job for job in self._jobs.values() if job.status in ACTIVE_STATUSES]

    def list_jobs(self) -> list[RenderJob]:
        with self._lock:
            return list(self._jobs.values())

    def register_progress_callback(self, job_id: str, callback: ProgressCallback) -> None:
        """Register a callback for progress updates."""
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            self._callbacks[job_id] = callback

    def has_progress_callback(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._callbacks

    # ========================================================================
    # State machine
    # ========================================================================

    def _transition(self, job: RenderJob, status: RenderStatus) -> bool:
        """Move job to status if the transition is legal. Caller holds the lock."""
        if status not in _TRANSITIONS.get(job.status, frozenset()):
            logger.debug(f"[RENDER] Job {job.id}: ignoring {job.status.value} -> {status.value}")
            return False
        job.status = status
        job.progress.status = status
        return True

    def _start(self, job: RenderJob) -> bool:
        with self._lock:
            if not self._transition(job, RenderStatus.RUNNING):
                return False
            job.started_at = _now()
        logger.info(f"[RENDER] Job {job.id} started ({job.total_frames} frames)")
        self._notify(job)
        return True

    def _finish(
        self,
        job: RenderJob,
        status: RenderStatus,
        error: Optional[str] = None,
        output_path: Optional[str] = None,
    ) -> bool:
        with self._lock:
            if not self._transition(job, status):
                return False
            job.completed_at = _now()
            if status == RenderStatus.COMPLETED:
                job.progress.percentage = 100
                job.progress.output_path = output_path
                job.progress.estimated_remaining = 0.0
            elif error:
                job.progress.error = error

        if status == RenderStatus.FAILED:
            logger.error(f"[RENDER] Job {job.id} failed: {error}")
        else:
            logger.info(f"[RENDER] Job {job.id} {status.value}")

        self._notify(job)
        self._schedule_callback_release(job.id)
        self._evict_finished()
        return True

    def _notify(self, job: RenderJob) -> None:
        """Send a snapshot of the job's progress to its callback."""
        with self._lock:
            callback = self._callbacks.get(job.id)
            snapshot = replace(job.progress)
        if callback is None:
            return
        try:
            callback(snapshot)
        except Exception:
            logger.exception(f"[RENDER] Progress callback for job {job.id} raised")

    def _release_callback(self, job_id: str) -> None:
        with self._lock:
            self._callbacks.pop(job_id, None)

    def _schedule_callback_release(self, job_id: str) -> None:
        # Late engine events may still be in flight; keep the callback briefly
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._release_callback(job_id)
            return
        loop.call_later(self.settings.progress_callback_release_s, self._release_callback, job_id)

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs beyond the retention cap."""
        with self._lock:
            finished = [job for job in self._jobs.values() if job.is_terminal]
            excess = len(finished) - self.settings.max_retained_jobs
            if excess <= 0:
                return
            finished.sort(key=lambda j: j.completed_at or datetime.min.replace(tzinfo=timezone.utc))
            for job in finished[:excess]:
                del self._jobs[job.id]
                self._callbacks.pop(job.id, None)
        logger.info(f"[RENDER] Evicted {excess} finished jobs")

    # ========================================================================
    # Submission
    # ========================================================================

    def create_job(
        self,
        timeline: Timeline | dict[str, Any] | str,
        options: RenderOptions,
        on_progress: Optional[ProgressCallback] = None,
        validate: bool = False,
    ) -> RenderJob:
        """Register a pending job.

        Preset resolution and timeline parsing happen here so the job's frame
        total is known up front. Failures are kept on the job and reported
        when it runs, so creation itself does not raise for bad input.
        """
        defaults: dict[str, Any] = {}
        if options.preset is None:
            defaults["preset"] = self.settings.default_preset
        if options.output_path and not os.path.isabs(options.output_path):
            defaults["output_path"] = os.path.join(self.settings.render_output_dir, options.output_path)
        if defaults:
            options = options.model_copy(update=defaults)

        job = RenderJob(
            id=str(uuid4()),
            status=RenderStatus.PENDING,
            options=options,
            progress=RenderProgress(status=RenderStatus.PENDING),
            created_at=_now(),
            validate_program=validate,
        )

        try:
            job.resolved = resolve_preset(options.preset, options)
            job.timeline = coerce_timeline(timeline)
            job.total_frames = program_frames(job.timeline, job.resolved.profile.frame_rate)
        except MeltlineError as e:
            job.setup_error = e
        job.progress.total_frames = job.total_frames

        with self._lock:
            self._jobs[job.id] = job
            if on_progress:
                self._callbacks[job.id] = on_progress

        logger.info(f"[RENDER] Job {job.id} created (preset={options.preset}, output={options.output_path})")
        return job

    async def run_job(self, job_id: str) -> RenderJob:
        """Drive a pending job to a terminal state.

        Raises:
            JobNotFoundError: If job_id is unknown.
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not self._start(job):
            return job

        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            self._finish(job, RenderStatus.CANCELLED)
            raise
        except MeltlineError as e:
            self._finish(job, RenderStatus.FAILED, error=e.message)
            return job
        except Exception as e:
            logger.exception(f"[RENDER] Job {job.id} crashed")
            self._finish(job, RenderStatus.FAILED, error=f"Render failed: {e}")
            return job

        if result.success:
            self._finish(job, RenderStatus.COMPLETED, output_path=result.output_path or job.options.output_path)
        elif job.cancel_requested:
            self._finish(job, RenderStatus.CANCELLED)
        else:
            self._finish(job, RenderStatus.FAILED, error=result.error or "Render failed")
        return job

    async def _execute(self, job: RenderJob) -> EngineRunResult:
        if job.setup_error is not None:
            raise job.setup_error

        options = job.resolved.options
        profile = job.resolved.profile
        if options.start_frame is not None or options.end_frame is not None:
            validate_render_range(options.start_frame or 0, options.end_frame)

        program = compile_program(job.timeline, profile)
        job.program = program.xml

        if job.validate_program:
            structural = validate_program_structure(program.xml)
            if not structural.valid:
                raise ProgramValidationError(f"Program failed validation: {structural.error}")
            engine_check = await self.gateway.validate(program.xml)
            if not engine_check.valid:
                raise ProgramValidationError(f"Render engine rejected program: {engine_check.error}")

        availability = await self.gateway.check_availability()
        if not availability.available:
            raise EngineUnavailableError(availability.error or EngineUnavailableError.message)

        invocation = EngineInvocationOptions(
            video_codec=options.video_codec,
            audio_codec=options.audio_codec,
            video_bitrate=options.video_bitrate,
            audio_bitrate=options.audio_bitrate,
            crf=options.crf,
            width=profile.width,
            height=profile.height,
            frame_rate_num=profile.frame_rate_num,
            frame_rate_den=profile.frame_rate_den,
            start_frame=options.start_frame,
            end_frame=options.end_frame,
            total_frames=job.total_frames,
        )
        with self._lock:
            cancelled = job.cancel_requested
            job.engine_started = not cancelled
        if cancelled:
            logger.info(f"[RENDER] Job {job.id} cancelled before reaching the engine")
            return EngineRunResult(success=False, error="Render cancelled")
        return await self.gateway.invoke(
            program.xml,
            options.output_path,
            invocation,
            job.id,
            on_progress=self.on_engine_progress,
        )

    async def submit(
        self,
        timeline: Timeline | dict[str, Any] | str,
        options: RenderOptions,
        on_progress: Optional[ProgressCallback] = None,
        validate: bool = False,
    ) -> RenderJob:
        """Create a job and run it to completion. Never raises for render failures."""
        job = self.create_job(timeline, options, on_progress=on_progress, validate=validate)
        return await self.run_job(job.id)

    # ========================================================================
    # Engine events
    # ========================================================================

    def on_engine_progress(self, job_id: str, current_frame: int, total_frames: int) -> None:
        """Apply a progress report from the render engine."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != RenderStatus.RUNNING:
                return

            progress = job.progress
            if current_frame < progress.current_frame:
                logger.debug(f"[RENDER] Job {job_id}: stale frame {current_frame} < {progress.current_frame}")
                return

            if total_frames > 0:
                progress.total_frames = total_frames
            progress.current_frame = current_frame
            progress.percentage = compute_percentage(current_frame, progress.total_frames)

            if job.started_at and current_frame > 0:
                elapsed = (_now() - job.started_at).total_seconds()
                if elapsed > 0:
                    ms_per_frame = elapsed * 1000 / current_frame
                    remaining_frames = max(0, progress.total_frames - current_frame)
                    progress.estimated_remaining = remaining_frames * ms_per_frame / 1000
                    progress.fps = current_frame / elapsed

        self._notify(job)

    # ========================================================================
    # Cancellation
    # ========================================================================

    async def cancel(self, job_id: str) -> bool:
        """Cancel a running job.

        A job still compiling or probing the engine is cancelled immediately
        and never reaches the engine. Once the engine is rendering, the engine
        must acknowledge the request.

        Returns False when the job is unknown, not running, or the engine does
        not acknowledge the request.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != RenderStatus.RUNNING:
                return False
            job.cancel_requested = True
            in_engine = job.engine_started

        if not in_engine:
            self._finish(job, RenderStatus.CANCELLED)
            return job.status == RenderStatus.CANCELLED

        try:
            acknowledged = await self.gateway.cancel(job_id)
        except Exception as e:
            logger.error(f"[RENDER] Failed to cancel job {job_id}: {e}")
            acknowledged = False

        if not acknowledged:
            with self._lock:
                job.cancel_requested = False
            return False

        self._finish(job, RenderStatus.CANCELLED)
        return job.status == RenderStatus.CANCELLED

    async def cancel_all(self) -> int:
        """Cancel every running job; returns how many were cancelled."""
        running = [job.id for job in self.get_active_jobs() if job.status == RenderStatus.RUNNING]
        cancelled = 0
        for job_id in running:
            if await self.cancel(job_id):
                cancelled += 1
        return cancelled
