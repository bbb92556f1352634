"""Tests for render job orchestration.

Features:
- Job lifecycle (pending -> running -> terminal)
- Progress percentages, ETA and stale frame handling
- Cancellation and shutdown
- Failures recorded on the job instead of raised
- Retention of finished jobs and progress callbacks
"""

import asyncio
import os
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import FakeGateway, seconds, wait_for_status
from meltline.exceptions import JobNotFoundError
from meltline.render.job_orchestrator import (
    RenderJobOrchestrator,
    RenderProgress,
    RenderStatus,
    _now,
    compute_percentage,
)
from meltline.schemas.render import EngineRunResult, RenderOptions
from meltline.schemas.timeline import EmbeddedReference, create_clip, create_timeline, create_track


def _options(**kwargs) -> RenderOptions:
    kwargs.setdefault("output_path", "/renders/out.mp4")
    return RenderOptions(**kwargs)


class TestComputePercentage:
    @pytest.mark.parametrize(
        "current, total, expected",
        [(0, 90, 0), (9, 90, 10), (45, 90, 50), (90, 90, 100), (1, 200, 1), (1, 3, 33), (120, 90, 100), (10, 0, 0)],
    )
    def test_percentage(self, current, total, expected):
        assert compute_percentage(current, total) == expected


class TestSubmit:
    """Tests for successful submissions."""

    @pytest.mark.asyncio
    async def test_gap_then_clip_end_to_end(self, orchestrator, gateway, gap_then_clip_timeline):
        """Test the job renders 90 frames with the resolved encode settings."""
        job = await orchestrator.submit(gap_then_clip_timeline, _options(preset="high"))

        assert job.status == RenderStatus.COMPLETED
        assert job.total_frames == 90
        assert job.progress.percentage == 100
        assert job.progress.output_path == "/renders/out.mp4"
        assert job.started_at is not None and job.completed_at is not None

        invocation = gateway.invocations[0]
        assert invocation["output_path"] == "/renders/out.mp4"
        options = invocation["options"]
        assert options.total_frames == 90
        assert (options.width, options.height) == (1920, 1080)
        assert options.crf == 18
        assert options.audio_bitrate == "320k"
        assert '<entry producer="producer_source-a" in="0" out="59"/>' in invocation["program"]
        assert job.program == invocation["program"]

    @pytest.mark.asyncio
    async def test_progress_sequence(self, settings, gap_then_clip_timeline):
        """Test callbacks see increasing percentages and completion last."""
        gateway = FakeGateway(progress=[(9, 90), (45, 90), (90, 90)])
        orchestrator = RenderJobOrchestrator(gateway, settings)
        updates: list[RenderProgress] = []

        await orchestrator.submit(gap_then_clip_timeline, _options(), on_progress=updates.append)

        assert [u.percentage for u in updates] == [0, 10, 50, 100, 100]
        assert [u.status for u in updates][:-1] == [RenderStatus.RUNNING] * 4
        assert updates[-1].status == RenderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_callback_receives_snapshots(self, settings, gap_then_clip_timeline):
        """Test later updates do not mutate progress already delivered."""
        gateway = FakeGateway(progress=[(30, 90)])
        orchestrator = RenderJobOrchestrator(gateway, settings)
        updates: list[RenderProgress] = []

        job = await orchestrator.submit(gap_then_clip_timeline, _options(), on_progress=updates.append)

        assert updates[1].current_frame == 30
        assert updates[1].status == RenderStatus.RUNNING
        assert job.progress.status == RenderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_preview_preset_dimensions(self, orchestrator, gateway, gap_then_clip_timeline):
        await orchestrator.submit(gap_then_clip_timeline, _options(preset="preview"))
        options = gateway.invocations[0]["options"]
        assert (options.width, options.height) == (960, 540)
        assert options.crf == 28

    @pytest.mark.asyncio
    async def test_partial_range_is_passed_to_engine(self, orchestrator, gateway, gap_then_clip_timeline):
        await orchestrator.submit(gap_then_clip_timeline, _options(start_frame=30, end_frame=59))
        options = gateway.invocations[0]["options"]
        assert (options.start_frame, options.end_frame) == (30, 59)

    @pytest.mark.asyncio
    async def test_dict_timeline(self, orchestrator, gap_then_clip_dict):
        job = await orchestrator.submit(gap_then_clip_dict, _options())
        assert job.status == RenderStatus.COMPLETED
        assert job.total_frames == 90

    @pytest.mark.asyncio
    async def test_validation_runs_when_requested(self, orchestrator, gateway, gap_then_clip_timeline):
        job = await orchestrator.submit(gap_then_clip_timeline, _options(), validate=True)
        assert job.status == RenderStatus.COMPLETED
        assert gateway.validated == [job.program]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_job(self, orchestrator, gap_then_clip_timeline):
        def explode(progress):
            raise RuntimeError("listener gone")

        job = await orchestrator.submit(gap_then_clip_timeline, _options(), on_progress=explode)
        assert job.status == RenderStatus.COMPLETED


class TestRequestDefaults:
    """Tests for options the caller leaves to configuration."""

    @pytest.mark.asyncio
    async def test_default_preset_from_settings(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway()
        orchestrator = RenderJobOrchestrator(gateway, settings.model_copy(update={"default_preset": "draft"}))

        job = await orchestrator.submit(gap_then_clip_timeline, _options())

        assert job.options.preset == "draft"
        assert gateway.invocations[0]["options"].crf == 23

    @pytest.mark.asyncio
    async def test_explicit_preset_wins(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway()
        orchestrator = RenderJobOrchestrator(gateway, settings.model_copy(update={"default_preset": "draft"}))

        job = await orchestrator.submit(gap_then_clip_timeline, _options(preset="master"))

        assert job.options.preset == "master"
        assert gateway.invocations[0]["options"].crf == 15

    @pytest.mark.asyncio
    async def test_relative_output_under_output_dir(self, orchestrator, gateway, settings, gap_then_clip_timeline):
        """Test a bare file name lands in the configured output directory."""
        job = await orchestrator.submit(gap_then_clip_timeline, _options(output_path="clips/out.mp4"))

        expected = os.path.join(settings.render_output_dir, "clips/out.mp4")
        assert gateway.invocations[0]["output_path"] == expected
        assert job.progress.output_path == expected


class TestFailures:
    """Tests for failures recorded on the job."""

    @pytest.mark.asyncio
    async def test_engine_failure_keeps_last_percentage(self, settings, gap_then_clip_timeline):
        """Test a failure after full progress is still a failure."""
        gateway = FakeGateway(
            progress=[(90, 90)],
            result=EngineRunResult(success=False, error="melt exited with error: muxer"),
        )
        orchestrator = RenderJobOrchestrator(gateway, settings)

        job = await orchestrator.submit(gap_then_clip_timeline, _options())

        assert job.status == RenderStatus.FAILED
        assert job.progress.percentage == 100
        assert job.progress.error == "melt exited with error: muxer"
        assert job.progress.output_path is None

    @pytest.mark.asyncio
    async def test_compile_error(self, orchestrator, gateway):
        """Test compile errors fail the job without invoking the engine."""
        track = create_track("video", 1, [create_clip(EmbeddedReference(), seconds(1))])
        job = await orchestrator.submit(create_timeline(tracks=[track]), _options())

        assert job.status == RenderStatus.FAILED
        assert "Unsupported media reference type 'embedded'" in job.progress.error
        assert job.started_at is not None
        assert gateway.invocations == []

    @pytest.mark.asyncio
    async def test_invalid_timeline_payload(self, orchestrator, gateway):
        job = orchestrator.create_job({"tracks": "nope"}, _options())
        assert job.status == RenderStatus.PENDING
        assert job.setup_error is not None

        await orchestrator.run_job(job.id)
        assert job.status == RenderStatus.FAILED
        assert job.progress.error.startswith("Invalid timeline")
        assert gateway.invocations == []

    @pytest.mark.asyncio
    async def test_invalid_range(self, orchestrator, gateway, gap_then_clip_timeline):
        job = await orchestrator.submit(gap_then_clip_timeline, _options(start_frame=60, end_frame=30))
        assert job.status == RenderStatus.FAILED
        assert gateway.invocations == []

    @pytest.mark.asyncio
    async def test_engine_unavailable(self, settings, gap_then_clip_timeline):
        """Test a missing melt binary fails the job before invocation."""
        gateway = FakeGateway(available=False)
        orchestrator = RenderJobOrchestrator(gateway, settings)

        job = await orchestrator.submit(gap_then_clip_timeline, _options())

        assert job.status == RenderStatus.FAILED
        assert job.progress.error == "melt not found"
        assert gateway.invocations == []

    @pytest.mark.asyncio
    async def test_engine_rejects_program(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway(valid=False)
        orchestrator = RenderJobOrchestrator(gateway, settings)

        job = await orchestrator.submit(gap_then_clip_timeline, _options(), validate=True)

        assert job.status == RenderStatus.FAILED
        assert job.progress.error == "Render engine rejected program: bad program"
        assert gateway.invocations == []

    @pytest.mark.asyncio
    async def test_invoke_raises(self, orchestrator, gateway, gap_then_clip_timeline):
        gateway.invoke_error = RuntimeError("boom")
        job = await orchestrator.submit(gap_then_clip_timeline, _options())
        assert job.status == RenderStatus.FAILED
        assert job.progress.error == "Render failed: boom"

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.run_job("missing")
        with pytest.raises(JobNotFoundError):
            orchestrator.register_progress_callback("missing", lambda p: None)


class TestProgress:
    """Tests for engine progress reports."""

    @pytest.mark.asyncio
    async def test_stale_frames_are_discarded(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway(progress=[(50, 90), (40, 90)], hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)
        await asyncio.sleep(0)

        assert job.progress.current_frame == 50
        assert job.progress.percentage == 56

        gateway.hold.set()
        await task

    @pytest.mark.asyncio
    async def test_eta_and_fps(self, settings, gap_then_clip_timeline):
        """Test remaining time and fps are derived from elapsed time."""
        gateway = FakeGateway(hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)

        job.started_at = _now() - timedelta(seconds=10)
        orchestrator.on_engine_progress(job.id, 30, 90)

        assert job.progress.fps == pytest.approx(3.0, rel=0.05)
        assert job.progress.estimated_remaining == pytest.approx(20.0, rel=0.05)

        gateway.hold.set()
        await task

    @pytest.mark.asyncio
    async def test_engine_total_replaces_estimate(self, settings):
        """Test an empty program reports 0% until the engine reports a total."""
        gateway = FakeGateway(progress=[(10, 0), (10, 40)], hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        updates: list[RenderProgress] = []
        job = orchestrator.create_job(create_timeline(), _options(), on_progress=updates.append)
        assert job.total_frames == 0

        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)
        await asyncio.sleep(0)

        assert updates[1].percentage == 0
        assert updates[2].percentage == 25
        assert job.progress.total_frames == 40
        assert job.total_frames == 0

        gateway.hold.set()
        await task

    @pytest.mark.asyncio
    async def test_events_after_terminal_are_ignored(self, orchestrator, gap_then_clip_timeline):
        job = await orchestrator.submit(gap_then_clip_timeline, _options())

        orchestrator.on_engine_progress(job.id, 10, 90)

        assert job.status == RenderStatus.COMPLETED
        assert job.progress.current_frame == 0
        assert job.progress.percentage == 100

    def test_events_for_unknown_jobs_are_ignored(self, orchestrator):
        orchestrator.on_engine_progress("missing", 10, 90)


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, orchestrator):
        assert await orchestrator.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, orchestrator, gateway, gap_then_clip_timeline):
        """Test a job that has not started cannot be cancelled."""
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        assert await orchestrator.cancel(job.id) is False
        assert job.status == RenderStatus.PENDING
        assert gateway.cancel_requests == []

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway(hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        updates: list[RenderProgress] = []
        job = orchestrator.create_job(gap_then_clip_timeline, _options(), on_progress=updates.append)
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)

        assert await orchestrator.cancel(job.id) is True
        assert job.status == RenderStatus.CANCELLED

        await task
        assert job.status == RenderStatus.CANCELLED
        assert job.progress.error is None
        assert updates[-1].status == RenderStatus.CANCELLED
        assert [u.status for u in updates].count(RenderStatus.CANCELLED) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_engine_starts(self, settings, gap_then_clip_timeline):
        """Test a job cancelled while probing the engine never renders."""
        gateway = FakeGateway()
        probe_done = asyncio.Event()
        check_availability = gateway.check_availability

        async def slow_check():
            await probe_done.wait()
            return await check_availability()

        gateway.check_availability = slow_check
        orchestrator = RenderJobOrchestrator(gateway, settings)
        updates: list[RenderProgress] = []
        job = orchestrator.create_job(gap_then_clip_timeline, _options(), on_progress=updates.append)
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)

        assert await orchestrator.cancel(job.id) is True
        assert job.status == RenderStatus.CANCELLED
        assert gateway.cancel_requests == []

        probe_done.set()
        await task
        assert job.status == RenderStatus.CANCELLED
        assert job.engine_started is False
        assert gateway.invocations == []
        assert [u.status for u in updates].count(RenderStatus.CANCELLED) == 1

    @pytest.mark.asyncio
    async def test_cancel_not_acknowledged(self, settings, gap_then_clip_timeline):
        """Test the job keeps running when the engine refuses to cancel."""
        gateway = FakeGateway(hold=True, cancel_ack=False)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)

        assert await orchestrator.cancel(job.id) is False
        assert job.status == RenderStatus.RUNNING
        assert job.cancel_requested is False

        gateway.hold.set()
        await task
        assert job.status == RenderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_gateway_error(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway(hold=True)
        gateway.cancel = AsyncMock(side_effect=OSError("no such process"))
        orchestrator = RenderJobOrchestrator(gateway, settings)
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)

        assert await orchestrator.cancel(job.id) is False
        assert job.status == RenderStatus.RUNNING

        gateway.hold.set()
        await task

    @pytest.mark.asyncio
    async def test_cancel_completed_job(self, orchestrator, gap_then_clip_timeline):
        job = await orchestrator.submit(gap_then_clip_timeline, _options())
        assert await orchestrator.cancel(job.id) is False
        assert job.status == RenderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_job_cancelled(self, settings, gap_then_clip_timeline):
        gateway = FakeGateway(hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        task = asyncio.create_task(orchestrator.run_job(job.id))
        await wait_for_status(job, RenderStatus.RUNNING)
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert job.status == RenderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_all(self, settings, gap_then_clip_timeline):
        """Test shutdown cancels every running job."""
        gateway = FakeGateway(hold=True)
        orchestrator = RenderJobOrchestrator(gateway, settings)
        jobs = [orchestrator.create_job(gap_then_clip_timeline, _options()) for _ in range(2)]
        tasks = [asyncio.create_task(orchestrator.run_job(job.id)) for job in jobs]
        for job in jobs:
            await wait_for_status(job, RenderStatus.RUNNING)

        assert await orchestrator.cancel_all() == 2

        await asyncio.gather(*tasks)
        assert all(job.status == RenderStatus.CANCELLED for job in jobs)
        assert orchestrator.get_active_jobs() == []


class TestRetention:
    """Tests for finished-job retention."""

    @pytest.mark.asyncio
    async def test_oldest_finished_jobs_are_evicted(self, gateway, settings, gap_then_clip_timeline):
        orchestrator = RenderJobOrchestrator(gateway, settings.model_copy(update={"max_retained_jobs": 2}))

        first = await orchestrator.submit(gap_then_clip_timeline, _options())
        second = await orchestrator.submit(gap_then_clip_timeline, _options())
        third = await orchestrator.submit(gap_then_clip_timeline, _options())

        assert orchestrator.get_job(first.id) is None
        assert orchestrator.get_job(second.id) is second
        assert orchestrator.get_job(third.id) is third

    @pytest.mark.asyncio
    async def test_active_jobs_are_never_evicted(self, gateway, settings, gap_then_clip_timeline):
        orchestrator = RenderJobOrchestrator(gateway, settings.model_copy(update={"max_retained_jobs": 0}))
        pending = orchestrator.create_job(gap_then_clip_timeline, _options())

        finished = await orchestrator.submit(gap_then_clip_timeline, _options())

        assert orchestrator.get_job(finished.id) is None
        assert orchestrator.get_job(pending.id) is pending
        assert orchestrator.get_active_jobs() == [pending]

    @pytest.mark.asyncio
    async def test_callback_released_after_grace_period(self, orchestrator, gap_then_clip_timeline):
        job = await orchestrator.submit(gap_then_clip_timeline, _options(), on_progress=lambda p: None)
        assert orchestrator.has_progress_callback(job.id)

        await asyncio.sleep(0.05)
        assert not orchestrator.has_progress_callback(job.id)

    def test_list_and_serialize(self, orchestrator, gap_then_clip_timeline):
        job = orchestrator.create_job(gap_then_clip_timeline, _options())
        data = job.to_dict()
        assert orchestrator.list_jobs() == [job]
        assert data["status"] == "pending"
        assert data["total_frames"] == 90
        assert data["progress"]["total_frames"] == 90
        assert data["started_at"] is None
