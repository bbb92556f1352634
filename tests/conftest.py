"""
Pytest fixtures for meltline tests.

Timelines are built with the schema helpers; the render engine is replaced by
``FakeGateway`` so no ``melt`` binary is needed.
"""

import asyncio
from typing import Any, Optional

import pytest

from meltline.config import Settings
from meltline.render.engine_gateway import EngineProgressCallback, RenderEngineGateway
from meltline.render.job_orchestrator import RenderJobOrchestrator
from meltline.render.service import set_orchestrator
from meltline.schemas.render import (
    EngineCheckResult,
    EngineInvocationOptions,
    EngineRunResult,
    ValidationResult,
)
from meltline.schemas.timeline import (
    Timeline,
    create_clip,
    create_external_ref,
    create_gap,
    create_timeline,
    create_track,
)
from meltline.services import rational_time as rt


class FakeGateway(RenderEngineGateway):
    """In-memory render engine.

    Replays ``progress`` as (frame, total) reports during ``invoke``. When
    ``hold`` is set, ``invoke`` waits on it before returning so tests can act
    on a running job.
    """

    def __init__(
        self,
        available: bool = True,
        result: Optional[EngineRunResult] = None,
        progress: Optional[list[tuple[int, int]]] = None,
        cancel_ack: bool = True,
        hold: bool = False,
        valid: bool = True,
    ):
        self.available = available
        self.result = result
        self.progress = progress or []
        self.cancel_ack = cancel_ack
        self.valid = valid
        self.hold: Optional[asyncio.Event] = asyncio.Event() if hold else None
        self.invocations: list[dict[str, Any]] = []
        self.cancel_requests: list[str] = []
        self.validated: list[str] = []
        self.invoke_error: Optional[Exception] = None

    async def check_availability(self) -> EngineCheckResult:
        if not self.available:
            return EngineCheckResult(available=False, error="melt not found")
        return EngineCheckResult(available=True, version="melt 7.22.0", path="/usr/bin/melt")

    async def invoke(
        self,
        program: str,
        output_path: str,
        options: EngineInvocationOptions,
        job_id: str,
        on_progress: Optional[EngineProgressCallback] = None,
    ) -> EngineRunResult:
        self.invocations.append(
            {"program": program, "output_path": output_path, "options": options, "job_id": job_id}
        )
        if self.invoke_error:
            raise self.invoke_error
        for frame, total in self.progress:
            if on_progress:
                on_progress(job_id, frame, total)
        if self.hold is not None:
            await self.hold.wait()
        if job_id in self.cancel_requests and self.cancel_ack:
            return EngineRunResult(success=False, error="Render cancelled")
        return self.result or EngineRunResult(success=True, output_path=output_path)

    async def cancel(self, job_id: str) -> bool:
        self.cancel_requests.append(job_id)
        if self.cancel_ack and self.hold is not None:
            self.hold.set()
        return self.cancel_ack

    async def validate(self, program: str) -> ValidationResult:
        self.validated.append(program)
        if self.valid:
            return ValidationResult(valid=True)
        return ValidationResult(valid=False, error="bad program", errors=["bad program"])


async def wait_for_status(job, status, attempts: int = 100) -> None:
    """Yield to the event loop until job reaches status."""
    for _ in range(attempts):
        if job.status == status:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"Job stayed {job.status.value}, expected {status.value}")


def seconds(value, rate: Any = 30) -> rt.RationalTime:
    return rt.from_seconds(value, rate)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        render_temp_dir=str(tmp_path / "mlt"),
        render_output_dir=str(tmp_path / "renders"),
        progress_callback_release_s=0.01,
        max_retained_jobs=200,
        melt_cancel_grace_s=0.01,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orchestrator(gateway, settings) -> RenderJobOrchestrator:
    return RenderJobOrchestrator(gateway, settings)


@pytest.fixture
def installed_orchestrator(orchestrator):
    """Install the orchestrator as the process-wide one for the test."""
    set_orchestrator(orchestrator)
    yield orchestrator
    set_orchestrator(None)


@pytest.fixture
def gap_then_clip_timeline() -> Timeline:
    """One video track: 1s gap then 2s of source A, at 30 fps."""
    source_a = create_external_ref("source-a", "file:///media/a.mp4", available_duration=seconds(10))
    track = create_track("video", 1, [create_gap(seconds(1)), create_clip(source_a, seconds(2), name="A")])
    return create_timeline("Gap then clip", tracks=[track])


@pytest.fixture
def gap_then_clip_dict() -> dict[str, Any]:
    """The gap-then-clip timeline as editor JSON (camelCase keys)."""
    return {
        "id": "timeline-1",
        "name": "Gap then clip",
        "metadata": {"settings": {"frameRate": 30}},
        "tracks": {
            "type": "stack",
            "children": [
                {
                    "type": "track",
                    "kind": "video",
                    "children": [
                        {
                            "type": "gap",
                            "sourceRange": {
                                "startTime": {"value": 0, "rate": 30},
                                "duration": {"value": 30, "rate": 30},
                            },
                        },
                        {
                            "type": "clip",
                            "name": "A",
                            "sourceRange": {
                                "startTime": {"value": 0, "rate": 30},
                                "duration": {"value": 60, "rate": 30},
                            },
                            "mediaReference": {
                                "type": "external",
                                "id": "source-a",
                                "targetUrl": "/media/a.mp4",
                            },
                        },
                    ],
                }
            ],
        },
    }


@pytest.fixture
def multi_track_timeline() -> Timeline:
    """Two video tracks and one audio track sharing two sources."""
    video_a = create_external_ref("video-a", "/media/a.mp4", available_duration=seconds(20))
    video_b = create_external_ref("video-b", "/media/b.mov")
    music = create_external_ref("music", "/media/music.wav", available_duration=seconds(60))

    v1 = create_track("video", 1, [
        create_clip(video_a, seconds(2)),
        create_clip(video_b, seconds(1)),
        create_clip(video_a, seconds(3), start_time=seconds(5)),
    ])
    v2 = create_track("video", 2, [create_gap(seconds(1)), create_clip(video_b, seconds(2))])
    a1 = create_track("audio", 1, [create_clip(music, seconds(6))])
    return create_timeline("Multi track", tracks=[v1, a1, v2])
