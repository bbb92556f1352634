"""
Render engine gateway.

The orchestrator talks to the external render engine only through
``RenderEngineGateway``. ``MeltGateway`` is the production implementation:
it writes the compiled program to a temp ``.mlt`` file, runs ``melt`` with an
avformat consumer and forwards ``-progress`` output as frame updates.
"""

import asyncio
import logging
import os
import re
import shutil
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

from meltline.config import Settings, get_settings
from meltline.exceptions import EngineInvocationError, EngineUnavailableError
from meltline.schemas.render import (
    EngineCheckResult,
    EngineInvocationOptions,
    EngineRunResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# (job_id, current_frame, total_frames)
EngineProgressCallback = Callable[[str, int, int], None]

PROGRESS_PATTERN = re.compile(r"Current Frame:\s*(\d+),\s*percentage:\s*(\d+)")
# Stderr lines kept for the error message of a failed render
STDERR_TAIL_LINES = 40


class RenderEngineGateway(ABC):
    """Narrow async boundary to an external render engine."""

    @abstractmethod
    async def check_availability(self) -> EngineCheckResult:
        """Report whether the engine can be started, with version and path."""

    @abstractmethod
    async def invoke(
        self,
        program: str,
        output_path: str,
        options: EngineInvocationOptions,
        job_id: str,
        on_progress: Optional[EngineProgressCallback] = None,
    ) -> EngineRunResult:
        """Render program to output_path, reporting frames via on_progress."""

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Request cancellation; True once the engine acknowledged it."""

    @abstractmethod
    async def validate(self, program: str) -> ValidationResult:
        """Ask the engine whether it can load program."""


class MeltGateway(RenderEngineGateway):
    """Runs the MLT ``melt`` command line as a subprocess."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._melt_path: Optional[str] = None
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: set[str] = set()
        # Jobs inside invoke whose melt process is not spawned yet
        self._starting: set[str] = set()

    # ========================================================================
    # Discovery
    # ========================================================================

    async def _probe(self, candidate: str) -> Optional[EngineCheckResult]:
        resolved = shutil.which(candidate)
        if not resolved:
            return None
        try:
            proc = await asyncio.create_subprocess_exec(
                resolved,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.debug(f"[MELT] Probe of {resolved} failed: {e}")
            return None
        if proc.returncode != 0:
            return None

        output = (stdout or stderr).decode("utf-8", errors="replace").strip()
        version = output.splitlines()[0] if output else None
        return EngineCheckResult(available=True, version=version, path=resolved)

    async def check_availability(self) -> EngineCheckResult:
        candidates = [self.settings.melt_path, *self.settings.melt_search_paths, "melt"]
        for candidate in dict.fromkeys(candidates):
            result = await self._probe(candidate)
            if result:
                self._melt_path = result.path
                logger.info(f"[MELT] Found melt at {result.path} ({result.version})")
                return result

        logger.warning("[MELT] melt not found")
        return EngineCheckResult(
            available=False,
            error="melt not found. Install with: sudo apt install melt",
        )

    async def _require_melt(self) -> str:
        if self._melt_path:
            return self._melt_path
        result = await self.check_availability()
        if not result.available or not result.path:
            raise EngineUnavailableError(result.error)
        return result.path

    # ========================================================================
    # Temp files
    # ========================================================================

    def get_temp_dir(self) -> str:
        """Directory holding program files, created on demand."""
        os.makedirs(self.settings.render_temp_dir, exist_ok=True)
        return self.settings.render_temp_dir

    def cleanup_temp_files(self) -> int:
        """Remove program files left behind by finished renders."""
        temp_dir = Path(self.get_temp_dir())
        in_use = {f"{job_id}.mlt" for job_id in self._processes}
        removed = 0
        for path in temp_dir.iterdir():
            if path.is_file() and path.name not in in_use:
                path.unlink(missing_ok=True)
                removed += 1
        logger.info(f"[MELT] Removed {removed} temp files from {temp_dir}")
        return removed

    def _write_program(self, program: str, name: str) -> Path:
        path = Path(self.get_temp_dir()) / f"{name}.mlt"
        path.write_text(program, encoding="utf-8")
        return path

    # ========================================================================
    # Rendering
    # ========================================================================

    def build_command(
        self,
        melt_path: str,
        program_path: str,
        output_path: str,
        options: EngineInvocationOptions,
    ) -> list[str]:
        """Build the melt argument list for one render."""
        cmd = [melt_path, program_path]
        if options.start_frame is not None:
            cmd.append(f"in={options.start_frame}")
        if options.end_frame is not None:
            cmd.append(f"out={options.end_frame}")

        cmd += [
            "-consumer", f"avformat:{output_path}",
            f"vcodec={options.video_codec}",
            f"acodec={options.audio_codec}",
            f"ab={options.audio_bitrate}",
        ]
        if options.video_bitrate:
            cmd.append(f"vb={options.video_bitrate}")
        cmd += [
            f"crf={options.crf}",
            f"width={options.width}",
            f"height={options.height}",
            f"frame_rate_num={options.frame_rate_num}",
            f"frame_rate_den={options.frame_rate_den}",
            f"preset={self.settings.melt_x264_preset}",
            "-progress",
        ]
        return cmd

    @staticmethod
    def expected_frames(options: EngineInvocationOptions) -> int:
        """Frames melt will produce, honouring an in/out range."""
        start = options.start_frame or 0
        end = options.end_frame if options.end_frame is not None else options.total_frames - 1
        return max(0, min(end, options.total_frames - 1) - start + 1)

    async def _read_progress(
        self,
        stream: asyncio.StreamReader,
        job_id: str,
        total_frames: int,
        on_progress: Optional[EngineProgressCallback],
        tail: deque,
    ) -> None:
        # melt redraws its progress line with carriage returns
        buffer = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="replace")
            *lines, buffer = re.split(r"[\r\n]", buffer)
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                match = PROGRESS_PATTERN.search(line)
                if not match:
                    tail.append(line)
                    continue
                if on_progress:
                    on_progress(job_id, int(match.group(1)), total_frames)
        if buffer.strip():
            tail.append(buffer.strip())

    async def invoke(
        self,
        program: str,
        output_path: str,
        options: EngineInvocationOptions,
        job_id: str,
        on_progress: Optional[EngineProgressCallback] = None,
    ) -> EngineRunResult:
        melt_path = await self._require_melt()
        program_path = self._write_program(program, job_id)

        output_dir = os.path.dirname(output_path)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        cmd = self.build_command(melt_path, str(program_path), output_path, options)
        logger.info(f"[MELT] Job {job_id}: {' '.join(cmd)}")

        tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._starting.add(job_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._cancelled.discard(job_id)
            program_path.unlink(missing_ok=True)
            return EngineRunResult(success=False, error=f"Failed to run melt: {e}")
        finally:
            self._starting.discard(job_id)

        self._processes[job_id] = proc
        try:
            if job_id in self._cancelled:
                await self._stop(proc, job_id)
            await self._read_progress(proc.stderr, job_id, self.expected_frames(options), on_progress, tail)
            returncode = await proc.wait()
        except asyncio.CancelledError:
            self._cancelled.discard(job_id)
            if proc.returncode is None:
                logger.warning(f"[MELT] Job {job_id}: render task cancelled, stopping melt")
                await self._stop(proc, job_id)
            raise
        finally:
            self._processes.pop(job_id, None)
            program_path.unlink(missing_ok=True)

        if job_id in self._cancelled:
            self._cancelled.discard(job_id)
            return EngineRunResult(success=False, error="Render cancelled")

        if returncode != 0:
            stderr_text = "\n".join(tail)
            logger.error(f"[MELT] Job {job_id} failed with exit code {returncode}: {stderr_text}")
            return EngineRunResult(success=False, error=f"melt exited with error: {stderr_text}")

        logger.info(f"[MELT] Job {job_id} finished: {output_path}")
        return EngineRunResult(success=True, output_path=output_path)

    async def _stop(self, proc: asyncio.subprocess.Process, job_id: str) -> None:
        """Send SIGTERM, then SIGKILL once the grace period runs out."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.melt_cancel_grace_s)
        except asyncio.TimeoutError:
            logger.warning(f"[MELT] Job {job_id} ignored SIGTERM, killing")
            proc.kill()
            await proc.wait()

    async def cancel(self, job_id: str) -> bool:
        if job_id in self._starting:
            # Stopped by invoke as soon as the process exists
            self._cancelled.add(job_id)
            logger.info(f"[MELT] Job {job_id} cancelled before melt started")
            return True
        proc = self._processes.get(job_id)
        if proc is None or proc.returncode is not None:
            return False

        self._cancelled.add(job_id)
        await self._stop(proc, job_id)
        logger.info(f"[MELT] Job {job_id} cancelled")
        return True

    # ========================================================================
    # Diagnostics
    # ========================================================================

    async def validate(self, program: str) -> ValidationResult:
        """Load program with ``melt -consumer xml`` without rendering it."""
        try:
            melt_path = await self._require_melt()
        except EngineUnavailableError:
            return ValidationResult(valid=False, error="melt not found", errors=["melt not found"])

        program_path = self._write_program(program, f"validate_{uuid4().hex}")
        try:
            proc = await asyncio.create_subprocess_exec(
                melt_path,
                str(program_path),
                "-consumer",
                "xml",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            message = f"Failed to validate: {e}"
            return ValidationResult(valid=False, error=message, errors=[message])
        finally:
            program_path.unlink(missing_ok=True)

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            return ValidationResult(valid=False, error=message, errors=[message])
        return ValidationResult(valid=True)

    async def run_raw(self, args: list[str]) -> dict[str, object]:
        """Run melt with arbitrary arguments (debugging aid).

        Raises:
            EngineUnavailableError: If melt is not installed.
            EngineInvocationError: If the process could not be started.
        """
        melt_path = await self._require_melt()
        try:
            proc = await asyncio.create_subprocess_exec(
                melt_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineInvocationError(f"Failed to run melt: {e}") from e
        stdout, stderr = await proc.communicate()
        return {
            "stdout": stdout.decode("utf-8", errors="replace"),
            "stderr": stderr.decode("utf-8", errors="replace"),
            "exit_code": proc.returncode if proc.returncode is not None else -1,
        }
