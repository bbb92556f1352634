"""WebSocket support for real-time render progress notifications.

This module provides:
- WebSocketManager: Manages WebSocket connections per render job
- RenderProgressNotifier: High-level API for sending progress updates
- Message creation helpers: Standardized message formats
- router: ``/ws/renders/{job_id}`` progress stream
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from meltline.api.deps import Orchestrator
from meltline.render.job_orchestrator import ProgressCallback, RenderProgress, RenderStatus

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketManager:
    """Manages WebSocket connections for render progress updates.

    Supports multiple clients watching the same render job.
    """

    def __init__(self):
        # job_id -> list of connected websockets
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, job_id: str) -> None:
        """Accept and register a WebSocket connection for a job."""
        await websocket.accept()
        self._connections.setdefault(job_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, job_id: str) -> None:
        """Remove a WebSocket connection."""
        if job_id in self._connections:
            if websocket in self._connections[job_id]:
                self._connections[job_id].remove(websocket)
            if not self._connections[job_id]:
                del self._connections[job_id]

    async def broadcast(self, job_id: str, message: dict[str, Any]) -> None:
        """Broadcast a message to all clients watching a job."""
        if job_id not in self._connections:
            return

        disconnected = []
        for websocket in list(self._connections[job_id]):
            try:
                await websocket.send_json(message)
            except Exception:
                # Client disconnected
                disconnected.append(websocket)

        for ws in disconnected:
            self.disconnect(ws, job_id)

    def get_connection_count(self, job_id: str) -> int:
        """Get the number of connected clients for a job."""
        return len(self._connections.get(job_id, []))


class RenderProgressNotifier:
    """High-level API for sending render progress notifications."""

    def __init__(self, manager: WebSocketManager):
        self._manager = manager
        self._tasks: set[asyncio.Task] = set()

    async def notify_progress(self, job_id: str, progress: RenderProgress) -> None:
        """Send a progress update to all connected clients."""
        await self._manager.broadcast(job_id, create_progress_message(job_id, progress))

    async def notify_complete(self, job_id: str, output_path: Optional[str]) -> None:
        """Send a completion notification to all connected clients."""
        await self._manager.broadcast(job_id, create_complete_message(job_id, output_path))

    async def notify_error(
        self,
        job_id: str,
        error_message: str,
        error_code: Optional[str] = None,
    ) -> None:
        """Send an error notification to all connected clients."""
        message = create_error_message(job_id, error_message, error_code)
        await self._manager.broadcast(job_id, message)

    async def notify_cancelled(self, job_id: str) -> None:
        """Send a cancellation notification to all connected clients."""
        await self._manager.broadcast(job_id, create_cancelled_message(job_id))

    async def notify(self, job_id: str, progress: RenderProgress) -> None:
        """Dispatch a progress snapshot to the notification matching its status."""
        if progress.status == RenderStatus.COMPLETED:
            await self.notify_complete(job_id, progress.output_path)
        elif progress.status == RenderStatus.FAILED:
            await self.notify_error(job_id, progress.error or "Render failed")
        elif progress.status == RenderStatus.CANCELLED:
            await self.notify_cancelled(job_id)
        else:
            await self.notify_progress(job_id, progress)

    def forwarder(self, job_id: str) -> ProgressCallback:
        """Orchestrator progress callback that broadcasts each snapshot."""
        loop = asyncio.get_running_loop()

        def callback(progress: RenderProgress) -> None:
            task = loop.create_task(self.notify(job_id, progress))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return callback


def create_status_message(job_id: str, progress: RenderProgress) -> dict[str, Any]:
    """Message for a progress snapshot, chosen by its status."""
    if progress.status == RenderStatus.COMPLETED:
        return create_complete_message(job_id, progress.output_path)
    if progress.status == RenderStatus.FAILED:
        return create_error_message(job_id, progress.error or "Render failed")
    if progress.status == RenderStatus.CANCELLED:
        return create_cancelled_message(job_id)
    return create_progress_message(job_id, progress)


def create_progress_message(job_id: str, progress: RenderProgress) -> dict[str, Any]:
    """Create a standardized progress message."""
    return {
        "type": "progress",
        "job_id": job_id,
        "status": progress.status.value,
        "percentage": progress.percentage,
        "current_frame": progress.current_frame,
        "total_frames": progress.total_frames,
        "estimated_remaining": progress.estimated_remaining,
        "fps": progress.fps,
    }


def create_complete_message(job_id: str, output_path: Optional[str]) -> dict[str, Any]:
    """Create a standardized completion message."""
    return {
        "type": "complete",
        "job_id": job_id,
        "status": "completed",
        "percentage": 100,
        "output_path": output_path,
    }


def create_error_message(
    job_id: str,
    error_message: str,
    error_code: Optional[str] = None,
) -> dict[str, Any]:
    """Create a standardized error message."""
    return {
        "type": "error",
        "job_id": job_id,
        "status": "failed",
        "error_message": error_message,
        "error_code": error_code,
    }


def create_cancelled_message(job_id: str) -> dict[str, Any]:
    return {
        "type": "cancelled",
        "job_id": job_id,
        "status": "cancelled",
    }


# Global WebSocket manager instance
websocket_manager = WebSocketManager()
progress_notifier = RenderProgressNotifier(websocket_manager)


@router.websocket("/ws/renders/{job_id}")
async def render_progress_stream(websocket: WebSocket, job_id: str, orchestrator: Orchestrator) -> None:
    """Stream progress for one render job, starting with its current state."""
    job = orchestrator.get_job(job_id)
    if job is None:
        await websocket.close(code=4404, reason="Render job not found")
        return

    await websocket_manager.connect(websocket, job_id)
    try:
        await websocket.send_json(create_status_message(job_id, job.progress))
        while True:
            # Clients only listen; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"[WS] Client left job {job_id}")
    finally:
        websocket_manager.disconnect(websocket, job_id)
