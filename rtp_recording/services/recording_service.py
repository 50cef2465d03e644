"""
Process-wide recording service.

Keeps the attached media router and the registered producers, and hands them
to a fresh SessionController for every recording: a controller that reached
STOPPED or FAILED is never reused. Keeps the start/stop/status dictionaries
the HTTP layer returns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from rtp_recording.models.config import RecordingSettings, load_recording_settings
from rtp_recording.models.session import MEDIA_KINDS, MediaKind, RecorderBackend, SessionState
from rtp_recording.services.errors import RecordingError, RouterUnavailableError, SessionStateError
from rtp_recording.services.recorder_commands import container_for, h264_enabled
from rtp_recording.services.recorder_process import RecorderProcessSupervisor, run_preflight
from rtp_recording.services.routing import Producer, Router
from rtp_recording.services.session_controller import SessionController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[..., SessionController]


class RecordingService:
    def __init__(
        self,
        settings: Optional[RecordingSettings] = None,
        router: Optional[Router] = None,
        controller_factory: ControllerFactory = SessionController,
    ) -> None:
        self.settings = settings or load_recording_settings()
        self.router = router
        self.producers: Dict[MediaKind, Producer] = {}
        self.controller: Optional[SessionController] = None
        self.controller_factory = controller_factory
        # Shared across sessions so the FFmpeg probe runs once
        self.supervisor = RecorderProcessSupervisor(self.settings)
        self._lock: Optional[asyncio.Lock] = None
        logger.info("RecordingService initialized, output directory %s", self.settings.output_path)

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def is_active(self) -> bool:
        if self.controller is None:
            return False
        return not (self.controller.state is SessionState.IDLE or self.controller.state.is_terminal)

    def attach_router(self, router: Optional[Router]) -> None:
        self.router = router
        self.producers.clear()

    def update_settings(self, settings: RecordingSettings) -> None:
        if self.is_active:
            raise SessionStateError("Settings cannot change while a recording is active")
        self.settings = settings
        self.supervisor = RecorderProcessSupervisor(settings)

    def preflight(self) -> str:
        """FFmpeg version check. Raises PreflightCheckError."""
        version = run_preflight(self.settings, self.supervisor.probe)
        self.supervisor.ffmpeg_version = version
        return version

    def add_producer(self, producer: Producer) -> Dict[str, str]:
        kind = MediaKind.parse(producer.kind)
        if self.is_active:
            raise SessionStateError("Producers can only be added while no recording is active")
        self.producers[kind] = producer
        logger.info("Producer %s registered for %s recording", producer.id, kind.value)
        return {"id": producer.id, "kind": kind.value}

    def _new_controller(self) -> SessionController:
        controller = self.controller_factory(self.router, self.settings, supervisor=self.supervisor)
        for kind in MEDIA_KINDS:
            if kind in self.producers:
                controller.add_producer(self.producers[kind])
        return controller

    async def start_recording(self, backend: str) -> Dict[str, Any]:
        async with self._get_lock():
            return await self._start_recording_impl(backend)

    async def _start_recording_impl(self, backend: str) -> Dict[str, Any]:
        try:
            RecorderBackend.parse(backend)
            if self.is_active:
                raise SessionStateError(f"Recording already {self.controller.state.value}")
            if self.router is None:
                raise RouterUnavailableError("No media router attached")
            if not self.producers:
                raise SessionStateError("No audio or video producer registered")
        except RecordingError as exc:
            return self._error(exc)

        self.controller = self._new_controller()
        try:
            await self.controller.start(backend)
        except RecordingError as exc:
            logger.error("Failed to start %s recording: %s", backend, exc)
            return self._error(exc, self.controller.status())

        return {"success": True, **self.controller.status()}

    async def stop_recording(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        controller = self.controller
        if controller is None:
            return {"success": True, "state": SessionState.IDLE.value}

        controller.stop()
        if timeout:
            try:
                await controller.wait_stopped(timeout)
            except asyncio.TimeoutError:
                logger.warning("Recorder did not exit within %.1fs", timeout)
        return {"success": True, **controller.status()}

    async def get_recording_status(self) -> Dict[str, Any]:
        if self.controller is None:
            return {
                "success": True,
                "state": SessionState.IDLE.value,
                "producers": {kind.value: p.id for kind, p in self.producers.items()},
            }
        return {"success": True, **self.controller.status()}

    async def shutdown(self, timeout: float = 10.0) -> None:
        if self.is_active:
            logger.info("Stopping active recording before shutdown")
            await self.stop_recording(timeout=timeout)

    def get_backends(self) -> Dict[str, Any]:
        h264 = self.router is not None and h264_enabled(self.router.rtp_capabilities)
        return {
            backend.value: {
                "container": container_for(backend, True, h264),
                "needs_process": backend is not RecorderBackend.EXTERNAL,
            }
            for backend in RecorderBackend
        }

    @staticmethod
    def _error(exc: RecordingError, status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {**(status or {}), "success": False, "error": str(exc), "error_type": type(exc).__name__}
