"""
Recording session lifecycle: sinks, recorder process, readiness, teardown.

One controller drives exactly one session:

    IDLE -> PROVISIONING_SINKS -> AWAITING_READINESS -> RECORDING -> STOPPING -> STOPPED
                  |                      |
                  +--------> FAILED <----+

Media only starts flowing (consumers resumed) once the recorder is ready, and
teardown (close every sink, interrupt the recorder) runs at most once whatever
triggered it.
"""

import asyncio
import logging
import warnings
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from rtp_recording.models.config import RecordingSettings
from rtp_recording.models.session import (
    MEDIA_KINDS,
    ExitStatus,
    MediaKind,
    RecorderBackend,
    RecordingPlan,
    SessionState,
    SinkPair,
)
from rtp_recording.services.errors import (
    RecorderLaunchError,
    RecordingError,
    SessionCancelledError,
    SessionStateError,
    SinkProvisionError,
    UncleanExitWarning,
)
from rtp_recording.services.readiness import ReadinessDetector, ReadySignal
from rtp_recording.services.recorder_commands import h264_enabled
from rtp_recording.services.recorder_process import RecorderHandle, RecorderProcessSupervisor
from rtp_recording.services.routing import Producer, Router
from rtp_recording.services.sink_provisioner import MediaSinkProvisioner

logger = logging.getLogger(__name__)


class StartupOutcome(Enum):
    READY = "ready"
    EXITED = "exited"
    ERROR = "error"
    CANCELLED = "cancelled"


class SessionController:
    def __init__(
        self,
        router: Router,
        settings: RecordingSettings,
        supervisor: Optional[RecorderProcessSupervisor] = None,
        detector: Optional[ReadinessDetector] = None,
        provisioner: Optional[MediaSinkProvisioner] = None,
    ) -> None:
        self.router = router
        self.settings = settings
        self.supervisor = supervisor or RecorderProcessSupervisor(settings)
        self.detector = detector or ReadinessDetector.from_settings(settings)
        self.provisioner = provisioner or MediaSinkProvisioner(router, settings)

        self.state = SessionState.IDLE
        self.backend: Optional[RecorderBackend] = None
        self.producers: Dict[MediaKind, Producer] = {}
        self.sinks: Dict[MediaKind, SinkPair] = {}
        self.output_path: Optional[Path] = None
        self.exit_status: Optional[ExitStatus] = None
        self.error: Optional[str] = None

        self._handle: Optional[RecorderHandle] = None
        self._ready: Optional[ReadySignal] = None
        self._startup: Optional[asyncio.Future] = None
        self._monitor: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None
        self._torn_down = False
        self._cancel_requested = False

    # Public API
    # ==========

    @property
    def recorder(self) -> Optional[RecorderHandle]:
        if self.state in (SessionState.AWAITING_READINESS, SessionState.RECORDING):
            return self._handle
        return None

    def add_producer(self, producer: Producer) -> Dict[str, str]:
        kind = MediaKind.parse(producer.kind)
        if self.state is not SessionState.IDLE:
            raise SessionStateError("Producers can only be added before the session starts")

        previous = self.producers.get(kind)
        if previous is not None:
            logger.warning("Replacing %s producer %s with %s", kind.value, previous.id, producer.id)
        self.producers[kind] = producer

        logger.info(
            "WebRTC RECV producer registered, kind: %s, type: %s, paused: %s",
            producer.kind,
            getattr(producer, "type", None),
            getattr(producer, "paused", None),
        )
        logger.debug("WebRTC RECV producer RtpParameters: %s", getattr(producer, "rtp_parameters", None))
        return {"id": producer.id, "kind": kind.value}

    async def start(self, backend_name: str) -> None:
        backend = RecorderBackend.parse(backend_name)
        if self.state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot start a session that is {self.state.value}")

        self.backend = backend
        self._finished = asyncio.Event()
        self._startup = asyncio.get_running_loop().create_future()
        try:
            await self._start(backend)
        except asyncio.CancelledError:
            logger.warning("Recording start was cancelled by the caller")
            self._teardown()
            self._set_state(SessionState.STOPPED)
            raise

    def stop(self) -> None:
        """Stop the session. Never raises and never waits for the recorder."""
        state = self.state
        if state is SessionState.RECORDING and self._handle is not None and self._handle.running:
            logger.info("Stopping recording process (pid %s)", self._handle.pid)
            self._set_state(SessionState.STOPPING)
            try:
                self._handle.terminate()
            except Exception:
                logger.exception("Error interrupting recording process")
            # The exit notification finishes the teardown
            return

        if state in (SessionState.PROVISIONING_SINKS, SessionState.AWAITING_READINESS):
            logger.info("Recording cancelled before the recorder was ready")
            self._cancel_requested = True
            self._settle_startup(StartupOutcome.CANCELLED)
            self._teardown()
            return

        if state is SessionState.STOPPING and self._handle is not None and self._handle.running:
            return

        # No recorder to stop, but never leave a sink behind
        self._release_sinks()

    async def wait_stopped(self, timeout: Optional[float] = None) -> SessionState:
        if self._finished is None or self.state.is_terminal:
            return self.state
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.state

    def status(self) -> Dict[str, Any]:
        handle = self.recorder
        return {
            "state": self.state.value,
            "backend": self.backend.value if self.backend else None,
            "producers": {kind.value: producer.id for kind, producer in self.producers.items()},
            "sinks": [kind.value for kind in MEDIA_KINDS if kind in self.sinks],
            "output_path": str(self.output_path) if self.output_path else None,
            "pid": handle.pid if handle is not None else None,
            "exit_status": self.exit_status.to_dict() if self.exit_status else None,
            "error": self.error,
        }

    # Startup
    # =======

    async def _start(self, backend: RecorderBackend) -> None:
        self._set_state(SessionState.PROVISIONING_SINKS)
        try:
            await self._provision_sinks()
        except SinkProvisionError as exc:
            if self._cancel_requested:
                self._finish_cancelled()
            self._fail(exc)
            raise

        if self._cancel_requested:
            self._finish_cancelled()

        plan = RecordingPlan(
            use_audio=MediaKind.AUDIO in self.sinks,
            use_video=MediaKind.VIDEO in self.sinks,
            use_h264=h264_enabled(self.router.rtp_capabilities),
        )
        self._set_state(SessionState.AWAITING_READINESS)
        try:
            handle = await self.supervisor.launch(backend, plan)
        except RecordingError as exc:
            if self._cancel_requested:
                self._finish_cancelled()
            self._fail(exc)
            raise

        self._handle = handle
        self.output_path = handle.command.output_path
        if self._cancel_requested:
            # stop() arrived while the process was being spawned
            handle.terminate()
            self._finish_cancelled()

        self._monitor = asyncio.create_task(self._monitor_recorder(handle))
        self._ready = self.detector.watch(handle, backend)
        self._ready.add_done_callback(lambda _f: self._settle_startup(StartupOutcome.READY))

        outcome, detail = await self._startup
        if outcome is StartupOutcome.READY:
            try:
                await self._resume_sinks()
            except SinkProvisionError as exc:
                if self._cancel_requested:
                    self._finish_cancelled()
                self._fail(exc)
                raise
            if not self._torn_down:
                self._set_state(SessionState.RECORDING)
                logger.info("Recording started (%s): %s", backend.value, self.output_path or "external recorder")
                return
            outcome = StartupOutcome.CANCELLED if self._cancel_requested else StartupOutcome.EXITED

        if outcome is StartupOutcome.CANCELLED:
            self._finish_cancelled()
        if outcome is StartupOutcome.ERROR:
            exc = RecorderLaunchError(f"Recording process error before it was ready: {detail}")
        else:
            exc = RecorderLaunchError(f"Recording process exited before it was ready ({self._describe_exit()})")
        self._fail(exc)
        raise exc

    async def _provision_sinks(self) -> None:
        kinds = [kind for kind in MEDIA_KINDS if kind in self.producers]
        if not kinds:
            raise SinkProvisionError("No audio or video producer registered")

        results = await asyncio.gather(*(self._provision_kind(kind) for kind in kinds), return_exceptions=True)
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            self._release_sinks()
            first = failures[0]
            if isinstance(first, SinkProvisionError):
                raise first
            raise SinkProvisionError(str(first)) from first

    async def _provision_kind(self, kind: MediaKind) -> None:
        endpoint = self.settings.recording.endpoint(kind)
        sink = await self.provisioner.provision(kind, self.producers[kind], endpoint)
        if self._torn_down:
            logger.info("Session already torn down, releasing late %s sink", kind.value)
            self._close_sink(sink)
            return
        self.sinks[kind] = sink

    async def _resume_sinks(self) -> None:
        for kind in MEDIA_KINDS:
            sink = self.sinks.get(kind)
            if self._torn_down:
                return
            if sink is None or sink.resumed:
                continue
            logger.info("Resume RTP consumer, kind: %s, type: %s", sink.consumer.kind, sink.consumer.type)
            sink.resumed = True
            try:
                await sink.consumer.resume()
            except Exception as exc:
                raise SinkProvisionError(f"Could not resume {kind.value} consumer: {exc}") from exc

    def _settle_startup(self, outcome: StartupOutcome, detail: Any = None) -> bool:
        """First event wins; returns False once the startup race is decided."""
        if self._startup is None or self._startup.done():
            return False
        logger.debug("Recorder startup outcome: %s", outcome.value)
        self._startup.set_result((outcome, detail))
        return True

    def _finish_cancelled(self) -> None:
        self._teardown()
        self._set_state(SessionState.STOPPED)
        raise SessionCancelledError("Recording was stopped before the recorder was ready")

    def _fail(self, exc: BaseException) -> None:
        logger.error("Recording session failed: %s", exc)
        self.error = str(exc)
        self._teardown()
        self._set_state(SessionState.FAILED)

    # Recorder supervision
    # ====================

    async def _monitor_recorder(self, handle: RecorderHandle) -> None:
        await asyncio.wait([handle.exited, handle.errors], return_when=asyncio.FIRST_COMPLETED)

        if not handle.exited.done():
            exc = handle.errors.result()
            logger.error("Recording process error: %s", exc)
            if self._settle_startup(StartupOutcome.ERROR, exc):
                return
            self._recorder_gone(None)
            return

        status = handle.exited.result()
        self.exit_status = status
        logger.info("Recording process exit, code: %s, signal: %s", status.code, status.signal_name)
        if self._settle_startup(StartupOutcome.EXITED, status):
            return
        self._recorder_gone(status)

    def _recorder_gone(self, status: Optional[ExitStatus]) -> None:
        if self.state is SessionState.RECORDING:
            self._set_state(SessionState.STOPPING)
        self._teardown()

        if status is not None and status.clean:
            logger.info("Recording stopped")
        else:
            message = "Recording process didn't exit cleanly, output file might be corrupt"
            logger.warning("%s (%s)", message, self._describe_exit())
            warnings.warn(message, UncleanExitWarning, stacklevel=2)

        # AWAITING_READINESS here means start() is still resuming and will settle the state
        if self.state is SessionState.STOPPING:
            self._set_state(SessionState.STOPPED)

    def _describe_exit(self) -> str:
        if self.exit_status is None:
            return "no exit status"
        return f"code: {self.exit_status.code}, signal: {self.exit_status.signal_name}"

    # Teardown
    # ========

    def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        logger.info("Tearing down recording session")

        if self._ready is not None:
            self._ready.cancel()

        if self._handle is not None and self._handle.running:
            try:
                self._handle.terminate()
            except Exception:
                logger.exception("Error interrupting recording process")

        self._release_sinks()

        # A monitor still waiting on a live child records its exit status on its own
        if self._handle is not None and not self._handle.running:
            self._stop_monitor()

    def _stop_monitor(self) -> None:
        monitor = self._monitor
        if monitor is None or monitor.done() or monitor is asyncio.current_task():
            return
        if self.exit_status is None and self._handle.exited.done():
            self.exit_status = self._handle.exited.result()
        monitor.cancel()

    def _release_sinks(self) -> None:
        for kind in MEDIA_KINDS:
            sink = self.sinks.pop(kind, None)
            if sink is not None:
                self._close_sink(sink)

    @staticmethod
    def _close_sink(sink: SinkPair) -> None:
        logger.info("Stop RTP transport and consumer, kind: %s", sink.kind.value)
        try:
            sink.consumer.close()
        except Exception:
            logger.exception("Error closing %s consumer", sink.kind.value)
        try:
            sink.transport.close()
        except Exception:
            logger.exception("Error closing %s transport", sink.kind.value)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info("Recording session %s -> %s", self.state.value, state.value)
        self.state = state
        if state.is_terminal and self._finished is not None:
            self._finished.set()


__all__ = ["SessionController", "StartupOutcome"]
