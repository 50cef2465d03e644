"""
Best-effort detection of the moment the recorder can receive RTP.

Neither FFmpeg nor GStreamer announce "listening on the socket", so readiness
is inferred from an early banner line plus a short settle delay. For a
recorder started by hand there is no output at all and readiness is a plain
countdown.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from rtp_recording.models.config import RecordingSettings
from rtp_recording.models.session import RecorderBackend
from rtp_recording.services.recorder_process import RecorderHandle, output_logger

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

FFMPEG_READY_MARKER = "ffmpeg version"
GSTREAMER_READY_MARKER = "Setting pipeline to PLAYING"


class ReadySignal:
    """One-shot readiness event for a single recorder."""

    def __init__(self) -> None:
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.triggered = False
        self.cancelled = False
        self._timers: List[asyncio.Task] = []
        self._pumps: List[asyncio.Task] = []

    @property
    def fired(self) -> bool:
        return self.future.done()

    def fire(self) -> None:
        if self.cancelled or self.future.done():
            return
        logger.info("Recorder is ready to receive media")
        self.future.set_result(None)

    def add_done_callback(self, callback: Callable[[asyncio.Future], None]) -> None:
        self.future.add_done_callback(callback)

    def track_timer(self, task: asyncio.Task) -> None:
        self._timers.append(task)

    def track_pump(self, task: asyncio.Task) -> None:
        self._pumps.append(task)

    def cancel(self) -> None:
        """Stop any pending settle delay or countdown. Output keeps draining."""
        self.cancelled = True
        for task in self._timers:
            task.cancel()

    async def drain(self) -> None:
        """Wait until the recorder's output pipes reach EOF."""
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)


class ReadinessStrategy:
    def start(self, handle: RecorderHandle, ready: ReadySignal) -> None:
        raise NotImplementedError


class OutputMarkerReadiness(ReadinessStrategy):
    """Fire `settle_delay` seconds after `marker` first shows up on `stream`."""

    def __init__(
        self,
        stream: str,
        marker: str,
        settle_delay: float,
        sleep: Sleep,
        streams: tuple = ("stdout", "stderr"),
    ) -> None:
        self.stream = stream
        self.marker = marker
        self.settle_delay = settle_delay
        self.sleep = sleep
        self.streams = streams

    def start(self, handle: RecorderHandle, ready: ReadySignal) -> None:
        for stream in self.streams:
            if getattr(handle.process, stream, None) is None:
                continue
            ready.track_pump(asyncio.create_task(self._pump(handle, stream, ready)))

    async def _pump(self, handle: RecorderHandle, stream: str, ready: ReadySignal) -> None:
        try:
            async for line in handle.lines(stream):
                output_logger.info(line)
                if stream == self.stream and not ready.triggered and line.startswith(self.marker):
                    ready.triggered = True
                    ready.track_timer(asyncio.create_task(self._settle(ready)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Error reading recorder %s: %s", stream, exc)
            handle.report_error(exc)

    async def _settle(self, ready: ReadySignal) -> None:
        await self.sleep(self.settle_delay)
        ready.fire()


class CountdownReadiness(ReadinessStrategy):
    """Give an operator time to start an out-of-band recorder."""

    def __init__(self, ticks: int, interval: float, sleep: Sleep) -> None:
        self.ticks = ticks
        self.interval = interval
        self.sleep = sleep

    def start(self, handle: RecorderHandle, ready: ReadySignal) -> None:
        ready.track_timer(asyncio.create_task(self._countdown(ready)))

    async def _countdown(self, ready: ReadySignal) -> None:
        for remaining in range(self.ticks, 0, -1):
            logger.info("Recording starts in %g seconds...", remaining * self.interval)
            await self.sleep(self.interval)
        ready.fire()


class ReadinessDetector:
    def __init__(
        self,
        settle_delay: float = 1.0,
        countdown_ticks: int = 10,
        tick_interval: float = 1.0,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.settle_delay = settle_delay
        self.countdown_ticks = countdown_ticks
        self.tick_interval = tick_interval
        self.sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings: RecordingSettings, sleep: Optional[Sleep] = None) -> "ReadinessDetector":
        return cls(
            settle_delay=settings.settle_delay_sec,
            countdown_ticks=settings.external_countdown_ticks,
            tick_interval=settings.external_tick_sec,
            sleep=sleep,
        )

    def strategy_for(self, backend: RecorderBackend) -> ReadinessStrategy:
        if backend is RecorderBackend.FFMPEG:
            # FFmpeg logs to stderr
            return OutputMarkerReadiness("stderr", FFMPEG_READY_MARKER, self.settle_delay, self.sleep)
        if backend is RecorderBackend.GSTREAMER:
            # gst-launch prints state changes on stdout, progress on stderr
            return OutputMarkerReadiness("stdout", GSTREAMER_READY_MARKER, self.settle_delay, self.sleep)
        return CountdownReadiness(self.countdown_ticks, self.tick_interval, self.sleep)

    def watch(self, handle: RecorderHandle, backend: RecorderBackend) -> ReadySignal:
        ready = ReadySignal()
        self.strategy_for(backend).start(handle, ready)
        return ready
