"""
Spawns and supervises the external recorder process.
"""

import asyncio
import codecs
import logging
import os
import re
import signal
import subprocess
from typing import AsyncIterator, Awaitable, Callable, Optional

from rtp_recording.models.config import RecordingSettings
from rtp_recording.models.session import ExitStatus, RecorderBackend, RecordingPlan
from rtp_recording.services.errors import PreflightCheckError, RecorderLaunchError
from rtp_recording.services.recorder_commands import RecorderCommand, build_command

logger = logging.getLogger(__name__)
output_logger = logger.getChild("output")

LINE_SPLIT = re.compile(r"\r\n|\r|\n")
FFMPEG_VERSION_RE = re.compile(r"ffmpeg version n?(\d+)\.(\d+)(?:\.(\d+))?")
# Nightly and self-built binaries report no release number
FFMPEG_DEV_PREFIXES = ("ffmpeg version git", "ffmpeg version N-")

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]


def probe_ffmpeg_version(program: str) -> str:
    """Run `<program> -version` and return its output."""
    result = subprocess.run(
        [program, "-version"],
        capture_output=True,
        text=True,
        timeout=10,
    )
    return result.stdout or result.stderr


def check_ffmpeg_version(output: str, min_major: int = 4) -> str:
    """
    Validate the banner printed by `ffmpeg -version`.

    Returns the accepted version string, raises PreflightCheckError otherwise.
    """
    banner = output.strip().splitlines()[0] if output.strip() else ""
    if banner.startswith(FFMPEG_DEV_PREFIXES):
        # Up to the developer to build a recent enough source tree
        return banner.split()[2]

    match = FFMPEG_VERSION_RE.search(output)
    if match and int(match.group(1)) >= min_major:
        return ".".join(part for part in match.groups() if part is not None)

    raise PreflightCheckError(f"FFmpeg >= {min_major}.0.0 not found in $PATH; please install it")


def run_preflight(settings: RecordingSettings, probe: Callable[[str], str] = probe_ffmpeg_version) -> str:
    try:
        output = probe(settings.ffmpeg_program)
    except (OSError, subprocess.SubprocessError) as exc:
        raise PreflightCheckError(
            f"FFmpeg >= {settings.ffmpeg_min_major}.0.0 not found in $PATH; please install it ({exc})"
        ) from exc
    version = check_ffmpeg_version(output, settings.ffmpeg_min_major)
    logger.info("Found FFmpeg %s (%s)", version, settings.ffmpeg_program)
    return version


async def iter_lines(reader: asyncio.StreamReader, chunk_size: int = 4096) -> AsyncIterator[str]:
    """Re-split raw output chunks into complete, non-empty text lines."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        pending += decoder.decode(chunk)
        *complete, pending = LINE_SPLIT.split(pending)
        for line in complete:
            if line:
                yield line
    pending += decoder.decode(b"", final=True)
    if pending.rstrip("\r"):
        yield pending.rstrip("\r")


class RecorderHandle:
    """
    A running recorder process.

    `exited` resolves with the ExitStatus, `errors` with the first error seen
    after spawning (failed signal delivery, broken output pipe). Neither is
    ever set to an exception, so an unobserved failure does not leak a
    "Future exception was never retrieved" warning.
    """

    def __init__(self, command: RecorderCommand, process: asyncio.subprocess.Process) -> None:
        self.command = command
        self.process = process
        self._init_notifications()
        self._waiter: Optional[asyncio.Task] = asyncio.create_task(self._wait_for_exit())

    def _init_notifications(self) -> None:
        loop = asyncio.get_running_loop()
        self.exited: asyncio.Future = loop.create_future()
        self.errors: asyncio.Future = loop.create_future()
        self._consumed: set = set()

    @property
    def backend(self) -> RecorderBackend:
        return self.command.backend

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def running(self) -> bool:
        return not self.exited.done()

    async def _wait_for_exit(self) -> None:
        try:
            returncode = await self.process.wait()
        except Exception as exc:
            self.report_error(exc)
            return
        if not self.exited.done():
            self.exited.set_result(ExitStatus.from_returncode(returncode))

    def report_error(self, exc: BaseException) -> None:
        if not self.errors.done():
            self.errors.set_result(exc)

    async def wait(self) -> ExitStatus:
        return await asyncio.shield(self.exited)

    def lines(self, stream: str) -> AsyncIterator[str]:
        """Line iterator over "stdout" or "stderr". Each stream can be consumed once."""
        if stream in self._consumed:
            raise RuntimeError(f"Recorder {stream} is already being consumed")
        reader = getattr(self.process, stream, None)
        if reader is None:
            raise ValueError(f"Recorder has no {stream} pipe")
        self._consumed.add(stream)
        return iter_lines(reader)

    def terminate(self) -> None:
        """Ask the recorder to finalize its file and exit. Does not wait."""
        if not self.running:
            return
        try:
            self.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        except Exception as exc:
            logger.error("Could not signal recording process %s: %s", self.pid, exc)
            self.report_error(exc)


class ExternalRecorderHandle(RecorderHandle):
    """Stand-in for a recorder started by hand, outside this process."""

    def __init__(self, command: RecorderCommand) -> None:
        self.command = command
        self.process = None
        self._init_notifications()
        self._waiter = None

    def lines(self, stream: str) -> AsyncIterator[str]:
        raise ValueError("External recorder output is not available")

    def terminate(self) -> None:
        if self.running:
            self.exited.set_result(ExitStatus(code=0))


class RecorderProcessSupervisor:
    def __init__(
        self,
        settings: RecordingSettings,
        spawn: Spawner = asyncio.create_subprocess_exec,
        probe: Callable[[str], str] = probe_ffmpeg_version,
    ) -> None:
        self.settings = settings
        self.spawn = spawn
        self.probe = probe
        self.ffmpeg_version: Optional[str] = None

    async def ensure_ffmpeg(self) -> str:
        if self.ffmpeg_version is None:
            self.ffmpeg_version = await asyncio.to_thread(run_preflight, self.settings, self.probe)
        return self.ffmpeg_version

    async def launch(self, backend: RecorderBackend, plan: RecordingPlan) -> RecorderHandle:
        command = build_command(backend, self.settings, plan)

        if backend is RecorderBackend.EXTERNAL:
            endpoint = self.settings.recording
            logger.info(
                "External recorder selected, expecting it on %s (audio %s/%s, video %s/%s)",
                endpoint.ip,
                endpoint.audio_port,
                endpoint.audio_rtcp_port,
                endpoint.video_port,
                endpoint.video_rtcp_port,
            )
            return ExternalRecorderHandle(command)

        if backend is RecorderBackend.FFMPEG:
            await self.ensure_ffmpeg()

        try:
            self._write_inputs(command)
        except OSError as exc:
            raise RecorderLaunchError(f"Could not prepare recording files: {exc}") from exc

        logger.info("Run command: %s", command.display())
        try:
            process = await self.spawn(
                command.program,
                *command.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **command.env},
            )
        except OSError as exc:
            logger.error("Recording process error: %s", exc)
            raise RecorderLaunchError(f"Could not start {command.program}: {exc}") from exc

        handle = RecorderHandle(command, process)
        logger.info("Recording process started, pid: %s, output: %s", handle.pid, command.output_path)
        return handle

    @staticmethod
    def _write_inputs(command: RecorderCommand) -> None:
        if command.output_path is not None:
            command.output_path.parent.mkdir(parents=True, exist_ok=True)
        if command.sdp_path is not None and command.sdp is not None:
            command.sdp_path.parent.mkdir(parents=True, exist_ok=True)
            command.sdp_path.write_text(command.sdp)
