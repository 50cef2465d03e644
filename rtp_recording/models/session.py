"""
Value types shared by the recording session components.
"""

from __future__ import annotations

import signal
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from rtp_recording.services.errors import InvalidBackendError, UnsupportedKindError


class MediaKind(Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: str) -> "MediaKind":
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedKindError(f"Unknown producer kind '{value}'") from None


# Resume and release order
MEDIA_KINDS = (MediaKind.AUDIO, MediaKind.VIDEO)


class RecorderBackend(Enum):
    FFMPEG = "ffmpeg"
    GSTREAMER = "gstreamer"
    EXTERNAL = "external"

    @classmethod
    def parse(cls, value: str) -> "RecorderBackend":
        try:
            return cls(value)
        except ValueError:
            raise InvalidBackendError(f"Invalid recorder: {value}") from None


class SessionState(Enum):
    """Recording session lifecycle."""

    IDLE = "idle"
    PROVISIONING_SINKS = "provisioning_sinks"
    AWAITING_READINESS = "awaiting_readiness"
    RECORDING = "recording"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


@dataclass(frozen=True)
class RecorderEndpoint:
    """Where the recorder listens for one media kind."""

    ip: str
    port: int
    rtcp_port: int


@dataclass
class SinkPair:
    """Paused plain transport + consumer forwarding one producer to the recorder."""

    kind: MediaKind
    transport: Any
    consumer: Any
    resumed: bool = False


@dataclass(frozen=True)
class ExitStatus:
    code: Optional[int]
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, returncode: Optional[int]) -> "ExitStatus":
        # asyncio reports death-by-signal as a negative return code
        if returncode is not None and returncode < 0:
            return cls(code=None, signal=-returncode)
        return cls(code=returncode, signal=None)

    @property
    def clean(self) -> bool:
        return self.signal is None or self.signal == signal.SIGINT

    @property
    def signal_name(self) -> Optional[str]:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    def to_dict(self) -> dict:
        return {"code": self.code, "signal": self.signal_name, "clean": self.clean}


@dataclass
class RecordingPlan:
    """Everything the supervisor needs to build and run one recorder command."""

    use_audio: bool
    use_video: bool
    use_h264: bool
