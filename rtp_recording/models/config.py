import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from rtp_recording.models.session import MediaKind, RecorderEndpoint

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "recording.json"


def config_dir() -> Path:
    return Path(os.environ.get("RTP_RECORDING_CONFIG_DIR", Path.home() / ".rtp-recording"))


def _check_port(value: int) -> int:
    if value < 1 or value > 65535:
        raise ValueError("Port must be between 1 and 65535")
    return value


class RecorderEndpointSettings(BaseModel):
    """Ports the external recorder listens on (must match the SDP it reads)."""

    ip: str = "127.0.0.1"
    audio_port: int = 5004
    audio_rtcp_port: int = 5005
    video_port: int = 5006
    video_rtcp_port: int = 5007

    @field_validator("audio_port", "audio_rtcp_port", "video_port", "video_rtcp_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Recorder IP cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_distinct_ports(self) -> "RecorderEndpointSettings":
        ports = [self.audio_port, self.audio_rtcp_port, self.video_port, self.video_rtcp_port]
        if len(set(ports)) != len(ports):
            raise ValueError("RTP and RTCP ports must all be distinct")
        return self

    def endpoint(self, kind: MediaKind) -> RecorderEndpoint:
        if kind is MediaKind.AUDIO:
            return RecorderEndpoint(self.ip, self.audio_port, self.audio_rtcp_port)
        return RecorderEndpoint(self.ip, self.video_port, self.video_rtcp_port)


class RecordingSettings(BaseModel):
    recording: RecorderEndpointSettings = Field(default_factory=RecorderEndpointSettings)
    # Extra options passed to router.create_plain_transport()
    plain_transport: Dict[str, Any] = Field(default_factory=lambda: {"listen_ip": "127.0.0.1"})

    # Must match the payload types negotiated by the router
    audio_payload_type: int = 111
    vp8_payload_type: int = 96
    h264_payload_type: int = 125

    output_dir: str = "~/.rtp-recording/recordings"

    ffmpeg_program: str = "ffmpeg"
    ffmpeg_min_major: int = 4
    gstreamer_program: str = "gst-launch-1.0"
    gstreamer_log_level: str = "2"

    settle_delay_sec: float = 1.0
    external_countdown_ticks: int = 10
    external_tick_sec: float = 1.0

    preflight_on_startup: bool = True

    @field_validator("audio_payload_type", "vp8_payload_type", "h264_payload_type")
    @classmethod
    def validate_payload_type(cls, v: int) -> int:
        if v < 96 or v > 127:
            raise ValueError("Dynamic payload types must be between 96 and 127")
        return v

    @field_validator("ffmpeg_program", "gstreamer_program", "gstreamer_log_level", "output_dir")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()

    @field_validator("settle_delay_sec", "external_tick_sec")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays cannot be negative")
        return v

    @field_validator("external_countdown_ticks")
    @classmethod
    def validate_ticks(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Countdown ticks cannot be negative")
        return v

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir).expanduser()


def settings_path() -> Path:
    directory = config_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory / CONFIG_FILENAME


def load_recording_settings() -> RecordingSettings:
    path = settings_path()
    if path.exists():
        try:
            return RecordingSettings(**json.loads(path.read_text()))
        except (ValueError, ValidationError) as exc:
            # Fall back to defaults if file is malformed
            logger.warning("Ignoring malformed %s: %s", path, exc)
    return RecordingSettings()


def save_recording_settings(settings: RecordingSettings) -> RecordingSettings:
    path = settings_path()
    path.write_text(json.dumps(settings.model_dump(), indent=2))
    return settings
