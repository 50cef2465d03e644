"""
Recorder command lines, SDP inputs and output paths.

Everything here is a pure function of the backend, the enabled media kinds,
whether H.264 is in use, and the settings. Recording is always a codec copy:
no decoder or encoder appears in any command.

FFmpeg:

    ffmpeg -nostdin -protocol_whitelist file,rtp,udp -fflags +genpts \\
        -i input-vp8.sdp \\
        -map 0:a:0 -c:a copy -map 0:v:0 -c:v copy \\
        -f webm -flags +global_header \\
        -y output-ffmpeg-vp8.webm

'-map 0:x:0' keeps one stream of each type. "-strict experimental" is needed
to store Opus inside MP4 when recording H.264.

GStreamer:

    gst-launch-1.0 --eos-on-shutdown \\
        filesrc location=input-vp8.sdp ! sdpdemux timeout=0 name=demux \\
        webmmux name=mux ! filesink location=output-gstreamer-vp8.webm \\
        demux. ! queue ! rtpopusdepay ! opusparse ! mux. \\
        demux. ! queue ! rtpvp8depay ! mux.

For H.264 the mux becomes "mp4mux faststart=true" and the video branch uses
rtph264depay ! h264parse.
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from rtp_recording.models.config import RecordingSettings
from rtp_recording.models.session import RecorderBackend, RecordingPlan

SDP_VP8_FILENAME = "input-vp8.sdp"
SDP_H264_FILENAME = "input-h264.sdp"

H264_FMTP = "level-asymmetry-allowed=1;packetization-mode=1;profile-level-id=42e01f"


@dataclass
class RecorderCommand:
    backend: RecorderBackend
    program: Optional[str]
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    output_path: Optional[Path] = None
    sdp_path: Optional[Path] = None
    sdp: Optional[str] = None

    def display(self) -> str:
        env = " ".join(f"{key}={value}" for key, value in self.env.items())
        cmd = " ".join(shlex.quote(part) for part in [self.program or "", *self.args])
        return f"{env} {cmd}".strip()


def h264_enabled(rtp_capabilities: Dict[str, Any]) -> bool:
    codecs = (rtp_capabilities or {}).get("codecs") or []
    return any(str(c.get("mimeType", "")).lower() == "video/h264" for c in codecs)


def container_for(backend: RecorderBackend, use_video: bool, use_h264: bool) -> str:
    if backend is RecorderBackend.EXTERNAL:
        return "external"
    return "mp4" if use_video and use_h264 else "webm"


def output_path(backend: RecorderBackend, use_video: bool, use_h264: bool, output_dir: Path) -> Optional[Path]:
    if backend is RecorderBackend.EXTERNAL:
        return None
    codec = "h264" if use_video and use_h264 else "vp8"
    container = container_for(backend, use_video, use_h264)
    return Path(output_dir) / f"output-{backend.value}-{codec}.{container}"


def sdp_path(use_video: bool, use_h264: bool, output_dir: Path) -> Path:
    name = SDP_H264_FILENAME if use_video and use_h264 else SDP_VP8_FILENAME
    return Path(output_dir) / name


def render_sdp(settings: RecordingSettings, plan: RecordingPlan) -> str:
    endpoint = settings.recording
    lines = [
        "v=0",
        f"o=- 0 0 IN IP4 {endpoint.ip}",
        "s=-",
        f"c=IN IP4 {endpoint.ip}",
        "t=0 0",
    ]
    if plan.use_audio:
        pt = settings.audio_payload_type
        lines += [
            f"m=audio {endpoint.audio_port} RTP/AVPF {pt}",
            f"a=rtcp:{endpoint.audio_rtcp_port}",
            f"a=rtpmap:{pt} opus/48000/2",
            f"a=fmtp:{pt} minptime=10;useinbandfec=1",
        ]
    if plan.use_video:
        if plan.use_h264:
            pt = settings.h264_payload_type
            lines += [
                f"m=video {endpoint.video_port} RTP/AVPF {pt}",
                f"a=rtcp:{endpoint.video_rtcp_port}",
                f"a=rtpmap:{pt} H264/90000",
                f"a=fmtp:{pt} {H264_FMTP}",
            ]
        else:
            pt = settings.vp8_payload_type
            lines += [
                f"m=video {endpoint.video_port} RTP/AVPF {pt}",
                f"a=rtcp:{endpoint.video_rtcp_port}",
                f"a=rtpmap:{pt} VP8/90000",
            ]
    return "\r\n".join(lines) + "\r\n"


def build_ffmpeg_command(settings: RecordingSettings, plan: RecordingPlan) -> RecorderCommand:
    out_dir = settings.output_path
    sdp_file = sdp_path(plan.use_video, plan.use_h264, out_dir)
    out_file = output_path(RecorderBackend.FFMPEG, plan.use_video, plan.use_h264, out_dir)

    codec: List[str] = []
    if plan.use_audio:
        codec += ["-map", "0:a:0", "-c:a", "copy"]
    if plan.use_video:
        codec += ["-map", "0:v:0", "-c:v", "copy"]

    if plan.use_video and plan.use_h264:
        fmt = ["-f", "mp4", "-strict", "experimental"]
    else:
        fmt = ["-f", "webm", "-flags", "+global_header"]

    args = [
        "-nostdin",
        "-protocol_whitelist", "file,rtp,udp",
        "-fflags", "+genpts",
        "-i", str(sdp_file),
        *codec,
        *fmt,
        "-y", str(out_file),
    ]
    return RecorderCommand(
        backend=RecorderBackend.FFMPEG,
        program=settings.ffmpeg_program,
        args=args,
        output_path=out_file,
        sdp_path=sdp_file,
        sdp=render_sdp(settings, plan),
    )


def build_gstreamer_command(settings: RecordingSettings, plan: RecordingPlan) -> RecorderCommand:
    out_dir = settings.output_path
    sdp_file = sdp_path(plan.use_video, plan.use_h264, out_dir)
    out_file = output_path(RecorderBackend.GSTREAMER, plan.use_video, plan.use_h264, out_dir)

    mux = ["webmmux"]
    audio_branch: List[str] = []
    video_branch: List[str] = []

    if plan.use_audio:
        audio_branch = ["demux.", "!", "queue", "!", "rtpopusdepay", "!", "opusparse", "!", "mux."]

    if plan.use_video:
        if plan.use_h264:
            mux = ["mp4mux", "faststart=true", f"faststart-file={out_file}.tmp"]
            video_branch = ["demux.", "!", "queue", "!", "rtph264depay", "!", "h264parse", "!", "mux."]
        else:
            video_branch = ["demux.", "!", "queue", "!", "rtpvp8depay", "!", "mux."]

    args = [
        "--eos-on-shutdown",
        "filesrc", f"location={sdp_file}",
        "!", "sdpdemux", "timeout=0", "name=demux",
        *mux, "name=mux",
        "!", "filesink", f"location={out_file}",
        *audio_branch,
        *video_branch,
    ]
    # $GST_DEBUG from the shell wins over the configured level
    env = {"GST_DEBUG": os.environ.get("GST_DEBUG", settings.gstreamer_log_level)}
    return RecorderCommand(
        backend=RecorderBackend.GSTREAMER,
        program=settings.gstreamer_program,
        args=args,
        env=env,
        output_path=out_file,
        sdp_path=sdp_file,
        sdp=render_sdp(settings, plan),
    )


def build_command(backend: RecorderBackend, settings: RecordingSettings, plan: RecordingPlan) -> RecorderCommand:
    if backend is RecorderBackend.FFMPEG:
        return build_ffmpeg_command(settings, plan)
    if backend is RecorderBackend.GSTREAMER:
        return build_gstreamer_command(settings, plan)
    return RecorderCommand(backend=RecorderBackend.EXTERNAL, program=None)
