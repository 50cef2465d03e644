"""
Shared fakes for the recording session tests.

The routing engine and the recorder process are replaced by small in-memory
doubles; nothing here opens a socket or starts a real binary.
"""

import asyncio
import json
import os
import signal
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

# Keep the app away from the real ~/.rtp-recording
TEST_CONFIG_DIR = tempfile.mkdtemp(prefix="rtp-recording-test-")
os.environ["RTP_RECORDING_CONFIG_DIR"] = TEST_CONFIG_DIR

from rtp_recording.models.config import CONFIG_FILENAME, RecordingSettings

API_CONFIG = {
    "output_dir": str(Path(TEST_CONFIG_DIR) / "recordings"),
    "external_countdown_ticks": 1,
    "external_tick_sec": 0.0,
    "preflight_on_startup": False,
}

OPUS = {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2}
VP8 = {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000}
H264 = {"kind": "video", "mimeType": "video/H264", "clockRate": 90000}

FFMPEG_BANNER = "ffmpeg version 6.1.1-3ubuntu5 Copyright (c) 2000-2023 the FFmpeg developers\n"


class FakeTuple:
    def __init__(self, local_port: int, remote_ip: str, remote_port: int) -> None:
        self.local_ip = "127.0.0.1"
        self.local_port = local_port
        self.remote_ip = remote_ip
        self.remote_port = remote_port
        self.protocol = "udp"


class FakeProducer:
    def __init__(self, kind: str, producer_id: Optional[str] = None) -> None:
        self.id = producer_id or f"{kind}-producer"
        self.kind = kind
        self.type = "simple"
        self.paused = False
        self.rtp_parameters: Dict[str, Any] = {}


class FakeConsumer:
    def __init__(self, router: "FakeRouter", kind: str, producer_id: str) -> None:
        self.router = router
        self.id = f"{kind}-consumer"
        self.kind = kind
        self.type = "simple"
        self.paused = True
        self.producer_id = producer_id
        self.rtp_parameters = {"encodings": [{"ssrc": 1111}], "rtcp": {"cname": "recorder"}}
        self.resume_calls = 0
        self.close_calls = 0

    async def resume(self) -> None:
        self.resume_calls += 1
        self.router.events.append(("resume", self.kind))
        if self.kind in self.router.fail_resume:
            raise RuntimeError(f"{self.kind} consumer is gone")
        self.paused = False

    def close(self) -> None:
        self.close_calls += 1
        self.router.events.append(("close_consumer", self.kind))


class FakeTransport:
    def __init__(self, router: "FakeRouter", options: Dict[str, Any]) -> None:
        self.router = router
        self.options = options
        self.kind: Optional[str] = None
        self.connected_to: Optional[Tuple[str, int, int]] = None
        self.tuple: Optional[FakeTuple] = None
        self.rtcp_tuple: Optional[FakeTuple] = None
        self.consumer: Optional[FakeConsumer] = None
        self.consume_kwargs: Dict[str, Any] = {}
        self.close_calls = 0

    async def connect(self, ip: str, port: int, rtcp_port: int) -> None:
        if self.router.fail_connect:
            raise RuntimeError("connect refused")
        self.connected_to = (ip, port, rtcp_port)
        self.tuple = FakeTuple(40000, ip, port)
        self.rtcp_tuple = FakeTuple(40001, ip, rtcp_port)

    async def consume(self, producer_id: str, rtp_capabilities: Dict[str, Any], paused: bool) -> FakeConsumer:
        self.consume_kwargs = {
            "producer_id": producer_id,
            "rtp_capabilities": rtp_capabilities,
            "paused": paused,
        }
        kind = self.router.producer_kinds[producer_id]
        self.kind = kind
        self.router.pending_consumes += 1
        if self.router.consume_gate is not None:
            await self.router.consume_gate.wait()
        if kind in self.router.fail_consume:
            raise RuntimeError(f"cannot consume {kind}")
        self.consumer = FakeConsumer(self.router, kind, producer_id)
        self.router.consumers[kind] = self.consumer
        return self.consumer

    def close(self) -> None:
        self.close_calls += 1
        self.router.events.append(("close_transport", self.kind))


class FakeRouter:
    def __init__(
        self,
        codecs: Optional[List[Dict[str, Any]]] = None,
        fail_transport: bool = False,
        fail_connect: bool = False,
        fail_consume: Set[str] = frozenset(),
        fail_resume: Set[str] = frozenset(),
    ) -> None:
        self.rtp_capabilities = {"codecs": list(codecs) if codecs is not None else [OPUS, VP8]}
        self.fail_transport = fail_transport
        self.fail_connect = fail_connect
        self.fail_consume = set(fail_consume)
        self.fail_resume = set(fail_resume)
        # Set to an asyncio.Event inside a test to hold consume() calls
        self.consume_gate: Optional[asyncio.Event] = None
        self.pending_consumes = 0
        self.producer_kinds: Dict[str, str] = {}
        self.transports: List[FakeTransport] = []
        self.consumers: Dict[str, FakeConsumer] = {}
        self.events: List[Tuple[str, Optional[str]]] = []

    def producer(self, kind: str) -> FakeProducer:
        producer = FakeProducer(kind)
        self.producer_kinds[producer.id] = kind
        return producer

    async def create_plain_transport(self, **options: Any) -> FakeTransport:
        if self.fail_transport:
            raise RuntimeError("no more ports")
        transport = FakeTransport(self, options)
        self.transports.append(transport)
        return transport


class FakeProcess:
    """asyncio.subprocess.Process double driven by the test."""

    def __init__(self, pid: int = 4242, sigint_returncode: Optional[int] = 0) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self.sigint_returncode = sigint_returncode
        self.signal_error: Optional[BaseException] = None
        self._exit = asyncio.get_running_loop().create_future()

    def emit(self, stream: str, text: str) -> None:
        getattr(self, stream).feed_data(text.encode("utf-8"))

    def exit(self, returncode: int) -> None:
        if self._exit.done():
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exit.set_result(returncode)

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def send_signal(self, sig: int) -> None:
        if self.signal_error is not None:
            raise self.signal_error
        if self.returncode is not None:
            raise ProcessLookupError()
        self.signals.append(sig)
        if sig == signal.SIGINT and self.sigint_returncode is not None:
            self.exit(self.sigint_returncode)


class FakeSpawner:
    """Stands in for asyncio.create_subprocess_exec."""

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.calls: List[Tuple[str, Tuple[str, ...], Dict[str, Any]]] = []
        self.process: Optional[FakeProcess] = None

    async def __call__(self, program: str, *args: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((program, args, kwargs))
        if self.error is not None:
            raise self.error
        if self.process is None:
            self.process = FakeProcess()
        return self.process


class ManualClock:
    """Sleep replacement: every sleep blocks until advance() is called."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self.pending: List[asyncio.Future] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        waiter = asyncio.get_running_loop().create_future()
        self.pending.append(waiter)
        await waiter

    def advance(self) -> None:
        pending, self.pending = self.pending, []
        for waiter in pending:
            if not waiter.done():
                waiter.set_result(None)


class InstantClock(ManualClock):
    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def ffmpeg_probe(output: str = FFMPEG_BANNER):
    calls: List[str] = []

    def probe(program: str) -> str:
        calls.append(program)
        return output

    probe.calls = calls
    return probe


async def wait_until(predicate, attempts: int = 2000) -> None:
    # Short real sleeps so work handed to a thread (to_thread) can complete
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition was never reached")


@pytest.fixture
def settings(tmp_path) -> RecordingSettings:
    return RecordingSettings(output_dir=str(tmp_path / "recordings"))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


def write_api_config(**overrides: Any) -> Path:
    """Reset the on-disk config used by the FastAPI app."""
    path = Path(TEST_CONFIG_DIR) / CONFIG_FILENAME
    path.write_text(json.dumps({**API_CONFIG, **overrides}, indent=2))
    return path


write_api_config()
