"""
Creates the paused plain-RTP sinks that forward producers to the recorder.
"""

import logging
from typing import Optional

from rtp_recording.models.config import RecordingSettings
from rtp_recording.models.session import MediaKind, RecorderEndpoint, SinkPair
from rtp_recording.services.errors import SinkProvisionError
from rtp_recording.services.routing import Consumer, PlainTransport, Producer, Router

logger = logging.getLogger(__name__)


class MediaSinkProvisioner:
    """
    Builds one SinkPair per media kind.

    The transport is send-only (comedia off, nothing comes back from the
    recorder) and keeps RTP and RTCP on separate ports because neither FFmpeg
    nor GStreamer understand "a=rtcp-mux". The consumer is created paused and
    uses the router's own capabilities: the recorder copies whatever codec
    the publisher negotiated.
    """

    def __init__(self, router: Router, settings: RecordingSettings) -> None:
        self.router = router
        self.settings = settings

    async def provision(
        self, kind: MediaKind, producer: Producer, endpoint: RecorderEndpoint
    ) -> SinkPair:
        transport: Optional[PlainTransport] = None
        consumer: Optional[Consumer] = None
        try:
            transport = await self.router.create_plain_transport(
                **{**self.settings.plain_transport, "comedia": False, "rtcp_mux": False}
            )
            await transport.connect(ip=endpoint.ip, port=endpoint.port, rtcp_port=endpoint.rtcp_port)
            self._log_tuples(kind, transport)

            consumer = await transport.consume(
                producer_id=producer.id,
                rtp_capabilities=self.router.rtp_capabilities,
                paused=True,
            )
        except Exception as exc:
            logger.error("Failed to provision %s RTP sink: %s", kind.value, exc)
            self._discard(kind, transport, consumer)
            raise SinkProvisionError(f"Could not create {kind.value} RTP sink: {exc}") from exc

        self._log_consumer(kind, consumer)
        return SinkPair(kind=kind, transport=transport, consumer=consumer)

    @staticmethod
    def _discard(
        kind: MediaKind, transport: Optional[PlainTransport], consumer: Optional[Consumer]
    ) -> None:
        for handle in (consumer, transport):
            if handle is None:
                continue
            try:
                handle.close()
            except Exception:
                logger.exception("Error closing partially created %s sink", kind.value)

    @staticmethod
    def _log_tuples(kind: MediaKind, transport: PlainTransport) -> None:
        for label, tup in (("RTP", transport.tuple), ("RTCP", transport.rtcp_tuple)):
            if tup is None:
                continue
            logger.info(
                "%s %s SEND transport connected: %s:%s <--> %s:%s (%s)",
                kind.value.upper(),
                label,
                tup.local_ip,
                tup.local_port,
                tup.remote_ip,
                tup.remote_port,
                tup.protocol,
            )

    @staticmethod
    def _log_consumer(kind: MediaKind, consumer: Consumer) -> None:
        params = consumer.rtp_parameters or {}
        encodings = params.get("encodings") or [{}]
        logger.info(
            "%s RTP SEND consumer created, kind: %s, type: %s, paused: %s, SSRC: %s CNAME: %s",
            kind.value.upper(),
            consumer.kind,
            consumer.type,
            consumer.paused,
            encodings[0].get("ssrc"),
            (params.get("rtcp") or {}).get("cname"),
        )
