"""
Interfaces the recording session expects from the media routing engine.

Only the surface used by the sink provisioner and the controller is described
here; any SFU binding exposing these attributes and coroutines can be attached.
"""

from typing import Any, Dict, Optional, Protocol


class TransportTuple(Protocol):
    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    protocol: str


class Producer(Protocol):
    id: str
    kind: str
    type: str
    paused: bool
    rtp_parameters: Dict[str, Any]


class Consumer(Protocol):
    id: str
    kind: str
    type: str
    paused: bool
    rtp_parameters: Dict[str, Any]

    async def resume(self) -> None: ...

    def close(self) -> None: ...


class PlainTransport(Protocol):
    tuple: TransportTuple
    rtcp_tuple: Optional[TransportTuple]

    async def connect(self, ip: str, port: int, rtcp_port: int) -> None: ...

    async def consume(
        self, producer_id: str, rtp_capabilities: Dict[str, Any], paused: bool
    ) -> Consumer: ...

    def close(self) -> None: ...


class Router(Protocol):
    rtp_capabilities: Dict[str, Any]

    async def create_plain_transport(self, **options: Any) -> PlainTransport: ...
