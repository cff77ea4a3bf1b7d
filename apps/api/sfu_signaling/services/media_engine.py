"""Media engine adapter.

The orchestrator never forwards media itself. Everything codec, ICE/DTLS or RTP related is
delegated to an engine that implements :class:`MediaEngine`. The loopback engine below keeps
the same contract in-process so the signaling layer can run without an external SFU worker."""
from __future__ import annotations

import itertools
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol
from uuid import uuid4

from .errors import EngineUnavailableError, NegotiationError, ProtocolError, ResourceNotFoundError

Direction = Literal["send", "recv"]
MediaKind = Literal["audio", "video"]
FatalListener = Callable[[str], None]
TransportListener = Callable[["TransportHandle", str], None]

logger = logging.getLogger(__name__)

# ICE host candidate priorities, preferred protocol first.
_CANDIDATE_PRIORITIES = (1076302079, 1076276479)


@dataclass(slots=True)
class TransportHandle:
    id: str
    direction: Direction
    ice_parameters: dict[str, Any]
    ice_candidates: list[dict[str, Any]]
    dtls_parameters: dict[str, Any]
    initial_available_outgoing_bitrate: int = 0
    connected: bool = False
    closed: bool = False

    def connection_parameters(self) -> dict[str, Any]:
        return {
            "iceParameters": self.ice_parameters,
            "iceCandidates": self.ice_candidates,
            "dtlsParameters": self.dtls_parameters,
            "initialAvailableOutgoingBitrate": self.initial_available_outgoing_bitrate,
        }


@dataclass(slots=True)
class ProducerHandle:
    id: str
    transport_id: str
    kind: MediaKind
    rtp_parameters: dict[str, Any]
    closed: bool = False


@dataclass(slots=True)
class ConsumerHandle:
    id: str
    transport_id: str
    producer_id: str
    kind: MediaKind
    rtp_parameters: dict[str, Any]
    paused: bool = True
    closed: bool = False


Handle = TransportHandle | ProducerHandle | ConsumerHandle


class MediaEngine(Protocol):
    """Operations the orchestrator needs from the media engine.

    Consumers returned by :meth:`consume` must be created paused. ``close`` must accept any
    handle the engine returned and be safe to call on an already-closed handle.
    """

    @property
    def alive(self) -> bool:
        ...

    def get_capabilities(self) -> dict[str, Any]:
        ...

    async def create_transport(self, direction: Direction) -> TransportHandle:
        ...

    async def connect_transport(self, transport: TransportHandle, dtls_parameters: dict[str, Any]) -> None:
        ...

    async def produce(
        self, transport: TransportHandle, kind: MediaKind, rtp_parameters: dict[str, Any]
    ) -> ProducerHandle:
        ...

    def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        ...

    async def consume(
        self, transport: TransportHandle, producer_id: str, rtp_capabilities: dict[str, Any]
    ) -> ConsumerHandle:
        ...

    async def resume(self, consumer: ConsumerHandle) -> None:
        ...

    async def close(self, handle: Handle) -> None:
        ...

    def add_fatal_listener(self, listener: FatalListener) -> None:
        ...

    def add_transport_listener(self, listener: TransportListener) -> None:
        ...


def _mime(codec: dict[str, Any]) -> str:
    return str(codec.get("mimeType", "")).lower()


@dataclass
class LoopbackMediaEngine:
    """In-process engine honouring the :class:`MediaEngine` contract."""

    media_codecs: list[dict[str, Any]]
    announced_ip: str = "127.0.0.1"
    rtc_min_port: int = 10000
    rtc_max_port: int = 10100
    enable_udp: bool = True
    enable_tcp: bool = True
    prefer_udp: bool = True
    initial_available_outgoing_bitrate: int = 1_000_000
    _alive: bool = field(default=True, init=False)
    _transports: dict[str, TransportHandle] = field(default_factory=dict, init=False)
    _producers: dict[str, ProducerHandle] = field(default_factory=dict, init=False)
    _consumers: dict[str, ConsumerHandle] = field(default_factory=dict, init=False)
    _fatal_listeners: list[FatalListener] = field(default_factory=list, init=False)
    _transport_listeners: list[TransportListener] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self._ports = itertools.cycle(range(self.rtc_min_port, self.rtc_max_port + 1))
        self._mids = itertools.count()
        self._capabilities = {
            "codecs": [
                {**codec, "preferredPayloadType": 100 + index}
                for index, codec in enumerate(self.media_codecs)
            ],
            "headerExtensions": [],
        }

    @property
    def alive(self) -> bool:
        return self._alive

    def get_capabilities(self) -> dict[str, Any]:
        self._ensure_alive()
        return self._capabilities

    async def create_transport(self, direction: Direction) -> TransportHandle:
        self._ensure_alive()
        transport = TransportHandle(
            id=str(uuid4()),
            direction=direction,
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=self._candidates(next(self._ports)),
            dtls_parameters={
                "role": "auto",
                "fingerprints": [{"algorithm": "sha-256", "value": secrets.token_hex(32)}],
            },
            initial_available_outgoing_bitrate=self.initial_available_outgoing_bitrate,
        )
        self._transports[transport.id] = transport
        return transport

    async def connect_transport(self, transport: TransportHandle, dtls_parameters: dict[str, Any]) -> None:
        self._ensure_alive()
        self._ensure_open(transport)
        if transport.connected:
            raise ProtocolError("Transport already connected")
        if not isinstance(dtls_parameters, dict) or not dtls_parameters.get("fingerprints"):
            raise ProtocolError("dtlsParameters must include fingerprints")
        transport.connected = True

    async def produce(
        self, transport: TransportHandle, kind: MediaKind, rtp_parameters: dict[str, Any]
    ) -> ProducerHandle:
        self._ensure_alive()
        self._ensure_open(transport)
        if transport.direction != "send":
            raise ProtocolError("Cannot produce on a recv transport")
        supported = {_mime(codec) for codec in self.media_codecs if codec.get("kind") == kind}
        offered = {_mime(codec) for codec in rtp_parameters.get("codecs", [])}
        if offered and not offered & supported:
            raise NegotiationError(f"No supported {kind} codec offered")
        producer = ProducerHandle(
            id=str(uuid4()),
            transport_id=transport.id,
            kind=kind,
            rtp_parameters=rtp_parameters,
        )
        self._producers[producer.id] = producer
        return producer

    def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None or producer.closed or not self._alive:
            return False
        return bool(self._matching_codecs(producer, rtp_capabilities))

    async def consume(
        self, transport: TransportHandle, producer_id: str, rtp_capabilities: dict[str, Any]
    ) -> ConsumerHandle:
        self._ensure_alive()
        self._ensure_open(transport)
        if transport.direction != "recv":
            raise ProtocolError("Cannot consume on a send transport")
        producer = self._producers.get(producer_id)
        if producer is None or producer.closed:
            raise ResourceNotFoundError("Producer not found")
        codecs = self._matching_codecs(producer, rtp_capabilities)
        if not codecs:
            raise NegotiationError(f"Cannot consume producer {producer_id}")
        consumer = ConsumerHandle(
            id=str(uuid4()),
            transport_id=transport.id,
            producer_id=producer_id,
            kind=producer.kind,
            rtp_parameters={
                "mid": str(next(self._mids)),
                "codecs": codecs,
                "encodings": [{"ssrc": secrets.randbelow(2**32)}],
            },
        )
        self._consumers[consumer.id] = consumer
        return consumer

    async def resume(self, consumer: ConsumerHandle) -> None:
        self._ensure_alive()
        if consumer.closed:
            raise ResourceNotFoundError("Consumer not found")
        consumer.paused = False

    async def close(self, handle: Handle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if isinstance(handle, TransportHandle):
            self._transports.pop(handle.id, None)
            for producer in [p for p in self._producers.values() if p.transport_id == handle.id]:
                await self.close(producer)
            for consumer in [c for c in self._consumers.values() if c.transport_id == handle.id]:
                await self.close(consumer)
        elif isinstance(handle, ProducerHandle):
            self._producers.pop(handle.id, None)
            for consumer in [c for c in self._consumers.values() if c.producer_id == handle.id]:
                await self.close(consumer)
        else:
            self._consumers.pop(handle.id, None)

    def add_fatal_listener(self, listener: FatalListener) -> None:
        self._fatal_listeners.append(listener)

    def add_transport_listener(self, listener: TransportListener) -> None:
        self._transport_listeners.append(listener)

    async def drop_transport(self, transport_id: str, reason: str = "dtls-closed") -> None:
        """Close a transport from the engine side, as when its DTLS session ends."""

        transport = self._transports.get(transport_id)
        if transport is None:
            return
        await self.close(transport)
        for listener in list(self._transport_listeners):
            listener(transport, reason)

    def fail(self, reason: str) -> None:
        """Mark the engine unusable and notify fatal listeners."""

        if not self._alive:
            return
        self._alive = False
        logger.critical("Media engine failed: %s", reason)
        for listener in list(self._fatal_listeners):
            listener(reason)

    def _candidates(self, port: int) -> list[dict[str, Any]]:
        protocols = [protocol for protocol, enabled in (("udp", self.enable_udp), ("tcp", self.enable_tcp)) if enabled]
        preferred = "udp" if self.prefer_udp else "tcp"
        protocols.sort(key=lambda protocol: protocol != preferred)
        candidates = []
        for rank, protocol in enumerate(protocols):
            candidate = {
                "foundation": f"{protocol}candidate",
                "priority": _CANDIDATE_PRIORITIES[rank],
                "ip": self.announced_ip,
                "protocol": protocol,
                "port": port,
                "type": "host",
            }
            if protocol == "tcp":
                candidate["tcpType"] = "passive"
            candidates.append(candidate)
        return candidates

    def _matching_codecs(self, producer: ProducerHandle, rtp_capabilities: dict[str, Any]) -> list[dict[str, Any]]:
        wanted = {_mime(codec) for codec in (rtp_capabilities or {}).get("codecs", [])}
        source = producer.rtp_parameters.get("codecs") or [
            codec for codec in self._capabilities["codecs"] if codec.get("kind") == producer.kind
        ]
        return [codec for codec in source if _mime(codec) in wanted]

    def _ensure_alive(self) -> None:
        if not self._alive:
            raise EngineUnavailableError("Media engine is not available")

    @staticmethod
    def _ensure_open(transport: TransportHandle) -> None:
        if transport.closed:
            raise ResourceNotFoundError("Transport not found")
