"""Peer registry and per-peer media bookkeeping."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional
from uuid import uuid4

from .errors import ProtocolError, ResourceNotFoundError
from .media_engine import ConsumerHandle, Direction, MediaKind, ProducerHandle, TransportHandle

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


@dataclass(slots=True, frozen=True)
class ProducerRef:
    """A producer as seen by other peers: owner, id and media kind."""

    peer_id: str
    producer_id: str
    kind: MediaKind


@dataclass(slots=True)
class ProducerRecord:
    handle: ProducerHandle
    kind: MediaKind


@dataclass(slots=True)
class ConsumerRecord:
    handle: ConsumerHandle
    producer_id: str
    producer_peer_id: str
    kind: MediaKind

    def parameters(self) -> dict[str, Any]:
        return {
            "consumerId": self.handle.id,
            "producerId": self.producer_id,
            "producerPeerId": self.producer_peer_id,
            "kind": self.kind,
            "rtpParameters": self.handle.rtp_parameters,
        }


@dataclass
class Peer:
    """One connected participant and the engine handles it owns."""

    id: str
    connection: SignalingConnection
    room_id: Optional[str] = None
    rtp_capabilities: Optional[dict[str, Any]] = None
    transports: Dict[Direction, TransportHandle] = field(default_factory=dict)
    producers: Dict[str, ProducerRecord] = field(default_factory=dict)
    consumers: Dict[str, ConsumerRecord] = field(default_factory=dict)
    pending: Deque[ProducerRef] = field(default_factory=deque)
    closing: bool = False

    @property
    def receive_ready(self) -> bool:
        """A peer can consume once it has a recv transport and known capabilities."""

        return "recv" in self.transports and self.rtp_capabilities is not None

    def attach_transport(self, transport: TransportHandle) -> None:
        if transport.direction in self.transports:
            raise ProtocolError(f"A {transport.direction} transport already exists")
        self.transports[transport.direction] = transport

    def transport(self, transport_id: str) -> TransportHandle:
        for transport in self.transports.values():
            if transport.id == transport_id:
                return transport
        raise ResourceNotFoundError("Transport not found")

    def detach_transport(self, transport_id: str) -> Optional[TransportHandle]:
        for direction, transport in list(self.transports.items()):
            if transport.id == transport_id:
                return self.transports.pop(direction)
        return None

    def consumer(self, consumer_id: str) -> ConsumerRecord:
        record = self.consumers.get(consumer_id)
        if record is None:
            raise ResourceNotFoundError("Consumer not found")
        return record

    def consumer_for_producer(self, producer_id: str) -> Optional[ConsumerRecord]:
        for record in self.consumers.values():
            if record.producer_id == producer_id:
                return record
        return None

    def producer_refs(self) -> list[ProducerRef]:
        return [ProducerRef(self.id, producer_id, record.kind) for producer_id, record in self.producers.items()]


class PeerRegistry:
    """Own the set of connected peers and the global producer index."""

    def __init__(self) -> None:
        self._peers: Dict[str, Peer] = {}
        self._producer_owners: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    def register(self, connection: SignalingConnection) -> str:
        """Create a peer for a new connection and return its id."""

        peer_id = f"peer_{uuid4().hex}"
        while peer_id in self._peers:
            peer_id = f"peer_{uuid4().hex}"
        self._peers[peer_id] = Peer(id=peer_id, connection=connection)
        return peer_id

    def get(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    def require(self, peer_id: str) -> Peer:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise ResourceNotFoundError("Peer not found")
        return peer

    def is_current(self, peer: Peer) -> bool:
        """True while ``peer`` is still the registered, non-closing peer for its id."""

        return self._peers.get(peer.id) is peer and not peer.closing

    def remove(self, peer_id: str) -> None:
        """Drop bookkeeping for a peer. Engine teardown must already have happened."""

        peer = self._peers.pop(peer_id, None)
        if peer is None:
            return
        for producer_id in peer.producers:
            if self._producer_owners.get(producer_id) == peer_id:
                self._producer_owners.pop(producer_id, None)

    def record_producer(self, peer: Peer, handle: ProducerHandle) -> ProducerRef:
        if handle.id in self._producer_owners:
            raise ProtocolError(f"Duplicate producer id {handle.id}")
        peer.producers[handle.id] = ProducerRecord(handle=handle, kind=handle.kind)
        self._producer_owners[handle.id] = peer.id
        return ProducerRef(peer.id, handle.id, handle.kind)

    def forget_producer(self, peer: Peer, producer_id: str) -> Optional[ProducerRecord]:
        record = peer.producers.pop(producer_id, None)
        if record is not None and self._producer_owners.get(producer_id) == peer.id:
            self._producer_owners.pop(producer_id, None)
        return record

    def find_producer(self, producer_id: str) -> Optional[tuple[Peer, ProducerRecord]]:
        owner_id = self._producer_owners.get(producer_id)
        owner = self._peers.get(owner_id) if owner_id else None
        if owner is None:
            return None
        record = owner.producers.get(producer_id)
        if record is None:
            return None
        return owner, record

    def all(self) -> list[Peer]:
        return list(self._peers.values())
