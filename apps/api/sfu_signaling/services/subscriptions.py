"""Matching of peers to the producers in their room.

Every peer must end up consuming every producer in its room, whatever order the peers joined
and set up their transports in. Producers a peer learns about before it can consume (from the
join snapshot, or live while its recv transport is still missing) are parked on the peer's
pending queue. The queue is drained once, on the transition into "receive ready", and anything
offered after that point is consumed straight away.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol

from .errors import NegotiationError, ProtocolError, ResourceNotFoundError
from .media_engine import MediaEngine, ProducerHandle
from .peers import ConsumerRecord, Peer, PeerRegistry, ProducerRef
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)


class Outbox(Protocol):
    """Delivery seam used by the coordinator to reach peers."""

    async def send(self, peer_id: str, message_type: str, payload: dict[str, Any]) -> None:
        """Write a frame to the peer's connection."""

    def post(self, peer_id: str, message_type: str, payload: dict[str, Any]) -> None:
        """Queue an internal message on the peer's own inbox."""

    async def broadcast(self, peer_ids: Iterable[str], message_type: str, payload: dict[str, Any]) -> None:
        """Write the same frame to several peers."""


@dataclass(slots=True)
class RoomSnapshot:
    room_id: str
    peers: list[str]
    existing_producers: list[dict[str, Any]] = field(default_factory=list)
    refs: list[ProducerRef] = field(default_factory=list)

    def payload(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "peers": self.peers,
            "existingProducers": self.existing_producers,
        }


class SubscriptionCoordinator:
    """Decide when a (peer, producer) pair becomes a consumer."""

    def __init__(self, engine: MediaEngine, peers: PeerRegistry, rooms: RoomRegistry, outbox: Outbox) -> None:
        self._engine = engine
        self._peers = peers
        self._rooms = rooms
        self._outbox = outbox

    def snapshot_room(self, peer: Peer, room_id: str) -> RoomSnapshot:
        """Join ``peer`` to the room and capture what was already there."""

        if peer.room_id is not None:
            raise ProtocolError(f"Already joined room {peer.room_id}")

        existing = self._rooms.join(room_id, peer.id)
        peer.room_id = room_id

        snapshot = RoomSnapshot(room_id=room_id, peers=existing)
        for member_id in existing:
            member = self._peers.get(member_id)
            if member is None or member.closing:
                continue
            refs = member.producer_refs()
            if not refs:
                continue
            snapshot.existing_producers.append(
                {
                    "peerId": member_id,
                    "producers": [{"producerId": ref.producer_id, "kind": ref.kind} for ref in refs],
                }
            )
            snapshot.refs.extend(refs)
        return snapshot

    async def on_peer_joins_room(self, peer: Peer, room_id: str) -> RoomSnapshot:
        snapshot = self.snapshot_room(peer, room_id)
        logger.info("Peer %s joined room %s (%d already present)", peer.id, room_id, len(snapshot.peers))

        await self._outbox.send(peer.id, "roomJoined", snapshot.payload())
        await self._outbox.broadcast(snapshot.peers, "newPeer", {"peerId": peer.id})

        for ref in snapshot.refs:
            if not self._peers.is_current(peer):
                break
            await self.offer(peer, ref)
        return snapshot

    async def on_producer_created(self, peer: Peer, handle: ProducerHandle) -> Optional[ProducerRef]:
        """Record a new producer and tell the rest of the room about it."""

        if not self._peers.is_current(peer):
            await self._engine.close(handle)
            return None

        ref = self._peers.record_producer(peer, handle)
        members = [member for member in self._room_members(peer) if member != peer.id]
        logger.info("Created %s producer %s for peer %s", ref.kind, ref.producer_id, peer.id)

        await self._outbox.send(peer.id, "produced", {"producerId": ref.producer_id, "kind": ref.kind})
        notice = {"peerId": peer.id, "producerId": ref.producer_id, "kind": ref.kind}
        for member_id in members:
            await self._outbox.send(member_id, "newProducer", notice)
            self._outbox.post(member_id, "producerAvailable", notice)
        return ref

    async def offer(self, peer: Peer, ref: ProducerRef) -> Optional[ConsumerRecord]:
        """Consume ``ref`` now if the peer can, otherwise park it on the pending queue."""

        if ref.peer_id == peer.id:
            return None
        if peer.receive_ready:
            return await self.consume(peer, ref.producer_id, peer.rtp_capabilities, automatic=True)
        if ref not in peer.pending:
            peer.pending.append(ref)
        return None

    async def update_capabilities(self, peer: Peer, rtp_capabilities: dict[str, Any]) -> None:
        was_ready = peer.receive_ready
        peer.rtp_capabilities = rtp_capabilities
        await self.refresh_readiness(peer, was_ready)

    async def refresh_readiness(self, peer: Peer, was_ready: bool) -> None:
        if not was_ready and peer.receive_ready:
            await self.on_receive_transport_ready(peer)

    async def on_receive_transport_ready(self, peer: Peer) -> None:
        """Drain the pending queue in arrival order."""

        entries = list(peer.pending)
        peer.pending.clear()
        if entries:
            logger.info("Consuming %d pending producer(s) for peer %s", len(entries), peer.id)
        for ref in entries:
            if not self._peers.is_current(peer):
                return
            await self.consume(peer, ref.producer_id, peer.rtp_capabilities, automatic=True)

    async def consume(
        self,
        peer: Peer,
        producer_id: str,
        rtp_capabilities: Optional[dict[str, Any]],
        *,
        automatic: bool = False,
    ) -> Optional[ConsumerRecord]:
        """Create a paused consumer for ``producer_id`` on the peer's recv transport.

        Automatic subscriptions that cannot materialize (producer gone, codecs incompatible)
        are skipped quietly; explicit requests raise so the caller gets an error reply.
        """

        existing = peer.consumer_for_producer(producer_id)
        if existing is not None:
            if not automatic:
                await self._outbox.send(peer.id, "consumed", existing.parameters())
            return existing

        try:
            return await self._create_consumer(peer, producer_id, rtp_capabilities or {})
        except (NegotiationError, ResourceNotFoundError) as exc:
            if not automatic:
                raise
            logger.info("Skipped producer %s for peer %s: %s", producer_id, peer.id, exc)
            return None

    async def _create_consumer(
        self, peer: Peer, producer_id: str, rtp_capabilities: dict[str, Any]
    ) -> Optional[ConsumerRecord]:
        found = self._peers.find_producer(producer_id)
        if found is None:
            raise ResourceNotFoundError("Producer not found")
        owner, _ = found

        transport = peer.transports.get("recv")
        if transport is None:
            raise ResourceNotFoundError("Recv transport not found")

        if not self._engine.can_consume(producer_id, rtp_capabilities):
            raise NegotiationError(f"Cannot consume producer {producer_id}")

        handle = await self._engine.consume(transport, producer_id, rtp_capabilities)

        if not self._peers.is_current(peer) or transport.closed or self._peers.find_producer(producer_id) is None:
            await self._engine.close(handle)
            return None
        existing = peer.consumer_for_producer(producer_id)
        if existing is not None:
            await self._engine.close(handle)
            await self._outbox.send(peer.id, "consumed", existing.parameters())
            return existing

        record = ConsumerRecord(handle=handle, producer_id=producer_id, producer_peer_id=owner.id, kind=handle.kind)
        peer.consumers[handle.id] = record
        logger.info("Created consumer %s for peer %s (producer %s)", handle.id, peer.id, producer_id)
        await self._outbox.send(peer.id, "consumed", record.parameters())
        return record

    async def resume(self, peer: Peer, consumer_id: str) -> None:
        record = peer.consumer(consumer_id)
        await self._engine.resume(record.handle)
        if self._peers.is_current(peer):
            await self._outbox.send(peer.id, "consumerResumed", {"consumerId": consumer_id})

    async def close_consumer(self, peer: Peer, consumer_id: str) -> None:
        record = peer.consumer(consumer_id)
        peer.consumers.pop(consumer_id, None)
        await self._engine.close(record.handle)
        await self._outbox.send(
            peer.id, "consumerClosed", {"consumerId": consumer_id, "producerId": record.producer_id}
        )

    async def close_producer(self, peer: Peer, producer_id: str) -> None:
        record = self._peers.forget_producer(peer, producer_id)
        if record is None:
            raise ResourceNotFoundError("Producer not found")
        await self._engine.close(record.handle)
        notice = {"peerId": peer.id, "producerId": producer_id}
        await self._outbox.send(peer.id, "producerClosed", notice)
        await self.announce_producer_closed(peer, producer_id)

    async def announce_producer_closed(self, peer: Peer, producer_id: str) -> None:
        """Let every other room member drop its subscription to ``producer_id``."""

        notice = {"peerId": peer.id, "producerId": producer_id}
        for member_id in self._room_members(peer):
            if member_id == peer.id:
                continue
            self._outbox.post(member_id, "producerClosed", notice)
            await self._outbox.send(member_id, "producerClosed", notice)

    async def on_producer_closed(self, peer: Peer, producer_id: str) -> None:
        """Drop this peer's pending entry and consumer for a producer that went away."""

        for ref in [ref for ref in peer.pending if ref.producer_id == producer_id]:
            peer.pending.remove(ref)

        record = peer.consumer_for_producer(producer_id)
        if record is None:
            return
        peer.consumers.pop(record.handle.id, None)
        await self._engine.close(record.handle)
        await self._outbox.send(
            peer.id, "consumerClosed", {"consumerId": record.handle.id, "producerId": producer_id}
        )

    def _room_members(self, peer: Peer) -> list[str]:
        if peer.room_id is None:
            return []
        return self._rooms.members_of(peer.room_id)
