"""Disconnect and transport-loss cleanup."""
from __future__ import annotations

import logging

from .errors import SignalingError
from .media_engine import Handle, MediaEngine
from .peers import Peer, PeerRegistry
from .rooms import RoomRegistry
from .subscriptions import Outbox, SubscriptionCoordinator

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Tear down a peer's engine handles and bookkeeping in a fixed order."""

    def __init__(
        self,
        engine: MediaEngine,
        peers: PeerRegistry,
        rooms: RoomRegistry,
        coordinator: SubscriptionCoordinator,
        outbox: Outbox,
    ) -> None:
        self._engine = engine
        self._peers = peers
        self._rooms = rooms
        self._coordinator = coordinator
        self._outbox = outbox

    async def on_disconnect(self, peer_id: str) -> None:
        """Close transports, leave the room, notify the room, then forget the peer.

        Safe to call more than once and while a request for the peer is suspended: the first
        call marks the peer as closing and later calls return immediately.
        """

        peer = self._peers.get(peer_id)
        if peer is None or peer.closing:
            return
        peer.closing = True
        logger.info("Peer disconnected: %s", peer_id)

        transports = list(peer.transports.values())
        peer.transports.clear()
        producer_ids = list(peer.producers)
        for producer_id in producer_ids:
            self._peers.forget_producer(peer, producer_id)
        peer.consumers.clear()
        peer.pending.clear()

        room_id = peer.room_id
        remaining: list[str] = []
        if room_id is not None:
            remaining = self._rooms.leave(room_id, peer_id)
            peer.room_id = None

        try:
            for transport in transports:
                await self._close(transport)
        finally:
            for member_id in remaining:
                for producer_id in producer_ids:
                    self._outbox.post(member_id, "producerClosed", {"peerId": peer_id, "producerId": producer_id})
            await self._outbox.broadcast(remaining, "peerLeft", {"peerId": peer_id})
            self._peers.remove(peer_id)

    async def on_transport_closed(self, peer: Peer, transport_id: str) -> None:
        """Forget a transport the engine closed underneath the peer."""

        transport = peer.detach_transport(transport_id)
        if transport is None:
            return
        logger.info("%s transport %s closed for peer %s", transport.direction, transport_id, peer.id)

        for producer_id, record in list(peer.producers.items()):
            if record.handle.transport_id != transport_id:
                continue
            self._peers.forget_producer(peer, producer_id)
            await self._close(record.handle)
            await self._outbox.send(peer.id, "producerClosed", {"peerId": peer.id, "producerId": producer_id})
            await self._coordinator.announce_producer_closed(peer, producer_id)

        for consumer_id, record in list(peer.consumers.items()):
            if record.handle.transport_id != transport_id:
                continue
            peer.consumers.pop(consumer_id, None)
            await self._close(record.handle)
            await self._outbox.send(
                peer.id, "consumerClosed", {"consumerId": consumer_id, "producerId": record.producer_id}
            )

        await self._close(transport)

    async def _close(self, handle: Handle) -> None:
        try:
            await self._engine.close(handle)
        except SignalingError as exc:
            logger.warning("Failed to close %s %s: %s", type(handle).__name__, handle.id, exc)
