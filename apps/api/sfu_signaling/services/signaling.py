"""In-memory signaling router.

Every peer gets an inbox drained by one worker task, so messages from a single connection are
handled strictly in arrival order while other peers keep making progress whenever a handler
is suspended on the media engine. Engine notifications and cross-peer effects are posted into
the same inboxes as internal messages instead of being acted on from callbacks.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from ..schemas.signaling import (
    ConnectTransportRequest,
    ConsumeRequest,
    ConsumerRequest,
    CreateTransportRequest,
    JoinRoomRequest,
    ProduceRequest,
    ProducerNotice,
    ProducerRequest,
    SignalingMessage,
    TransportNotice,
    describe_validation_error,
)
from .errors import EngineUnavailableError, ProtocolError, ResourceNotFoundError, SignalingError
from .lifecycle import LifecycleManager
from .media_engine import MediaEngine, TransportHandle
from .peers import Peer, PeerRegistry, ProducerRef, SignalingConnection
from .rooms import RoomRegistry
from .subscriptions import SubscriptionCoordinator

Handler = Callable[[Peer, dict[str, Any]], Awaitable[None]]
FatalHook = Callable[[str], None]

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(slots=True)
class _Envelope:
    raw: Any
    internal: bool = False


class _Inbox:
    """FIFO drained by a single worker task."""

    def __init__(self, name: str, handler: Callable[[Any], Awaitable[None]]) -> None:
        self.name = name
        self._handler = handler
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pending = 0
        self._task = asyncio.create_task(self._run(), name=f"inbox:{name}")

    @property
    def idle(self) -> bool:
        return self._pending == 0

    def put(self, item: Any) -> None:
        self._pending += 1
        self._queue.put_nowait(item)

    def stop(self) -> None:
        self.put(_STOP)

    async def join(self) -> None:
        await self._queue.join()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait_closed(self) -> None:
        await self._task

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._handler(item)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Inbox %s failed: %s", self.name, exc)
            finally:
                self._pending -= 1
                self._queue.task_done()


class SignalingRouter:
    """Validate inbound frames, dispatch them and fan out replies and notices."""

    def __init__(
        self,
        engine: MediaEngine,
        peers: PeerRegistry | None = None,
        rooms: RoomRegistry | None = None,
        *,
        on_fatal: FatalHook | None = None,
    ) -> None:
        self._engine = engine
        self._peers = peers or PeerRegistry()
        self._rooms = rooms or RoomRegistry()
        self._on_fatal = on_fatal
        self._inboxes: Dict[str, _Inbox] = {}
        self._engine_inbox: Optional[_Inbox] = None
        self._retired: list[_Inbox] = []
        self.accepting = True

        self.coordinator = SubscriptionCoordinator(engine, self._peers, self._rooms, self)
        self.lifecycle = LifecycleManager(engine, self._peers, self._rooms, self.coordinator, self)

        self._handlers: Dict[str, Handler] = {
            "getRouterRtpCapabilities": self._get_router_capabilities,
            "joinRoom": self._join_room,
            "createTransport": self._create_transport,
            "connectTransport": self._connect_transport,
            "produce": self._produce,
            "consume": self._consume,
            "resumeConsumer": self._resume_consumer,
            "closeProducer": self._close_producer,
            "closeConsumer": self._close_consumer,
        }
        self._internal_handlers: Dict[str, Handler] = {
            "producerAvailable": self._producer_available,
            "producerClosed": self._producer_closed,
            "transportClosed": self._transport_closed,
        }

        engine.add_fatal_listener(self._engine_failed)
        engine.add_transport_listener(self._engine_transport_closed)

    @property
    def engine(self) -> MediaEngine:
        return self._engine

    @property
    def peers(self) -> PeerRegistry:
        return self._peers

    @property
    def rooms(self) -> RoomRegistry:
        return self._rooms

    def stats(self) -> dict[str, int]:
        return {"rooms": len(self._rooms), "peers": len(self._peers)}

    def start(self) -> None:
        """Start the engine-event worker. Needs a running event loop."""

        if self._engine_inbox is None:
            self._engine_inbox = _Inbox("engine", self._dispatch_engine)

    async def connect(self, connection: SignalingConnection) -> str:
        """Register a new connection and greet it with its peer id."""

        if not self.accepting:
            raise EngineUnavailableError("Media engine is not available")
        self.start()
        peer_id = self._peers.register(connection)
        self._inboxes[peer_id] = _Inbox(peer_id, partial(self.dispatch, peer_id))
        logger.info("New peer connected: %s", peer_id)
        await self.send(peer_id, "connected", {"peerId": peer_id})
        return peer_id

    def deliver(self, peer_id: str, raw: Any) -> None:
        """Queue a frame received from the peer's connection."""

        inbox = self._inboxes.get(peer_id)
        if inbox is not None:
            inbox.put(_Envelope(raw))

    def post(self, peer_id: str, message_type: str, payload: dict[str, Any]) -> None:
        inbox = self._inboxes.get(peer_id)
        if inbox is not None:
            inbox.put(_Envelope({"type": message_type, "payload": payload}, internal=True))

    async def disconnect(self, peer_id: str) -> None:
        inbox = self._inboxes.pop(peer_id, None)
        try:
            await self.lifecycle.on_disconnect(peer_id)
        finally:
            if inbox is not None:
                inbox.stop()
                self._retired = [retired for retired in self._retired if not retired.done]
                self._retired.append(inbox)

    async def send(self, peer_id: str, message_type: str, payload: dict[str, Any]) -> None:
        peer = self._peers.get(peer_id)
        if peer is None or peer.closing:
            return
        try:
            await peer.connection.send({"type": message_type, "payload": payload})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed sending '%s' to peer %s: %s", message_type, peer_id, exc)

    async def broadcast(self, peer_ids: Iterable[str], message_type: str, payload: dict[str, Any]) -> None:
        tasks = [self.send(peer_id, message_type, payload) for peer_id in peer_ids]
        if tasks:
            await asyncio.gather(*tasks)

    async def settle(self) -> None:
        """Wait until every inbox, including work queued while waiting, has drained."""

        while True:
            inboxes = list(self._inboxes.values()) + self._retired
            if self._engine_inbox is not None:
                inboxes.append(self._engine_inbox)
            busy = [inbox for inbox in inboxes if not inbox.idle]
            if not busy:
                return
            await asyncio.gather(*(inbox.join() for inbox in busy))

    async def close(self) -> None:
        """Disconnect every peer and stop all workers."""

        for peer_id in list(self._inboxes):
            await self.disconnect(peer_id)
        inboxes, self._retired = self._retired, []
        if self._engine_inbox is not None:
            self._engine_inbox.stop()
            inboxes.append(self._engine_inbox)
            self._engine_inbox = None
        await asyncio.gather(*(inbox.wait_closed() for inbox in inboxes))

    async def dispatch(self, peer_id: str, envelope: _Envelope) -> None:
        peer = self._peers.get(peer_id)
        if peer is None or peer.closing:
            return
        if envelope.internal:
            await self._dispatch_internal(peer, envelope.raw)
            return

        try:
            message = self._parse(envelope.raw)
        except ProtocolError as exc:
            await self._reply_error(peer_id, "message", str(exc))
            return

        if not self.accepting:
            await self._reply_error(peer_id, message.type, "Media engine is not available")
            return

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning("Unknown message type '%s' from peer %s", message.type, peer_id)
            await self.send(
                peer_id,
                "warning",
                {"message": f"Unknown message type: {message.type}", "type": message.type},
            )
            return

        logger.debug("Received '%s' from peer %s", message.type, peer_id)
        try:
            await handler(peer, message.payload)
        except ValidationError as exc:
            await self._reply_error(peer_id, message.type, describe_validation_error(exc))
        except SignalingError as exc:
            await self._reply_error(peer_id, message.type, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed handling '%s' from peer %s: %s", message.type, peer_id, exc)
            await self.send(peer_id, "error", {"message": f"Failed to handle {message.type}"})

    async def _dispatch_internal(self, peer: Peer, message: dict[str, Any]) -> None:
        handler = self._internal_handlers.get(message["type"])
        if handler is None:
            logger.warning("Dropping unknown internal message '%s'", message["type"])
            return
        try:
            await handler(peer, message["payload"])
        except SignalingError as exc:
            logger.warning("Internal '%s' for peer %s failed: %s", message["type"], peer.id, exc)

    async def _dispatch_engine(self, envelope: _Envelope) -> None:
        message = envelope.raw
        if message["type"] == "engineFailed":
            self._handle_engine_failure(message["payload"]["reason"])

    @staticmethod
    def _parse(raw: Any) -> SignalingMessage:
        try:
            if isinstance(raw, (str, bytes)):
                return SignalingMessage.model_validate_json(raw)
            return SignalingMessage.model_validate(raw)
        except ValidationError as exc:
            raise ProtocolError("Malformed message: expected a {type, payload} object") from exc

    async def _reply_error(self, peer_id: str, message_type: str, text: str) -> None:
        logger.warning("Rejected '%s' from peer %s: %s", message_type, peer_id, text)
        await self.send(peer_id, "error", {"message": text})

    # Client requests

    async def _get_router_capabilities(self, peer: Peer, payload: dict[str, Any]) -> None:
        await self.send(peer.id, "routerRtpCapabilities", {"rtpCapabilities": self._engine.get_capabilities()})

    async def _join_room(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = JoinRoomRequest.model_validate(payload)
        await self.coordinator.on_peer_joins_room(peer, request.room_id)
        if request.rtp_capabilities is not None and self._peers.is_current(peer):
            await self.coordinator.update_capabilities(peer, request.rtp_capabilities)

    async def _create_transport(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = CreateTransportRequest.model_validate(payload)
        if request.direction in peer.transports:
            raise ProtocolError(f"A {request.direction} transport already exists")

        transport = await self._engine.create_transport(request.direction)
        if not self._peers.is_current(peer):
            await self._engine.close(transport)
            return

        was_ready = peer.receive_ready
        try:
            peer.attach_transport(transport)
        except ProtocolError:
            await self._engine.close(transport)
            raise
        if request.rtp_capabilities is not None:
            peer.rtp_capabilities = request.rtp_capabilities
        logger.info("Created %s transport %s for peer %s", transport.direction, transport.id, peer.id)

        await self.send(
            peer.id,
            "transportCreated",
            {"transportId": transport.id, **transport.connection_parameters(), "direction": transport.direction},
        )
        await self.coordinator.refresh_readiness(peer, was_ready)

    async def _connect_transport(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ConnectTransportRequest.model_validate(payload)
        transport = peer.transport(request.transport_id)
        await self._engine.connect_transport(transport, request.dtls_parameters)
        if self._peers.is_current(peer):
            await self.send(peer.id, "transportConnected", {"transportId": transport.id})

    async def _produce(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ProduceRequest.model_validate(payload)
        transport = peer.transport(request.transport_id)
        if transport.direction != "send":
            raise ProtocolError("Producing requires a send transport")

        handle = await self._engine.produce(transport, request.kind, request.rtp_parameters)
        if transport.closed:
            await self._engine.close(handle)
            raise ResourceNotFoundError("Transport not found")
        await self.coordinator.on_producer_created(peer, handle)

    async def _consume(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ConsumeRequest.model_validate(payload)
        if request.rtp_capabilities is not None:
            await self.coordinator.update_capabilities(peer, request.rtp_capabilities)
        if not self._peers.is_current(peer):
            return
        await self.coordinator.consume(peer, request.producer_id, peer.rtp_capabilities)

    async def _resume_consumer(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ConsumerRequest.model_validate(payload)
        await self.coordinator.resume(peer, request.consumer_id)

    async def _close_producer(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ProducerRequest.model_validate(payload)
        await self.coordinator.close_producer(peer, request.producer_id)

    async def _close_consumer(self, peer: Peer, payload: dict[str, Any]) -> None:
        request = ConsumerRequest.model_validate(payload)
        await self.coordinator.close_consumer(peer, request.consumer_id)

    # Internal messages

    async def _producer_available(self, peer: Peer, payload: dict[str, Any]) -> None:
        notice = ProducerNotice.model_validate(payload)
        await self.coordinator.offer(peer, ProducerRef(notice.peer_id, notice.producer_id, notice.kind))

    async def _producer_closed(self, peer: Peer, payload: dict[str, Any]) -> None:
        notice = ProducerRequest.model_validate(payload)
        await self.coordinator.on_producer_closed(peer, notice.producer_id)

    async def _transport_closed(self, peer: Peer, payload: dict[str, Any]) -> None:
        notice = TransportNotice.model_validate(payload)
        await self.lifecycle.on_transport_closed(peer, notice.transport_id)

    # Engine callbacks

    def _engine_transport_closed(self, transport: TransportHandle, reason: str) -> None:
        for peer in self._peers.all():
            if any(owned is transport for owned in peer.transports.values()):
                self.post(peer.id, "transportClosed", {"transportId": transport.id, "reason": reason})
                return

    def _engine_failed(self, reason: str) -> None:
        if self._engine_inbox is None:
            self._handle_engine_failure(reason)
            return
        self._engine_inbox.put(_Envelope({"type": "engineFailed", "payload": {"reason": reason}}, internal=True))

    def _handle_engine_failure(self, reason: str) -> None:
        if not self.accepting:
            return
        self.accepting = False
        logger.critical("Media engine failed (%s); no longer accepting signaling work", reason)
        if self._on_fatal is not None:
            self._on_fatal(reason)
