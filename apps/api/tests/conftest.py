"""Shared fixtures for signaling tests."""
from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from sfu_signaling.core.config import Settings
from sfu_signaling.services.media_engine import LoopbackMediaEngine
from sfu_signaling.services.peers import SignalingConnection
from sfu_signaling.services.signaling import SignalingRouter

CLIENT_CAPS = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000},
    ]
}
AUDIO_ONLY_CAPS = {"codecs": [{"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2}]}
RTP_PARAMETERS = {
    "audio": {
        "codecs": [{"mimeType": "audio/opus", "clockRate": 48000, "channels": 2, "payloadType": 100}],
        "encodings": [{"ssrc": 1111}],
    },
    "video": {
        "codecs": [{"mimeType": "video/VP8", "clockRate": 90000, "payloadType": 101}],
        "encodings": [{"ssrc": 2222}],
    },
}
DTLS_PARAMETERS = {"role": "client", "fingerprints": [{"algorithm": "sha-256", "value": "AB:CD:EF"}]}


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message["payload"] for message in self.messages if message["type"] == message_type]

    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]


class Harness:
    """Drive a router the way connected clients would."""

    def __init__(self, engine: LoopbackMediaEngine) -> None:
        self.engine = engine
        self.fatal_reasons: list[str] = []
        self.router = SignalingRouter(engine, on_fatal=self.fatal_reasons.append)
        self.connections: dict[str, DummyConnection] = {}

    async def connect(self) -> str:
        connection = DummyConnection(f"conn-{len(self.connections)}")
        peer_id = await self.router.connect(SignalingConnection(connection.connection_id, connection.send))
        self.connections[peer_id] = connection
        return peer_id

    async def request(self, peer_id: str, message_type: str, payload: dict[str, Any] | None = None) -> None:
        self.router.deliver(peer_id, {"type": message_type, "payload": payload or {}})
        await self.router.settle()

    async def join(self, peer_id: str, room_id: str = "r1", **extra: Any) -> dict[str, Any]:
        await self.request(peer_id, "joinRoom", {"roomId": room_id, **extra})
        return self.connections[peer_id].of_type("roomJoined")[-1]

    async def create_transport(self, peer_id: str, direction: str, **extra: Any) -> str:
        await self.request(peer_id, "createTransport", {"direction": direction, **extra})
        return self.connections[peer_id].of_type("transportCreated")[-1]["transportId"]

    async def produce(self, peer_id: str, kind: str) -> str:
        peer = self.router.peers.get(peer_id)
        send = peer.transports.get("send")
        transport_id = send.id if send else await self.create_transport(peer_id, "send")
        await self.request(
            peer_id,
            "produce",
            {"transportId": transport_id, "kind": kind, "rtpParameters": RTP_PARAMETERS[kind]},
        )
        return self.connections[peer_id].of_type("produced")[-1]["producerId"]

    def messages(self, peer_id: str, message_type: str) -> list[dict[str, Any]]:
        return self.connections[peer_id].of_type(message_type)


def make_engine(engine_cls: type[LoopbackMediaEngine] = LoopbackMediaEngine) -> LoopbackMediaEngine:
    config = Settings()
    return engine_cls(
        media_codecs=config.media_codecs,
        announced_ip=config.announced_ip,
        rtc_min_port=config.rtc_min_port,
        rtc_max_port=config.rtc_max_port,
    )


@pytest.fixture
def engine() -> LoopbackMediaEngine:
    return make_engine()


@pytest_asyncio.fixture
async def harness(engine: LoopbackMediaEngine):
    harness = Harness(engine)
    yield harness
    await harness.router.close()
