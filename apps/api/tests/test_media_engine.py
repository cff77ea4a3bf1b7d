"""Tests for the loopback media engine adapter."""
from __future__ import annotations

import pytest

from conftest import AUDIO_ONLY_CAPS, CLIENT_CAPS, DTLS_PARAMETERS, RTP_PARAMETERS
from sfu_signaling.services.errors import EngineUnavailableError, NegotiationError, ProtocolError
from sfu_signaling.services.media_engine import LoopbackMediaEngine


@pytest.mark.asyncio
async def test_capabilities_follow_configured_codecs(engine):
    capabilities = engine.get_capabilities()

    mime_types = [codec["mimeType"] for codec in capabilities["codecs"]]
    assert mime_types == ["audio/opus", "video/VP8", "video/H264"]
    assert all("preferredPayloadType" in codec for codec in capabilities["codecs"])


@pytest.mark.asyncio
async def test_transport_parameters_and_connect(engine):
    transport = await engine.create_transport("send")

    params = transport.connection_parameters()
    assert params["iceCandidates"][0]["ip"] == engine.announced_ip
    assert engine.rtc_min_port <= params["iceCandidates"][0]["port"] <= engine.rtc_max_port
    assert params["dtlsParameters"]["fingerprints"]

    await engine.connect_transport(transport, DTLS_PARAMETERS)
    assert transport.connected
    with pytest.raises(ProtocolError):
        await engine.connect_transport(transport, DTLS_PARAMETERS)


@pytest.mark.asyncio
async def test_consumer_is_created_paused_and_resume_is_idempotent(engine):
    send = await engine.create_transport("send")
    recv = await engine.create_transport("recv")
    producer = await engine.produce(send, "video", RTP_PARAMETERS["video"])

    assert engine.can_consume(producer.id, CLIENT_CAPS)
    consumer = await engine.consume(recv, producer.id, CLIENT_CAPS)
    assert consumer.paused
    assert consumer.kind == "video"

    await engine.resume(consumer)
    await engine.resume(consumer)
    assert not consumer.paused


@pytest.mark.asyncio
async def test_can_consume_requires_matching_codec(engine):
    send = await engine.create_transport("send")
    recv = await engine.create_transport("recv")
    producer = await engine.produce(send, "video", RTP_PARAMETERS["video"])

    assert not engine.can_consume(producer.id, AUDIO_ONLY_CAPS)
    assert not engine.can_consume("unknown", CLIENT_CAPS)
    with pytest.raises(NegotiationError):
        await engine.consume(recv, producer.id, AUDIO_ONLY_CAPS)


@pytest.mark.asyncio
async def test_closing_transport_cascades(engine):
    send = await engine.create_transport("send")
    recv = await engine.create_transport("recv")
    producer = await engine.produce(send, "audio", RTP_PARAMETERS["audio"])
    consumer = await engine.consume(recv, producer.id, CLIENT_CAPS)

    await engine.close(send)

    assert producer.closed
    assert consumer.closed
    assert not engine.can_consume(producer.id, CLIENT_CAPS)
    await engine.close(send)


@pytest.mark.asyncio
async def test_fail_notifies_listeners_once_and_blocks_work(engine):
    reasons: list[str] = []
    engine.add_fatal_listener(reasons.append)

    engine.fail("worker died")
    engine.fail("again")

    assert reasons == ["worker died"]
    assert not engine.alive
    with pytest.raises(EngineUnavailableError):
        await engine.create_transport("send")


@pytest.mark.asyncio
async def test_candidates_follow_protocol_flags():
    both = LoopbackMediaEngine(media_codecs=[], prefer_udp=False, initial_available_outgoing_bitrate=600_000)
    tcp_only = LoopbackMediaEngine(media_codecs=[], enable_udp=False)

    params = (await both.create_transport("recv")).connection_parameters()
    protocols = [candidate["protocol"] for candidate in params["iceCandidates"]]
    priorities = [candidate["priority"] for candidate in params["iceCandidates"]]
    assert protocols == ["tcp", "udp"]
    assert priorities[0] > priorities[1]
    assert params["initialAvailableOutgoingBitrate"] == 600_000

    candidates = (await tcp_only.create_transport("send")).ice_candidates
    assert [candidate["protocol"] for candidate in candidates] == ["tcp"]
