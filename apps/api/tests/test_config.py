"""Tests for environment-driven settings."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from sfu_signaling.core.config import Settings
from sfu_signaling.main import build_signaling


def test_defaults_match_media_server_layout(monkeypatch):
    monkeypatch.delenv("LISTEN_PORT", raising=False)
    settings = Settings(_env_file=None)

    assert settings.listen_port == 3000
    assert (settings.rtc_min_port, settings.rtc_max_port) == (10000, 10100)
    assert [codec["mimeType"] for codec in settings.media_codecs] == ["audio/opus", "video/VP8", "video/H264"]


def test_env_overrides_and_comma_separated_origins(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ANNOUNCED_IP", "203.0.113.7")

    settings = Settings(_env_file=None)

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.announced_ip == "203.0.113.7"


def test_port_range_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, rtc_min_port=20000, rtc_max_port=10000)


def test_at_least_one_transport_protocol_required():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, enable_udp=False, enable_tcp=False)


@pytest.mark.asyncio
async def test_transport_settings_reach_the_engine():
    config = Settings(_env_file=None, enable_udp=False, initial_available_outgoing_bitrate=250_000)
    signaling = build_signaling(config, on_fatal=None)

    transport = await signaling.engine.create_transport("send")

    assert {candidate["protocol"] for candidate in transport.ice_candidates} == {"tcp"}
    assert transport.connection_parameters()["initialAvailableOutgoingBitrate"] == 250_000
