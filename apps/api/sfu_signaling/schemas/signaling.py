"""Data contracts for the signaling socket."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SignalingMessage(BaseModel):
    """Envelope shared by every frame in both directions."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., min_length=1, description="Message type used for dispatch")
    payload: dict[str, Any] = Field(default_factory=dict)


class JoinRoomRequest(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1, description="Room name to join")
    rtp_capabilities: dict[str, Any] | None = Field(default=None, alias="rtpCapabilities")


class CreateTransportRequest(_Payload):
    direction: Literal["send", "recv"]
    rtp_capabilities: dict[str, Any] | None = Field(default=None, alias="rtpCapabilities")


class ConnectTransportRequest(_Payload):
    transport_id: str = Field(..., alias="transportId")
    dtls_parameters: dict[str, Any] = Field(..., alias="dtlsParameters")


class ProduceRequest(_Payload):
    transport_id: str = Field(..., alias="transportId")
    kind: Literal["audio", "video"]
    rtp_parameters: dict[str, Any] = Field(default_factory=dict, alias="rtpParameters")


class ConsumeRequest(_Payload):
    producer_id: str = Field(..., alias="producerId")
    rtp_capabilities: dict[str, Any] | None = Field(default=None, alias="rtpCapabilities")


class ConsumerRequest(_Payload):
    consumer_id: str = Field(..., alias="consumerId")


class ProducerRequest(_Payload):
    producer_id: str = Field(..., alias="producerId")


class ProducerNotice(_Payload):
    """Internal notice that a producer appeared in the peer's room."""

    peer_id: str = Field(..., alias="peerId")
    producer_id: str = Field(..., alias="producerId")
    kind: Literal["audio", "video"]


class TransportNotice(_Payload):
    transport_id: str = Field(..., alias="transportId")
    reason: str = "closed"


def describe_validation_error(exc: ValidationError) -> str:
    """Collapse a pydantic error into one readable line for the error reply."""

    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "Invalid payload (" + "; ".join(parts) + ")"
