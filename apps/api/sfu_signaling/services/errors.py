"""Error taxonomy shared by the signaling services."""
from __future__ import annotations


class SignalingError(RuntimeError):
    """Base class for failures reported back to the requesting peer."""


class ProtocolError(SignalingError):
    """Raised for malformed frames, missing fields or out-of-order requests."""


class ResourceNotFoundError(SignalingError):
    """Raised when a transport, producer, consumer or peer id is unknown."""


class NegotiationError(SignalingError):
    """Raised when the engine reports the capabilities cannot consume a producer."""


class EngineUnavailableError(SignalingError):
    """Raised once the media engine has failed and can no longer route media."""
