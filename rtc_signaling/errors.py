"""Exceptions raised by the signaling relay and peer negotiator."""

from typing import Optional


class SignalingError(Exception):
    """Base class for all rtc-signaling errors."""

    pass


class RegistryFullError(SignalingError):
    """Raised when the registry cannot accept another client."""

    pass


class ClientIdInUseError(SignalingError):
    """Raised when an externally supplied client id is already registered."""

    pass


class ChannelClosedError(SignalingError):
    """Raised when reading from or writing to a closed outbound channel."""

    pass


class OutboundOverflowError(SignalingError):
    """Raised when a critical message cannot be queued for a slow client.

    Attributes:
        client_id: The client whose outbound buffer stayed full.
    """

    def __init__(self, message: str, client_id: Optional[str] = None):
        super().__init__(message)
        self.client_id = client_id


class SessionClosedError(SignalingError):
    """Raised when a message references a negotiation session that is closed."""

    pass


class NegotiationError(SignalingError):
    """Raised by the peer negotiator when the peer connection rejects a step."""

    pass
