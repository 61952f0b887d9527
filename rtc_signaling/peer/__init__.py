"""Peer-side helpers for rtc-signaling.

This module provides:
- negotiator: Perfect-negotiation driver over a peer-connection capability
- aiortc_adapter: aiortc RTCPeerConnection exposed as that capability
- signaling_client: WebSocket client for the relay
"""

from rtc_signaling.peer.negotiator import PeerNegotiator
from rtc_signaling.peer.aiortc_adapter import (
    AiortcPeerConnection,
    aiortc_peer_factory,
    build_configuration,
)
from rtc_signaling.peer.signaling_client import SignalingClient

__all__ = [
    "PeerNegotiator",
    "AiortcPeerConnection",
    "aiortc_peer_factory",
    "build_configuration",
    "SignalingClient",
]
