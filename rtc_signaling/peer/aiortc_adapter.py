"""Adapter exposing an aiortc RTCPeerConnection as a negotiation capability.

Descriptions and candidates cross the signaling channel as plain JSON
dictionaries (``{"type": ..., "sdp": ...}`` and
``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``); this adapter
converts them to and from aiortc objects.

aiortc gathers its candidates before ``setLocalDescription`` returns and
embeds them in the SDP, so it never trickles candidates of its own. It also
has no rollback support: a polite aiortc peer cannot abandon an offer it has
already applied, and ``setLocalDescription({"type": "rollback"})`` raises
NegotiationError.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from rtc_signaling.config import get_config
from rtc_signaling.errors import NegotiationError

logger = logging.getLogger(__name__)

StateCallback = Callable[[str], Awaitable[None]]


def build_configuration(ice_servers: Optional[List[Dict]]) -> Optional[RTCConfiguration]:
    """Build an RTCConfiguration from config-style ICE server dictionaries."""
    if not ice_servers:
        return None
    return RTCConfiguration(iceServers=[RTCIceServer(**server) for server in ice_servers])


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


class AiortcPeerConnection:
    """Wraps ``aiortc.RTCPeerConnection`` with dictionary-based signaling."""

    def __init__(self, pc: RTCPeerConnection):
        self.pc = pc
        self._state_callbacks: List[StateCallback] = []

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            for callback in list(self._state_callbacks):
                await callback(state)

    @classmethod
    def create(cls, ice_servers: Optional[List[Dict]] = None) -> "AiortcPeerConnection":
        """Create a peer connection configured with ``ice_servers``."""
        configuration = build_configuration(ice_servers)
        if configuration is not None:
            logger.info(
                f"Creating RTCPeerConnection with {len(configuration.iceServers)} ICE server(s)"
            )
            return cls(RTCPeerConnection(configuration=configuration))
        logger.warning("No ICE servers configured, using default RTCPeerConnection")
        return cls(RTCPeerConnection())

    def subscribe_connection_state(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    async def createOffer(self) -> dict:
        return description_to_dict(await self.pc.createOffer())

    async def createAnswer(self) -> dict:
        return description_to_dict(await self.pc.createAnswer())

    async def setLocalDescription(self, description: dict) -> None:
        if description.get("type") == "rollback":
            raise NegotiationError("aiortc does not support rolling back a local offer")
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def setRemoteDescription(self, description: dict) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def addIceCandidate(self, candidate: Optional[dict]) -> None:
        if not candidate or not candidate.get("candidate"):
            logger.debug("Received empty ICE candidate (end of candidates)")
            return

        sdp = candidate["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self.pc.close()


def aiortc_peer_factory(remote_id: str) -> AiortcPeerConnection:
    """Peer factory for SignalingClient using the configured ICE servers."""
    logger.debug(f"Creating peer connection for {remote_id}")
    return AiortcPeerConnection.create(get_config().client.ice_servers)
