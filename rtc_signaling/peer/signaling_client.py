"""WebSocket client for the signaling relay.

SignalingClient connects to a relay, learns its client id, and dispatches
relayed negotiation messages to one PeerNegotiator per remote peer.
Peer connections come from ``peer_factory(remote_id)`` and are closed, when
they have an async ``close``, as soon as their negotiation ends.

Example:
    client = SignalingClient("ws://localhost:8080", peer_factory=aiortc_peer_factory)
    await client.connect()
    asyncio.create_task(client.run())
    peers = await client.list_peers()
    await client.call(peers[0])
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from rtc_signaling.errors import SignalingError
from rtc_signaling.peer.negotiator import PeerNegotiator
from rtc_signaling.protocol import (
    MSG_BYE,
    MSG_CLIENT_ID,
    MSG_ERROR,
    MSG_LIST_PEERS,
    MSG_PEER_DISCONNECTED,
    MSG_PEERS_LIST,
    NEGOTIATION_TYPES,
    DecodeError,
    Envelope,
    decode_relayed,
    encode_envelope,
)

logger = logging.getLogger(__name__)

PeerFactory = Callable[[str], Any]


class SignalingClient:
    """Client side of the relay protocol.

    Attributes:
        url: Relay WebSocket URL.
        client_id: Id assigned by the relay after ``connect``.
        negotiators: Active negotiators keyed by remote id.
        errors: Error payloads received from the relay.
    """

    def __init__(self, url: str, peer_factory: Optional[PeerFactory] = None):
        self.url = url
        self.client_id: Optional[str] = None
        self.negotiators: Dict[str, PeerNegotiator] = {}
        self.errors: List[dict] = []
        self._peer_factory = peer_factory
        self._websocket: Optional[ClientConnection] = None
        self._peer_requests: List[asyncio.Future] = []

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the WebSocket and wait for the ``client-id`` frame."""
        self._websocket = await connect(self.url)
        raw = await asyncio.wait_for(self._websocket.recv(), timeout)
        result = decode_relayed(raw)
        if isinstance(result, DecodeError) or result.type != MSG_CLIENT_ID:
            await self._websocket.close()
            raise SignalingError(f"expected client-id from relay, got: {raw!r}")
        self.client_id = result.client_id
        logger.info(f"Connected to {self.url} as {self.client_id}")
        return self.client_id

    async def send(self, envelope: Envelope) -> None:
        if self._websocket is None:
            raise SignalingError("not connected")
        await self._websocket.send(encode_envelope(envelope))

    async def list_peers(self, timeout: float = 5.0) -> List[str]:
        """Ask the relay for the other connected ids.

        Requires ``run()`` to be dispatching inbound frames.
        """
        future = asyncio.get_running_loop().create_future()
        self._peer_requests.append(future)
        await self.send(Envelope(type=MSG_LIST_PEERS))
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if future in self._peer_requests:
                self._peer_requests.remove(future)

    async def negotiator_for(self, remote_id: str) -> Optional[PeerNegotiator]:
        """Return the negotiator for ``remote_id``, creating one if possible.

        A closed negotiator is replaced and its peer connection released.
        """
        negotiator = self.negotiators.get(remote_id)
        if negotiator is None or negotiator.closed:
            if self._peer_factory is None:
                return None
            if negotiator is not None:
                del self.negotiators[remote_id]
                await self._release(negotiator, send_bye=False)
            pc = self._peer_factory(remote_id)
            negotiator = PeerNegotiator(self.client_id, remote_id, pc, self.send)
            self.negotiators[remote_id] = negotiator
        return negotiator

    async def call(self, remote_id: str) -> PeerNegotiator:
        """Start negotiating with ``remote_id``."""
        negotiator = await self.negotiator_for(remote_id)
        if negotiator is None:
            raise SignalingError("no peer factory configured")
        await negotiator.negotiate()
        return negotiator

    async def hang_up(self, remote_id: str) -> None:
        negotiator = self.negotiators.pop(remote_id, None)
        if negotiator is not None:
            await self._release(negotiator, send_bye=True)

    async def _release(self, negotiator: PeerNegotiator, send_bye: bool) -> None:
        """Close ``negotiator`` and the peer connection it was created with."""
        try:
            await negotiator.close(send_bye=send_bye)
        finally:
            close = getattr(negotiator.pc, "close", None)
            if close is not None:
                await close()

    async def dispatch(self, envelope: Envelope) -> None:
        """Route one envelope received from the relay."""
        if envelope.type == MSG_PEERS_LIST:
            peers = list((envelope.payload or {}).get("peers", []))
            if self._peer_requests:
                future = self._peer_requests.pop(0)
                if not future.done():
                    future.set_result(peers)
        elif envelope.type == MSG_ERROR:
            payload = envelope.payload or {}
            self.errors.append(payload)
            logger.warning(
                f"Relay error: {payload.get('reason')} {payload.get('detail', '')}".rstrip()
            )
        elif envelope.type == MSG_PEER_DISCONNECTED:
            logger.info(f"Peer left: {(envelope.payload or {}).get('peer')}")
        elif envelope.type == MSG_BYE:
            negotiator = self.negotiators.pop(envelope.sender, None)
            if negotiator is not None:
                await negotiator.handle(envelope)
                await self._release(negotiator, send_bye=False)
        elif envelope.type in NEGOTIATION_TYPES and envelope.sender:
            negotiator = await self.negotiator_for(envelope.sender)
            if negotiator is None:
                logger.warning(f"Ignoring {envelope.type} from {envelope.sender}: no peer factory")
                return
            await negotiator.handle(envelope)
        else:
            logger.debug(f"Ignoring {envelope.type} from relay")

    async def run(self) -> None:
        """Dispatch inbound frames until the connection closes."""
        if self._websocket is None:
            raise SignalingError("not connected")
        try:
            async for raw in self._websocket:
                result = decode_relayed(raw)
                if isinstance(result, DecodeError):
                    logger.warning(f"Bad frame from relay: {result.detail}")
                    continue
                try:
                    await self.dispatch(result)
                except SignalingError as e:
                    logger.error(f"Failed to handle {result.type}: {e}")
        except ConnectionClosed:
            logger.info("Connection to relay closed")
        finally:
            for future in self._peer_requests:
                if not future.done():
                    future.set_exception(SignalingError("connection closed"))

    async def close(self) -> None:
        """Say bye to every peer and close the WebSocket."""
        for remote_id in list(self.negotiators):
            try:
                await self.hang_up(remote_id)
            except ConnectionClosed:
                break
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
