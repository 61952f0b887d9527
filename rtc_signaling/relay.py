"""Signaling relay: decodes inbound frames and routes them.

The relay is transport agnostic. A transport (see ``rtc_signaling.server``)
calls ``on_connect`` with a fresh OutboundChannel, feeds every inbound frame
to ``on_message`` in arrival order, and calls ``on_disconnect`` once the
connection ends. Forwarding only ever enqueues onto the recipient's channel,
so handling a message never waits on another client's socket.

Routing rules:
- offer / answer / ice-candidate with ``to``: handed to the session manager,
  which decides what reaches the peer.
- offer / answer / ice-candidate without ``to``: broadcast to every other
  client (discovery mode, never creates a session).
- bye: forwarded to the named peer and the pair's session is closed.
- list-peers: answered with peers-list.
Per-message failures are reported to the sender as ``error`` envelopes.
"""

import asyncio
import logging
from typing import Optional, Set

from rtc_signaling.config import NegotiationConfig, ServerConfig
from rtc_signaling.errors import ChannelClosedError, OutboundOverflowError
from rtc_signaling.lifecycle import LifecycleManager
from rtc_signaling.negotiation.manager import SessionManager
from rtc_signaling.negotiation.session import Delivery
from rtc_signaling.outbound import OutboundChannel
from rtc_signaling.protocol import (
    ERR_PROTOCOL_VIOLATION,
    ERR_UNKNOWN_TARGET,
    MSG_BYE,
    MSG_LIST_PEERS,
    SERVER_TYPES,
    DecodeError,
    Envelope,
    client_id_envelope,
    decode_frame,
    encode_envelope,
    error_envelope,
    peer_disconnected_envelope,
    peers_list_envelope,
)
from rtc_signaling.registry import ClientRegistry

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Routes addressed control messages between registered clients.

    Attributes:
        registry: Client registry (owner of client identity).
        sessions: Negotiation session manager.
        lifecycle: Disconnect cleanup and idle eviction.
        config: Server settings.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        negotiation: Optional[NegotiationConfig] = None,
        registry: Optional[ClientRegistry] = None,
    ):
        self.config = config or ServerConfig()
        negotiation = negotiation or NegotiationConfig()

        self.registry = registry or ClientRegistry(max_clients=self.config.max_clients)
        self.sessions = SessionManager(
            deliver=self._deliver,
            idle_timeout=negotiation.session_idle_timeout,
            closed_linger=negotiation.closed_linger,
        )
        self.lifecycle = LifecycleManager(self.sessions, negotiation.sweep_interval)
        self.registry.add_removal_listener(self.lifecycle.on_client_removed)

        # Disconnects scheduled for slow clients
        self._pending_disconnects: Set[asyncio.Task] = set()

    def new_channel(self) -> OutboundChannel:
        """Create an outbound channel sized from the server config."""
        return OutboundChannel(
            maxsize=self.config.outbound_queue_size,
            send_timeout=self.config.send_timeout,
        )

    # ===== Transport entry points =====

    async def on_connect(
        self, channel: OutboundChannel, client_id: Optional[str] = None
    ) -> str:
        """Register a new connection and send it its ``client-id``.

        Args:
            channel: Outbound channel the transport drains for this client.
            client_id: Id from an external auth layer, generated if None.

        Returns:
            The registered id.

        Raises:
            RegistryFullError: The registry is at capacity.
            ClientIdInUseError: ``client_id`` is taken.
        """
        client_id = self.registry.register(channel, client_id)
        await self.send(client_id, client_id_envelope(client_id))
        return client_id

    async def on_message(self, from_id: str, raw) -> None:
        """Decode and dispatch one inbound frame from ``from_id``."""
        if from_id not in self.registry:
            logger.debug(f"Dropping frame from unregistered client {from_id}")
            return

        result = decode_frame(raw)
        if isinstance(result, DecodeError):
            logger.warning(f"Bad frame from {from_id}: {result.detail}")
            await self.send_error(from_id, result.reason, result.detail, result.type)
            return

        envelope = result.with_sender(from_id)
        logger.debug(f"Message from {from_id}: {envelope.type}")

        if envelope.type in SERVER_TYPES:
            await self._violation(envelope, f"{envelope.type} cannot be sent by clients")
        elif envelope.type == MSG_LIST_PEERS:
            peers = self.registry.list_peers(excluding=from_id)
            await self.send(from_id, peers_list_envelope(peers))
            logger.info(f"Query from {from_id}: returned {len(peers)} peers")
        elif envelope.is_negotiation and envelope.to is None:
            await self.broadcast(envelope, exclude=from_id)
        elif envelope.type == MSG_BYE and envelope.to is None:
            await self._violation(envelope, "bye requires a target")
        else:
            await self._route(envelope)

    async def on_disconnect(self, client_id: str) -> None:
        """Unregister ``client_id``; its sessions are closed by the lifecycle manager."""
        removed = await self.registry.unregister(client_id)
        if removed and self.config.announce_presence:
            await self.broadcast(peer_disconnected_envelope(client_id), exclude=client_id)

    # ===== Routing =====

    async def _route(self, envelope: Envelope) -> None:
        if envelope.to == envelope.sender:
            await self._violation(envelope, "cannot address yourself")
            return
        if envelope.to not in self.registry:
            logger.warning(
                f"Target peer not found: {envelope.to} ({envelope.type} from {envelope.sender})"
            )
            await self.send_error(
                envelope.sender,
                ERR_UNKNOWN_TARGET,
                f"no client with id {envelope.to}",
                envelope.type,
            )
            return

        transition = await self.sessions.handle(envelope)
        if transition.error is not None:
            logger.warning(
                f"Rejected {envelope.type} from {envelope.sender} to {envelope.to}: "
                f"{transition.detail}"
            )
            await self.send_error(
                envelope.sender, transition.error, transition.detail, envelope.type
            )
        elif transition.deliveries:
            logger.info(
                f"Forwarded {envelope.type} from {envelope.sender} to {envelope.to}"
            )

    async def _violation(self, envelope: Envelope, detail: str) -> None:
        logger.warning(f"Protocol violation from {envelope.sender}: {detail}")
        await self.send_error(envelope.sender, ERR_PROTOCOL_VIOLATION, detail, envelope.type)

    async def _deliver(self, delivery: Delivery) -> bool:
        return await self.send(delivery.to, delivery.envelope)

    # ===== Outbound =====

    async def send(self, to: str, envelope: Envelope, critical: bool = True) -> bool:
        """Enqueue ``envelope`` for client ``to``.

        A client whose buffer stays full for a critical message is
        disconnected.

        Returns:
            True if the frame was queued.
        """
        channel = self.registry.lookup(to)
        if channel is None:
            logger.debug(f"Client {to} not found, dropping {envelope.type}")
            return False
        try:
            return await channel.put(encode_envelope(envelope), critical=critical)
        except ChannelClosedError:
            return False
        except OutboundOverflowError as e:
            logger.warning(f"Disconnecting slow client {to}: {e}")
            self._disconnect_slow(to, channel)
            return False

    async def send_error(
        self,
        to: str,
        reason: str,
        detail: Optional[str] = None,
        msg_type: Optional[str] = None,
    ) -> bool:
        return await self.send(to, error_envelope(reason, detail, msg_type))

    async def broadcast(self, envelope: Envelope, exclude: Optional[str] = None) -> int:
        """Best-effort send to every client except ``exclude``.

        Returns:
            Number of clients the frame was queued for.
        """
        queued = 0
        for peer_id in self.registry.list_peers(excluding=exclude):
            if await self.send(peer_id, envelope, critical=False):
                queued += 1
        logger.debug(f"Broadcast {envelope.type} from {exclude} to {queued} peers")
        return queued

    def _disconnect_slow(self, client_id: str, channel: OutboundChannel) -> None:
        # Closing the channel makes the transport drop the socket; the
        # unregister runs as its own task because the caller may hold a pair
        # lock that the lifecycle cleanup needs.
        channel.close()
        task = asyncio.create_task(self.on_disconnect(client_id))
        self._pending_disconnects.add(task)
        task.add_done_callback(self._pending_disconnects.discard)

    async def drain(self) -> None:
        """Wait for scheduled slow-client disconnects to finish."""
        while self._pending_disconnects:
            await asyncio.gather(*list(self._pending_disconnects), return_exceptions=True)
