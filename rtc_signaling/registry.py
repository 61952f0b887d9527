"""Client registry for the signaling relay.

The registry is the single owner of client identity: it maps each live
client id to the outbound channel used to reach it. Negotiation sessions
only ever reference ids.

All mutations happen on the event loop without suspending, so a lookup
never observes a half-registered or half-removed client. Removal pops the
entry and closes its channel in one step, and only afterwards notifies
removal listeners (the lifecycle manager).
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from rtc_signaling.errors import ClientIdInUseError, RegistryFullError
from rtc_signaling.outbound import OutboundChannel

logger = logging.getLogger(__name__)

RemovalListener = Callable[[str], Awaitable[None]]


def generate_client_id() -> str:
    """Generate an opaque client id."""
    return uuid.uuid4().hex[:16]


@dataclass
class Client:
    """A live client connection.

    Attributes:
        id: Opaque unique id.
        channel: Outbound channel owned by this entry.
        connected_at: Monotonic timestamp of registration.
    """

    id: str
    channel: OutboundChannel
    connected_at: float


class ClientRegistry:
    """Tracks live clients and their addressable ids.

    Attributes:
        max_clients: Capacity; ``register`` raises RegistryFullError beyond it.
    """

    def __init__(
        self,
        max_clients: int = 1024,
        id_factory: Callable[[], str] = generate_client_id,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_clients = max_clients
        self._id_factory = id_factory
        self._clock = clock
        self._clients: Dict[str, Client] = {}
        self._removal_listeners: List[RemovalListener] = []

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a coroutine called with the id of every removed client."""
        self._removal_listeners.append(listener)

    def register(self, channel: OutboundChannel, client_id: Optional[str] = None) -> str:
        """Register a client and return its id.

        Args:
            channel: Outbound channel for the new client.
            client_id: Id supplied by an external auth layer; generated if None.

        Returns:
            The registered client id.

        Raises:
            RegistryFullError: The registry is at capacity.
            ClientIdInUseError: ``client_id`` is already registered.
        """
        if len(self._clients) >= self.max_clients:
            raise RegistryFullError(
                f"registry is full ({self.max_clients} clients)"
            )

        if client_id is None:
            client_id = self._id_factory()
            while client_id in self._clients:
                client_id = self._id_factory()
        elif client_id in self._clients:
            raise ClientIdInUseError(f"client id already registered: {client_id}")

        channel.client_id = client_id
        self._clients[client_id] = Client(
            id=client_id, channel=channel, connected_at=self._clock()
        )
        logger.info(f"Registered client: {client_id} (total: {len(self._clients)})")
        return client_id

    async def unregister(self, client_id: str) -> bool:
        """Remove a client; unknown ids are a no-op.

        Returns:
            True if the client was registered and has been removed.
        """
        client = self._clients.pop(client_id, None)
        if client is None:
            return False

        client.channel.close()
        connected_for = self._clock() - client.connected_at
        logger.info(
            f"Removed client: {client_id} after {connected_for:.1f}s "
            f"(remaining: {len(self._clients)})"
        )

        for listener in list(self._removal_listeners):
            try:
                await listener(client_id)
            except Exception as e:
                logger.error(f"Removal listener failed for {client_id}: {e}")
        return True

    def lookup(self, client_id: str) -> Optional[OutboundChannel]:
        """Return the outbound channel for ``client_id``, or None if unknown."""
        client = self._clients.get(client_id)
        return client.channel if client is not None else None

    def list_peers(self, excluding: Optional[str] = None) -> List[str]:
        """Snapshot of registered ids, excluding the caller."""
        return [cid for cid in self._clients if cid != excluding]
