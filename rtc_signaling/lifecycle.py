"""Connection lifecycle management.

The LifecycleManager listens for registry removals and makes sure a vanished
client never leaves a negotiation behind: every session that referenced it
is closed and each surviving peer receives a ``bye`` with reason
``peer-disconnected``. It also owns the idle-eviction sweeper that bounds
memory held by abandoned negotiations.
"""

import asyncio
import logging
from typing import List, Optional

from rtc_signaling.negotiation.manager import SessionManager
from rtc_signaling.protocol import BYE_PEER_DISCONNECTED

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Drives session cleanup from client disconnects and idle timeouts.

    Attributes:
        sessions: Session manager whose sessions are cleaned up.
        sweep_interval: Seconds between idle-eviction sweeps.
    """

    def __init__(self, sessions: SessionManager, sweep_interval: float = 30.0):
        self.sessions = sessions
        self.sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    async def on_client_removed(self, client_id: str) -> List[str]:
        """Close all sessions of a removed client and notify its peers.

        Returns:
            Ids of the peers that received a bye.
        """
        notified = await self.sessions.close_client(client_id, reason=BYE_PEER_DISCONNECTED)
        for peer_id in notified:
            logger.info(f"Notified {peer_id} that {client_id} disconnected")
        return notified

    def start(self) -> None:
        """Start the idle-eviction sweeper on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(
                self.sessions.run_sweeper(self.sweep_interval)
            )
            logger.debug(f"Session sweeper started (interval: {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the sweeper and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
