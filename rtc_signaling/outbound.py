"""Bounded per-client outbound buffer.

Each registered client owns one OutboundChannel. The relay enqueues encoded
frames without touching the socket; a writer task per connection drains the
channel. When the buffer is full:

- the oldest queued *non-critical* frame (discovery broadcasts, presence
  notices) is dropped to make room;
- a non-critical frame with nothing to evict is itself dropped;
- a critical frame (addressed negotiation traffic, bye, errors) waits up to
  ``send_timeout`` for space and then raises OutboundOverflowError, which
  the relay turns into a disconnect of the slow client.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional, Tuple

from rtc_signaling.errors import ChannelClosedError, OutboundOverflowError

logger = logging.getLogger(__name__)


class OutboundChannel:
    """FIFO of encoded frames waiting to be written to one client.

    Attributes:
        client_id: Owner id, set once the registry accepts the client.
        maxsize: Maximum number of queued frames.
        send_timeout: Seconds a critical put may wait for space.
        dropped: Number of non-critical frames discarded so far.
    """

    def __init__(self, maxsize: int = 256, send_timeout: float = 5.0):
        self.client_id: Optional[str] = None
        self.maxsize = maxsize
        self.send_timeout = send_timeout
        self.dropped = 0
        self._queue: Deque[Tuple[str, bool]] = deque()
        self._closed = False
        self._not_empty = asyncio.Event()
        self._has_space = asyncio.Event()
        self._has_space.set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def _evict_non_critical(self) -> bool:
        for index, (_, critical) in enumerate(self._queue):
            if not critical:
                del self._queue[index]
                self.dropped += 1
                logger.debug(f"Dropped queued broadcast for slow client {self.client_id}")
                return True
        return False

    async def _wait_for_space(self) -> None:
        while len(self._queue) >= self.maxsize and not self._closed:
            self._has_space.clear()
            await self._has_space.wait()

    async def put(self, frame: str, critical: bool = True) -> bool:
        """Enqueue a frame.

        Args:
            frame: Encoded JSON frame.
            critical: False for best-effort broadcast traffic.

        Returns:
            True if queued, False if a non-critical frame was dropped.

        Raises:
            ChannelClosedError: The channel was closed.
            OutboundOverflowError: A critical frame found no space in time.
        """
        if self._closed:
            raise ChannelClosedError(f"channel for {self.client_id} is closed")

        if len(self._queue) >= self.maxsize and not self._evict_non_critical():
            if not critical:
                self.dropped += 1
                logger.debug(f"Dropped broadcast for slow client {self.client_id}")
                return False
            try:
                await asyncio.wait_for(self._wait_for_space(), self.send_timeout)
            except asyncio.TimeoutError:
                raise OutboundOverflowError(
                    f"outbound buffer for {self.client_id} stayed full "
                    f"for {self.send_timeout}s",
                    client_id=self.client_id,
                )
            if self._closed:
                raise ChannelClosedError(f"channel for {self.client_id} is closed")

        self._queue.append((frame, critical))
        self._not_empty.set()
        return True

    async def get(self) -> str:
        """Wait for and remove the next frame.

        Raises:
            ChannelClosedError: The channel was closed.
        """
        while not self._queue:
            if self._closed:
                raise ChannelClosedError(f"channel for {self.client_id} is closed")
            self._not_empty.clear()
            await self._not_empty.wait()

        frame, _ = self._queue.popleft()
        self._has_space.set()
        return frame

    def close(self) -> None:
        """Close the channel, discarding frames that were not yet written."""
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        # Wake the writer and any blocked producers so they observe the close
        self._not_empty.set()
        self._has_space.set()
