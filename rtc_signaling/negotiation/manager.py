"""Owner of all live negotiation sessions.

The SessionManager maps each peer pair to its NegotiationSession and
serializes work on a pair with a lock scoped to that pair only: unrelated
pairs never wait on each other. A transition and the deliveries it produces
happen under the same pair lock, so the deliveries of one transition are
never interleaved with those of another on the same pair.

Closed sessions are removed once their bye has been delivered. The pair is
then tombstoned for ``closed_linger`` seconds so that late answers and
candidates are rejected with ``session-closed`` instead of opening a new
session; a fresh offer clears the tombstone.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from rtc_signaling.negotiation.session import (
    PHASE_HAVE_OFFER,
    PHASE_IDLE,
    Delivery,
    NegotiationSession,
    PairKey,
    Transition,
    pair_key,
    step,
    terminate,
)
from rtc_signaling.protocol import (
    BYE_NEGOTIATION_TIMEOUT,
    ERR_SESSION_CLOSED,
    MSG_ANSWER,
    MSG_BYE,
    MSG_OFFER,
    Envelope,
    bye_envelope,
)

logger = logging.getLogger(__name__)

Deliver = Callable[[Delivery], Awaitable[object]]


@dataclass
class _Entry:
    session: NegotiationSession
    last_activity: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    removed: bool = False


class SessionManager:
    """Creates, advances and evicts negotiation sessions.

    Attributes:
        idle_timeout: Seconds of inactivity before a session is evicted.
        closed_linger: Seconds a closed pair keeps rejecting late messages.
    """

    def __init__(
        self,
        deliver: Deliver,
        idle_timeout: float = 300.0,
        closed_linger: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout
        self.closed_linger = closed_linger
        self._deliver = deliver
        self._clock = clock
        self._entries: Dict[PairKey, _Entry] = {}
        self._tombstones: Dict[PairKey, float] = {}
        self._by_client: Dict[str, Set[PairKey]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, a: str, b: str) -> Optional[NegotiationSession]:
        """Current session for the pair {a, b}, or None."""
        entry = self._entries.get(pair_key(a, b))
        return entry.session if entry is not None else None

    def sessions_for(self, client_id: str) -> List[NegotiationSession]:
        return [self._entries[key].session for key in self._by_client.get(client_id, ())]

    def is_tombstoned(self, a: str, b: str) -> bool:
        key = pair_key(a, b)
        closed_at = self._tombstones.get(key)
        if closed_at is None:
            return False
        if self._clock() - closed_at >= self.closed_linger:
            del self._tombstones[key]
            return False
        return True

    def _create(self, key: PairKey) -> _Entry:
        entry = _Entry(session=NegotiationSession(pair=key), last_activity=self._clock())
        self._entries[key] = entry
        for client_id in key:
            self._by_client[client_id].add(key)
        logger.debug(f"Created negotiation session {key}")
        return entry

    def _remove(self, key: PairKey, entry: _Entry, tombstone: bool) -> None:
        entry.removed = True
        if self._entries.get(key) is entry:
            del self._entries[key]
        for client_id in key:
            keys = self._by_client.get(client_id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_client[client_id]
        if tombstone:
            self._tombstones[key] = self._clock()

    async def _deliver_all(self, transition: Transition) -> None:
        for delivery in transition.deliveries:
            await self._deliver(delivery)

    async def handle(self, envelope: Envelope) -> Transition:
        """Apply an addressed offer, answer, ice-candidate or bye.

        Sessions are created lazily on the first offer or candidate for a
        pair. Deliveries are made before this returns; the caller only
        reports ``transition.error`` back to the sender.
        """
        key = pair_key(envelope.sender, envelope.to)

        while True:
            entry = self._entries.get(key)

            if entry is None:
                if envelope.type == MSG_OFFER:
                    self._tombstones.pop(key, None)
                elif self.is_tombstoned(envelope.sender, envelope.to):
                    return Transition(
                        session=NegotiationSession(pair=key),
                        error=ERR_SESSION_CLOSED,
                        detail=f"session {key} is closed",
                    )

                if envelope.type == MSG_BYE:
                    # No negotiation to close; the bye is still passed on
                    transition = Transition(
                        session=NegotiationSession(pair=key),
                        deliveries=(Delivery(envelope.to, envelope),),
                    )
                    await self._deliver_all(transition)
                    return transition

                if envelope.type == MSG_ANSWER:
                    # Never create a session for an answer; let step reject it
                    return step(NegotiationSession(pair=key), envelope)

                entry = self._create(key)

            async with entry.lock:
                if entry.removed and not entry.session.closed:
                    # Evicted while this message waited for the lock
                    continue

                transition = step(entry.session, envelope)
                if transition.error is None:
                    entry.session = transition.session
                    entry.last_activity = self._clock()
                if transition.note:
                    logger.info(f"Session {key}: {transition.note}")

                await self._deliver_all(transition)

                if entry.session.closed and not entry.removed:
                    self._remove(key, entry, tombstone=True)
                    logger.info(
                        f"Closed negotiation session {key} "
                        f"({envelope.type} from {envelope.sender})"
                    )

            return transition

    async def close_client(self, client_id: str, reason: Optional[str] = None) -> List[str]:
        """Terminate every session involving ``client_id``.

        Each surviving peer receives one bye carrying ``reason``.

        Returns:
            Ids of the peers that were notified.
        """
        notified = []
        for key in list(self._by_client.get(client_id, ())):
            entry = self._entries.get(key)
            if entry is None:
                continue
            async with entry.lock:
                if entry.removed:
                    continue
                transition = terminate(entry.session, client_id, reason)
                entry.session = transition.session
                await self._deliver_all(transition)
                notified.extend(d.to for d in transition.deliveries)
                self._remove(key, entry, tombstone=True)
        if notified:
            logger.info(f"Closed {len(notified)} session(s) for departed client {client_id}")
        return notified

    async def evict_idle(self) -> int:
        """Evict sessions idle for longer than ``idle_timeout``.

        Sessions stuck with an unanswered offer (or with candidates that were
        never flushed) notify both peers with a ``negotiation-timeout`` bye;
        stable sessions are dropped silently.

        Returns:
            Number of sessions evicted.
        """
        now = self._clock()

        for key, closed_at in list(self._tombstones.items()):
            if now - closed_at >= self.closed_linger:
                del self._tombstones[key]

        evicted = 0
        for key, entry in list(self._entries.items()):
            if now - entry.last_activity < self.idle_timeout:
                continue
            async with entry.lock:
                if entry.removed or self._clock() - entry.last_activity < self.idle_timeout:
                    continue
                session = entry.session
                abandoned = session.phase == PHASE_HAVE_OFFER or (
                    session.phase == PHASE_IDLE and session.pending_candidates
                )
                if abandoned:
                    a, b = key
                    await self._deliver(
                        Delivery(a, bye_envelope(b, a, BYE_NEGOTIATION_TIMEOUT))
                    )
                    await self._deliver(
                        Delivery(b, bye_envelope(a, b, BYE_NEGOTIATION_TIMEOUT))
                    )
                self._remove(key, entry, tombstone=False)
                evicted += 1
                logger.info(
                    f"Evicted idle negotiation session {key} (phase: {session.phase})"
                )
        return evicted

    async def run_sweeper(self, interval: float) -> None:
        """Periodically evict idle sessions until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evict_idle()
            except Exception as e:
                logger.error(f"Idle session sweep failed: {e}")
