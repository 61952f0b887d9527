"""Peer-side negotiation driver.

PeerNegotiator runs the offer/answer exchange for one remote peer on top of
a peer-connection capability. The capability is any object with these
coroutine methods (``AiortcPeerConnection`` adapts aiortc):

- ``createOffer() -> dict`` and ``createAnswer() -> dict``
- ``setLocalDescription(description: dict)``
- ``setRemoteDescription(description: dict)``
- ``addIceCandidate(candidate: dict)``

and, optionally, ``subscribe_connection_state(callback)`` which calls the
coroutine ``callback(state)`` with ``connecting``, ``connected``,
``disconnected``, ``failed`` or ``closed``.

The rules mirror the relay's session machine so both ends agree:

- Glare: an offer arriving while our own offer is pending is ignored if we
  are impolite; if we are polite our offer is rolled back
  (``setLocalDescription({"type": "rollback"})``) and the remote offer wins.
- Candidates received before a remote description is set are buffered and
  added in arrival order right after ``setRemoteDescription`` completes.
- ``bye``, and the ``failed``/``closed`` connection states, close the
  negotiator for good.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from rtc_signaling.errors import NegotiationError, SessionClosedError
from rtc_signaling.negotiation.session import (
    STATE_CLOSED,
    STATE_HAVE_LOCAL_OFFER,
    STATE_HAVE_REMOTE_OFFER,
    STATE_IDLE,
    STATE_STABLE,
    is_polite,
)
from rtc_signaling.protocol import (
    MSG_ANSWER,
    MSG_BYE,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    Envelope,
)

logger = logging.getLogger(__name__)

Send = Callable[[Envelope], Awaitable[None]]

# Connection states reported by the peer connection
CONNECTION_STATES = ("new", "connecting", "connected", "disconnected", "failed", "closed")

ROLLBACK = {"type": "rollback"}


class PeerNegotiator:
    """Negotiates one peer link with ``remote_id``.

    Attributes:
        local_id: Our relay-assigned id.
        remote_id: The peer's id.
        polite: Our glare role for this pair.
        state: One of the STATE_* constants from the session machine.
        connection_state: Last state reported by the peer connection.
        pending_candidates: Remote candidates waiting for a remote description.
    """

    def __init__(self, local_id: str, remote_id: str, pc, send: Send):
        self.local_id = local_id
        self.remote_id = remote_id
        self.pc = pc
        self.polite = is_polite(local_id, remote_id)
        self.state = STATE_IDLE
        self.connection_state = "new"
        self.has_remote_description = False
        self.pending_candidates: List[dict] = []
        self.ignored_offers = 0
        self._send = send
        self._making_offer = False
        self._ignoring_offer = False

        subscribe = getattr(pc, "subscribe_connection_state", None)
        if subscribe is not None:
            subscribe(self.on_connection_state_change)

    @property
    def closed(self) -> bool:
        return self.state == STATE_CLOSED

    def _envelope(self, msg_type: str, payload: Optional[dict] = None) -> Envelope:
        return Envelope(type=msg_type, to=self.remote_id, payload=payload)

    async def _pc_call(self, method: str, *args):
        """Call a peer-connection method, reporting failures as NegotiationError."""
        try:
            return await getattr(self.pc, method)(*args)
        except NegotiationError:
            raise
        except Exception as e:
            raise NegotiationError(
                f"{method} failed for peer {self.remote_id}: {e}"
            ) from e

    async def negotiate(self) -> dict:
        """Create and send an offer (initial call or renegotiation).

        Returns:
            The offer that was sent.

        Raises:
            SessionClosedError: The negotiator is closed.
        """
        if self.closed:
            raise SessionClosedError(f"negotiation with {self.remote_id} is closed")

        self._making_offer = True
        try:
            offer = await self._pc_call("createOffer")
            await self._pc_call("setLocalDescription", offer)
            self.state = STATE_HAVE_LOCAL_OFFER
            await self._send(self._envelope(MSG_OFFER, offer))
            logger.info(f"Sent offer to {self.remote_id}")
        finally:
            self._making_offer = False
        return offer

    async def handle(self, envelope: Envelope) -> None:
        """Consume an envelope relayed from ``remote_id``."""
        if self.closed:
            logger.debug(f"Ignoring {envelope.type} from {self.remote_id}: closed")
            return

        if envelope.type == MSG_OFFER:
            await self._on_offer(envelope.payload or {})
        elif envelope.type == MSG_ANSWER:
            await self._on_answer(envelope.payload or {})
        elif envelope.type == MSG_ICE_CANDIDATE:
            await self._on_candidate(envelope.payload)
        elif envelope.type == MSG_BYE:
            logger.info(f"Peer {self.remote_id} said bye")
            await self.close(send_bye=False)
        else:
            logger.warning(f"Unexpected {envelope.type} for negotiation with {self.remote_id}")

    async def _on_offer(self, offer: dict) -> None:
        collision = self._making_offer or self.state == STATE_HAVE_LOCAL_OFFER
        self._ignoring_offer = collision and not self.polite
        if self._ignoring_offer:
            self.ignored_offers += 1
            logger.info(f"Glare with {self.remote_id}: ignoring offer (impolite)")
            return

        if collision:
            logger.info(f"Glare with {self.remote_id}: rolling back local offer (polite)")
            await self._pc_call("setLocalDescription", ROLLBACK)

        await self._set_remote(offer)
        self.state = STATE_HAVE_REMOTE_OFFER

        answer = await self._pc_call("createAnswer")
        await self._pc_call("setLocalDescription", answer)
        self.state = STATE_STABLE
        await self._send(self._envelope(MSG_ANSWER, answer))
        logger.info(f"Sent answer to {self.remote_id}")

    async def _on_answer(self, answer: dict) -> None:
        if self.state != STATE_HAVE_LOCAL_OFFER:
            logger.warning(
                f"Ignoring answer from {self.remote_id} in state {self.state}"
            )
            return
        await self._set_remote(answer)
        self.state = STATE_STABLE
        logger.info(f"Connection negotiated with {self.remote_id}")

    async def _on_candidate(self, candidate: Optional[dict]) -> None:
        if not self.has_remote_description:
            self.pending_candidates.append(candidate)
            logger.debug(f"Buffered ICE candidate from {self.remote_id}")
            return
        try:
            await self._pc_call("addIceCandidate", candidate)
        except NegotiationError:
            # Candidates belonging to an offer we ignored are expected to fail
            if not self._ignoring_offer:
                raise
            logger.debug(f"Dropped candidate for ignored offer from {self.remote_id}")

    async def _set_remote(self, description: dict) -> None:
        await self._pc_call("setRemoteDescription", description)
        self.has_remote_description = True
        buffered, self.pending_candidates = self.pending_candidates, []
        for candidate in buffered:
            await self._pc_call("addIceCandidate", candidate)
        if buffered:
            logger.debug(f"Flushed {len(buffered)} buffered candidate(s) from {self.remote_id}")

    async def send_candidate(self, candidate: dict) -> None:
        """Relay a locally gathered candidate to the peer."""
        if self.closed:
            return
        await self._send(self._envelope(MSG_ICE_CANDIDATE, candidate))

    async def on_connection_state_change(self, state: str) -> None:
        """React to a connection-state notification from the peer connection."""
        if state not in CONNECTION_STATES:
            logger.warning(f"Unknown connection state from peer connection: {state}")
        self.connection_state = state
        logger.info(f"Connection state with {self.remote_id}: {state}")
        if state == "failed":
            await self.close(send_bye=True)
        elif state == "closed":
            await self.close(send_bye=False)

    async def close(self, send_bye: bool = True) -> None:
        """Close the negotiation, optionally telling the peer.

        The peer connection itself belongs to the caller and is not closed.
        """
        if self.closed:
            return
        self.state = STATE_CLOSED
        self.pending_candidates = []
        if send_bye:
            await self._send(self._envelope(MSG_BYE))
        logger.info(f"Negotiation with {self.remote_id} closed")
