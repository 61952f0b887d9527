"""Per-pair negotiation state and its pure transition function.

A NegotiationSession tracks one unordered peer pair {A, B} as seen by the
relay. ``step(session, envelope)`` consumes one routed message and returns a
Transition: the next session value, the deliveries the relay must make, and
an optional error for the sender. Nothing here touches sockets, locks, or the
event loop.

Pair phases:

    idle -[offer from X]-> have-offer(X)
    have-offer(X) -[answer from Y]-> stable
    stable -[offer from X]-> have-offer(X)        (renegotiation)
    any -[bye | disconnect]-> closed              (terminal)

Seen from one side, ``have-offer(X)`` is ``have-local-offer`` for X and
``have-remote-offer`` for its peer (see ``side_state``).

Glare: while in have-offer(X), an offer from the peer Y is resolved by X's
role. If X is polite its pending offer is discarded and Y's offer is
forwarded; if X is impolite Y's offer is dropped and X keeps waiting.

Candidate buffering: a candidate from S to R is forwarded only once R holds
a remote description, i.e. after an offer or answer from S has been
forwarded to R. Earlier candidates are queued in arrival order and flushed
immediately after the description that completes R's remote description.
At most MAX_PENDING_CANDIDATES are held per sender; further candidates are
rejected as a protocol violation until a description flushes the queue.
"""

from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Tuple

from rtc_signaling.protocol import (
    ERR_PROTOCOL_VIOLATION,
    ERR_SESSION_CLOSED,
    MSG_ANSWER,
    MSG_BYE,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    Envelope,
    bye_envelope,
)

# Pair phases
PHASE_IDLE = "idle"
PHASE_HAVE_OFFER = "have-offer"
PHASE_STABLE = "stable"
PHASE_CLOSED = "closed"

# Per-side states
STATE_IDLE = "idle"
STATE_HAVE_LOCAL_OFFER = "have-local-offer"
STATE_HAVE_REMOTE_OFFER = "have-remote-offer"
STATE_STABLE = "stable"
STATE_CLOSED = "closed"

# Buffered candidates held per sender before further ones are rejected
MAX_PENDING_CANDIDATES = 64

PairKey = Tuple[str, str]


def pair_key(a: str, b: str) -> PairKey:
    """Order-independent key for the pair {a, b}."""
    return (a, b) if a <= b else (b, a)


def is_polite(local_id: str, remote_id: str) -> bool:
    """Whether ``local_id`` plays the polite role towards ``remote_id``.

    The smaller id is polite. Both peers evaluate this independently and
    always reach complementary answers.
    """
    return local_id < remote_id


@dataclass(frozen=True)
class Delivery:
    """An envelope the relay must send to ``to``."""

    to: str
    envelope: Envelope


@dataclass(frozen=True)
class NegotiationSession:
    """Negotiation state for one peer pair.

    Attributes:
        pair: Sorted pair of client ids.
        phase: One of the PHASE_* constants.
        offerer: Client whose offer is pending (have-offer only).
        pending_offer: Payload of the pending offer, for duplicate detection.
        offer_granted_description: Whether forwarding the pending offer gave
            its recipient a remote description for the first time.
        described: Ids that hold a remote description from their peer.
        pending_candidates: Buffered candidate envelopes in arrival order.
    """

    pair: PairKey
    phase: str = PHASE_IDLE
    offerer: Optional[str] = None
    pending_offer: Optional[dict] = None
    offer_granted_description: bool = False
    described: FrozenSet[str] = frozenset()
    pending_candidates: Tuple[Envelope, ...] = ()

    @classmethod
    def create(cls, a: str, b: str) -> "NegotiationSession":
        return cls(pair=pair_key(a, b))

    @property
    def closed(self) -> bool:
        return self.phase == PHASE_CLOSED

    def peer_of(self, client_id: str) -> str:
        a, b = self.pair
        if client_id == a:
            return b
        if client_id == b:
            return a
        raise ValueError(f"{client_id} is not part of session {self.pair}")

    def involves(self, client_id: str) -> bool:
        return client_id in self.pair

    def side_state(self, client_id: str) -> str:
        """State of the negotiation as seen from ``client_id``."""
        self.peer_of(client_id)
        if self.phase == PHASE_HAVE_OFFER:
            if self.offerer == client_id:
                return STATE_HAVE_LOCAL_OFFER
            return STATE_HAVE_REMOTE_OFFER
        return {
            PHASE_IDLE: STATE_IDLE,
            PHASE_STABLE: STATE_STABLE,
            PHASE_CLOSED: STATE_CLOSED,
        }[self.phase]

    def polite(self, client_id: str) -> bool:
        return is_polite(client_id, self.peer_of(client_id))

    def buffered_from(self, sender: str) -> Tuple[Envelope, ...]:
        return tuple(c for c in self.pending_candidates if c.sender == sender)


@dataclass(frozen=True)
class Transition:
    """Result of applying one message to a session.

    Attributes:
        session: Session after the transition.
        deliveries: Envelopes to send, in order.
        error: Error reason for the sender, or None.
        detail: Human-readable explanation of ``error`` or ``note``.
        note: Non-error outcome worth logging (glare, duplicate offer).
    """

    session: NegotiationSession
    deliveries: Tuple[Delivery, ...] = ()
    error: Optional[str] = None
    detail: Optional[str] = None
    note: Optional[str] = None


def _reject(session: NegotiationSession, reason: str, detail: str) -> Transition:
    return Transition(session=session, error=reason, detail=detail)


def _describe(
    session: NegotiationSession, sender: str, description: Envelope
) -> Tuple[NegotiationSession, Tuple[Delivery, ...]]:
    """Forward a description from ``sender`` and flush its buffered candidates."""
    receiver = session.peer_of(sender)
    deliveries = [Delivery(receiver, description)]
    deliveries.extend(Delivery(receiver, c) for c in session.buffered_from(sender))
    remaining = tuple(c for c in session.pending_candidates if c.sender != sender)
    session = replace(
        session,
        described=session.described | {receiver},
        pending_candidates=remaining,
    )
    return session, tuple(deliveries)


def _on_offer(session: NegotiationSession, envelope: Envelope) -> Transition:
    sender = envelope.sender
    receiver = session.peer_of(sender)

    if session.phase == PHASE_HAVE_OFFER:
        if session.offerer == sender:
            if envelope.payload == session.pending_offer:
                return Transition(session=session, note="duplicate offer dropped")
            # Re-offer from the same side replaces the pending one
            updated = replace(session, pending_offer=envelope.payload)
            updated, deliveries = _describe(updated, sender, envelope)
            return Transition(
                session=updated, deliveries=deliveries, note="pending offer replaced"
            )

        # Glare: both sides have an offer in flight
        if not is_polite(session.offerer, sender):
            return Transition(
                session=session,
                note=f"glare: ignored offer from {sender}, {session.offerer} is impolite",
            )

        described = session.described
        if session.offer_granted_description:
            # The discarded offer never became the receiver's remote description
            described = described - {sender}
        newly_described = receiver not in described
        rolled_back = replace(
            session,
            offerer=sender,
            pending_offer=envelope.payload,
            offer_granted_description=newly_described,
            described=described,
        )
        rolled_back, deliveries = _describe(rolled_back, sender, envelope)
        return Transition(
            session=rolled_back,
            deliveries=deliveries,
            note=f"glare: {receiver} is polite, discarded its offer",
        )

    # idle or stable: start (re)negotiation
    started = replace(
        session,
        phase=PHASE_HAVE_OFFER,
        offerer=sender,
        pending_offer=envelope.payload,
        offer_granted_description=receiver not in session.described,
    )
    started, deliveries = _describe(started, sender, envelope)
    return Transition(session=started, deliveries=deliveries)


def _on_answer(session: NegotiationSession, envelope: Envelope) -> Transition:
    sender = envelope.sender
    if session.phase != PHASE_HAVE_OFFER:
        return _reject(
            session,
            ERR_PROTOCOL_VIOLATION,
            f"answer without a pending offer (state: {session.side_state(sender)})",
        )
    if session.offerer == sender:
        return _reject(session, ERR_PROTOCOL_VIOLATION, "cannot answer your own offer")

    stable = replace(
        session,
        phase=PHASE_STABLE,
        offerer=None,
        pending_offer=None,
        offer_granted_description=False,
    )
    stable, deliveries = _describe(stable, sender, envelope)
    return Transition(session=stable, deliveries=deliveries)


def _on_candidate(session: NegotiationSession, envelope: Envelope) -> Transition:
    receiver = session.peer_of(envelope.sender)
    if receiver in session.described:
        return Transition(session=session, deliveries=(Delivery(receiver, envelope),))
    if len(session.buffered_from(envelope.sender)) >= MAX_PENDING_CANDIDATES:
        return _reject(
            session,
            ERR_PROTOCOL_VIOLATION,
            f"candidate buffer full ({MAX_PENDING_CANDIDATES} awaiting a description)",
        )
    buffered = replace(
        session, pending_candidates=session.pending_candidates + (envelope,)
    )
    return Transition(session=buffered, note="candidate buffered")


def _on_bye(session: NegotiationSession, envelope: Envelope) -> Transition:
    receiver = session.peer_of(envelope.sender)
    closed = replace(
        session,
        phase=PHASE_CLOSED,
        offerer=None,
        pending_offer=None,
        pending_candidates=(),
    )
    return Transition(session=closed, deliveries=(Delivery(receiver, envelope),))


_HANDLERS = {
    MSG_OFFER: _on_offer,
    MSG_ANSWER: _on_answer,
    MSG_ICE_CANDIDATE: _on_candidate,
    MSG_BYE: _on_bye,
}


def step(session: NegotiationSession, envelope: Envelope) -> Transition:
    """Apply one routed message to ``session``.

    Args:
        session: Current session value.
        envelope: Message with relay-assigned ``sender`` and a ``to`` naming
            the other member of the pair.

    Returns:
        Transition describing the next state and the deliveries to make.
    """
    if envelope.sender is None or not session.involves(envelope.sender):
        raise ValueError(f"sender {envelope.sender} is not part of {session.pair}")
    if envelope.to != session.peer_of(envelope.sender):
        raise ValueError(f"target {envelope.to} is not the peer of {envelope.sender}")

    if session.closed:
        return _reject(session, ERR_SESSION_CLOSED, f"session {session.pair} is closed")

    handler = _HANDLERS.get(envelope.type)
    if handler is None:
        return _reject(
            session,
            ERR_PROTOCOL_VIOLATION,
            f"{envelope.type} is not a negotiation message",
        )
    return handler(session, envelope)


def terminate(
    session: NegotiationSession, departed: str, reason: Optional[str] = None
) -> Transition:
    """Close ``session`` because ``departed`` left, notifying the survivor.

    A session that is already closed produces no deliveries, so the
    survivor is told exactly once.
    """
    if session.closed:
        return Transition(session=session)
    survivor = session.peer_of(departed)
    closed = replace(
        session,
        phase=PHASE_CLOSED,
        offerer=None,
        pending_offer=None,
        pending_candidates=(),
    )
    notice = bye_envelope(sender=departed, to=survivor, reason=reason)
    return Transition(session=closed, deliveries=(Delivery(survivor, notice),))
