"""Wire protocol for the signaling relay.

Every WebSocket frame carries exactly one JSON object (an *envelope*):

    {"type": "offer", "from": "<id>", "to": "<id>", "payload": {...}}

Message Types
-------------

**offer** / **answer**
    Sent by: Client, relayed to the addressed peer
    Payload: session description, opaque to the relay
    Example: {"type": "offer", "to": "b1c2", "payload": {"type": "offer", "sdp": "v=0..."}}

**ice-candidate**
    Sent by: Client, relayed to the addressed peer
    Payload: a single candidate descriptor, opaque to the relay
    Example: {"type": "ice-candidate", "to": "b1c2", "payload": {"candidate": "...", "sdpMid": "0"}}

**bye**
    Sent by: Client, or synthesized by the relay when a peer vanishes
    Payload: optional {"reason": "peer-disconnected" | "negotiation-timeout"}

**list-peers** / **peers-list**
    Client → Relay: {"type": "list-peers"}
    Relay → Client: {"type": "peers-list", "payload": {"peers": ["a1", "b2"]}}

**client-id**
    Relay → Client on connect: {"type": "client-id", "id": "a1b2c3"}

**peer-disconnected**
    Relay → all clients when a client leaves (best effort):
    {"type": "peer-disconnected", "payload": {"peer": "a1b2c3"}}

**error**
    Relay → Client: {"type": "error", "payload": {"reason": "unknown-target", "detail": "..."}}
    Reasons: bad-json, unknown-type, unknown-target, session-closed, protocol-violation

Addressing
----------

``from`` is always set by the relay; whatever a client puts there is
discarded on decode. ``to`` is optional: negotiation messages without a
target are broadcast to every other client (discovery mode).

Older clients put descriptions under ``offer``, ``answer`` or ``candidate``
instead of ``payload``; those keys are accepted when ``payload`` is absent.
"""

import json
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional, Union

# Negotiation message types
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"
MSG_BYE = "bye"

# Registry-scope message types
MSG_LIST_PEERS = "list-peers"
MSG_PEERS_LIST = "peers-list"
MSG_CLIENT_ID = "client-id"
MSG_PEER_DISCONNECTED = "peer-disconnected"

# Error message type
MSG_ERROR = "error"

NEGOTIATION_TYPES = frozenset({MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE})

# Types a client is allowed to send
CLIENT_TYPES = NEGOTIATION_TYPES | {MSG_BYE, MSG_LIST_PEERS}

# Types only the relay emits
SERVER_TYPES = frozenset({MSG_PEERS_LIST, MSG_CLIENT_ID, MSG_ERROR, MSG_PEER_DISCONNECTED})

KNOWN_TYPES = CLIENT_TYPES | SERVER_TYPES

# Error reasons
ERR_BAD_JSON = "bad-json"
ERR_UNKNOWN_TYPE = "unknown-type"
ERR_UNKNOWN_TARGET = "unknown-target"
ERR_SESSION_CLOSED = "session-closed"
ERR_PROTOCOL_VIOLATION = "protocol-violation"

# Reasons carried by relay-synthesized byes
BYE_PEER_DISCONNECTED = "peer-disconnected"
BYE_NEGOTIATION_TIMEOUT = "negotiation-timeout"

# Payload keys used by older clients
LEGACY_PAYLOAD_KEYS = {
    MSG_OFFER: "offer",
    MSG_ANSWER: "answer",
    MSG_ICE_CANDIDATE: "candidate",
}


@dataclass(frozen=True)
class Envelope:
    """A decoded control message.

    Attributes:
        type: One of KNOWN_TYPES.
        sender: Relay-assigned sender id (``from`` on the wire).
        to: Destination client id, or None for registry-scope/broadcast.
        payload: Type-specific body, opaque to the relay.
        client_id: Assigned id, only present on ``client-id`` frames.
    """

    type: str
    sender: Optional[str] = None
    to: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    client_id: Optional[str] = None

    @property
    def is_negotiation(self) -> bool:
        return self.type in NEGOTIATION_TYPES

    def with_sender(self, sender: str) -> "Envelope":
        """Return a copy stamped with the relay-assigned sender."""
        return replace(self, sender=sender)

    def to_dict(self) -> dict:
        """Convert to the wire dictionary, omitting absent fields."""
        result: Dict[str, Any] = {"type": self.type}
        if self.client_id is not None:
            result["id"] = self.client_id
        if self.sender is not None:
            result["from"] = self.sender
        if self.to is not None:
            result["to"] = self.to
        if self.payload is not None:
            result["payload"] = self.payload
        return result


@dataclass(frozen=True)
class DecodeError:
    """Result of a frame that could not be decoded.

    Attributes:
        reason: Machine-readable code (ERR_BAD_JSON or ERR_UNKNOWN_TYPE).
        detail: Human-readable explanation for logs and the error payload.
        type: The offending ``type`` value, when one could be read.
    """

    reason: str
    detail: str
    type: Optional[str] = None


DecodeResult = Union[Envelope, DecodeError]


def decode_frame(raw: Union[str, bytes]) -> DecodeResult:
    """Decode one inbound frame into an Envelope.

    Never raises; malformed input is returned as a DecodeError.

    Examples:
        >>> decode_frame('{"type": "list-peers"}')
        Envelope(type='list-peers', sender=None, to=None, payload=None, client_id=None)

        >>> decode_frame("not json").reason
        'bad-json'
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return DecodeError(ERR_BAD_JSON, "frame is not valid UTF-8")

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError, TypeError) as e:
        # ValueError covers JSONDecodeError and oversized integer literals
        return DecodeError(ERR_BAD_JSON, f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return DecodeError(ERR_BAD_JSON, "frame must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        return DecodeError(ERR_UNKNOWN_TYPE, "missing message type")
    if msg_type not in KNOWN_TYPES:
        return DecodeError(ERR_UNKNOWN_TYPE, f"unknown message type: {msg_type}", msg_type)

    to = data.get("to")
    if to is not None and not isinstance(to, str):
        return DecodeError(ERR_BAD_JSON, "'to' must be a string", msg_type)
    if to == "":
        to = None

    payload = data.get("payload")
    if payload is None and msg_type in LEGACY_PAYLOAD_KEYS:
        payload = data.get(LEGACY_PAYLOAD_KEYS[msg_type])
    if payload is not None and not isinstance(payload, dict):
        return DecodeError(ERR_BAD_JSON, "'payload' must be a JSON object", msg_type)

    client_id = data.get("id") if msg_type == MSG_CLIENT_ID else None
    if client_id is not None and not isinstance(client_id, str):
        return DecodeError(ERR_BAD_JSON, "'id' must be a string", msg_type)

    # "from" is deliberately not read here: the relay assigns it.
    return Envelope(type=msg_type, to=to, payload=payload, client_id=client_id)


def decode_relayed(raw: Union[str, bytes]) -> DecodeResult:
    """Decode a frame received *from* the relay, keeping its ``from`` field.

    Used by peers, which trust the relay's sender stamping.
    """
    result = decode_frame(raw)
    if isinstance(result, DecodeError):
        return result
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    sender = json.loads(raw).get("from")
    if sender is not None and not isinstance(sender, str):
        return DecodeError(ERR_BAD_JSON, "'from' must be a string", result.type)
    return result.with_sender(sender) if sender else result


def encode_envelope(envelope: Envelope) -> str:
    """Encode an Envelope as a compact JSON frame."""
    return json.dumps(envelope.to_dict(), separators=(",", ":"))


def client_id_envelope(client_id: str) -> Envelope:
    return Envelope(type=MSG_CLIENT_ID, client_id=client_id)


def peers_list_envelope(peers: Iterable[str]) -> Envelope:
    return Envelope(type=MSG_PEERS_LIST, payload={"peers": list(peers)})


def peer_disconnected_envelope(peer_id: str) -> Envelope:
    return Envelope(type=MSG_PEER_DISCONNECTED, payload={"peer": peer_id})


def bye_envelope(sender: str, to: str, reason: Optional[str] = None) -> Envelope:
    """Build a ``bye`` as seen by ``to``, optionally tagged with a reason."""
    payload = {"reason": reason} if reason else None
    return Envelope(type=MSG_BYE, sender=sender, to=to, payload=payload)


def error_envelope(
    reason: str, detail: Optional[str] = None, msg_type: Optional[str] = None
) -> Envelope:
    """Build an ``error`` envelope for the originating client.

    Args:
        reason: One of the ERR_* codes.
        detail: Optional human-readable explanation.
        msg_type: Type of the message that caused the error, if known.
    """
    payload: Dict[str, Any] = {"reason": reason}
    if detail:
        payload["detail"] = detail
    if msg_type:
        payload["type"] = msg_type
    return Envelope(type=MSG_ERROR, payload=payload)
