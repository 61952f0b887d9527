"""Tests for envelope decoding and encoding."""

import json

import pytest

from rtc_signaling.protocol import (
    ERR_BAD_JSON,
    ERR_UNKNOWN_TYPE,
    MSG_BYE,
    MSG_CLIENT_ID,
    MSG_ICE_CANDIDATE,
    MSG_OFFER,
    DecodeError,
    Envelope,
    bye_envelope,
    client_id_envelope,
    decode_frame,
    decode_relayed,
    encode_envelope,
    error_envelope,
    peers_list_envelope,
)


class TestDecodeFrame:
    """Tests for decode_frame()."""

    def test_decodes_addressed_offer(self):
        """Offer with target and payload decodes to an Envelope."""
        result = decode_frame(
            '{"type": "offer", "to": "b", "payload": {"type": "offer", "sdp": "v=0"}}'
        )
        assert isinstance(result, Envelope)
        assert result.type == MSG_OFFER
        assert result.to == "b"
        assert result.payload == {"type": "offer", "sdp": "v=0"}
        assert result.is_negotiation

    def test_client_supplied_from_is_discarded(self):
        """A client cannot spoof the sender."""
        result = decode_frame('{"type": "bye", "from": "mallory", "to": "b"}')
        assert isinstance(result, Envelope)
        assert result.sender is None

    def test_invalid_json(self):
        result = decode_frame("{not json")
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_non_object_json(self):
        result = decode_frame("[1, 2, 3]")
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_invalid_utf8_bytes(self):
        result = decode_frame(b"\xff\xfe\x00")
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_bytes_frame_decodes(self):
        result = decode_frame(b'{"type": "list-peers"}')
        assert isinstance(result, Envelope)
        assert result.type == "list-peers"

    def test_missing_type(self):
        result = decode_frame('{"to": "b"}')
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_UNKNOWN_TYPE

    def test_unknown_type(self):
        result = decode_frame('{"type": "join-room", "roomId": "x"}')
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_UNKNOWN_TYPE
        assert result.type == "join-room"

    def test_non_string_target(self):
        result = decode_frame('{"type": "offer", "to": 42}')
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_empty_target_means_no_target(self):
        result = decode_frame('{"type": "offer", "to": ""}')
        assert result.to is None

    def test_non_object_payload(self):
        result = decode_frame('{"type": "offer", "to": "b", "payload": "sdp"}')
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_legacy_candidate_key(self):
        """Demo clients put the candidate at the top level."""
        result = decode_frame(
            '{"type": "ice-candidate", "to": "b", "candidate": {"candidate": "c1"}}'
        )
        assert result.type == MSG_ICE_CANDIDATE
        assert result.payload == {"candidate": "c1"}

    def test_deeply_nested_json(self):
        raw = '{"type": "offer", "payload": ' + "[" * 200000 + "]" * 200000 + "}"
        result = decode_frame(raw)
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_oversized_integer(self):
        """Integers beyond the interpreter's digit limit are bad JSON, not a crash."""
        result = decode_frame('{"type": "offer", "payload": {"x": ' + "1" * 5000 + "}}")
        assert isinstance(result, DecodeError)
        assert result.reason == ERR_BAD_JSON

    def test_never_raises_on_garbage(self):
        for raw in ["", "null", "true", '"text"', "{}", b""]:
            assert isinstance(decode_frame(raw), DecodeError)


class TestDecodeRelayed:
    """Peers keep the relay-stamped sender."""

    def test_keeps_from(self):
        result = decode_relayed('{"type": "offer", "from": "a", "to": "b", "payload": {}}')
        assert result.sender == "a"

    def test_client_id_frame(self):
        result = decode_relayed('{"type": "client-id", "id": "abc"}')
        assert result.type == MSG_CLIENT_ID
        assert result.client_id == "abc"


class TestEncoding:
    """Tests for envelope builders and encode_envelope()."""

    def test_encode_omits_absent_fields(self):
        data = json.loads(encode_envelope(Envelope(type="list-peers")))
        assert data == {"type": "list-peers"}

    def test_encode_uses_wire_names(self):
        envelope = Envelope(type=MSG_OFFER, sender="a", to="b", payload={"sdp": "x"})
        assert json.loads(encode_envelope(envelope)) == {
            "type": "offer",
            "from": "a",
            "to": "b",
            "payload": {"sdp": "x"},
        }

    def test_client_id_envelope(self):
        assert json.loads(encode_envelope(client_id_envelope("abc"))) == {
            "type": "client-id",
            "id": "abc",
        }

    def test_peers_list_envelope(self):
        data = json.loads(encode_envelope(peers_list_envelope(["a", "b"])))
        assert data["payload"]["peers"] == ["a", "b"]

    def test_error_envelope(self):
        envelope = error_envelope("unknown-target", "no client with id z", "offer")
        assert envelope.payload == {
            "reason": "unknown-target",
            "detail": "no client with id z",
            "type": "offer",
        }

    @pytest.mark.parametrize("reason,expected", [(None, None), ("x", {"reason": "x"})])
    def test_bye_envelope(self, reason, expected):
        envelope = bye_envelope("a", "b", reason)
        assert envelope.type == MSG_BYE
        assert envelope.sender == "a"
        assert envelope.to == "b"
        assert envelope.payload == expected
