"""Tests for SignalingClient dispatch against a scripted WebSocket."""

import json

import pytest

from rtc_signaling.peer.signaling_client import SignalingClient


class FakeWebSocket:
    """Yields scripted frames to ``run()`` and records what the client sends."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    def __aiter__(self):
        return self._iterate()

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    async def close(self):
        self.closed = True


class FakePeerConnection:
    def __init__(self, remote_id, fail_remote=False):
        self.remote_id = remote_id
        self.fail_remote = fail_remote
        self.closed = False
        self.state_callback = None

    def subscribe_connection_state(self, callback):
        self.state_callback = callback

    async def createOffer(self):
        return {"type": "offer", "sdp": f"offer-to-{self.remote_id}"}

    async def createAnswer(self):
        return {"type": "answer", "sdp": f"answer-to-{self.remote_id}"}

    async def setLocalDescription(self, description):
        pass

    async def setRemoteDescription(self, description):
        if self.fail_remote:
            raise ValueError("bad sdp")

    async def addIceCandidate(self, candidate):
        pass

    async def close(self):
        self.closed = True


def _frame(msg_type, sender, payload=None):
    data = {"type": msg_type, "from": sender, "to": "a"}
    if payload is not None:
        data["payload"] = payload
    return json.dumps(data)


def _offer(sender):
    return _frame("offer", sender, {"type": "offer", "sdp": f"offer-from-{sender}"})


@pytest.fixture
def peers():
    return []


@pytest.fixture
def client(peers):
    """Client "a" with a peer factory that fails remote descriptions from "b"."""

    def factory(remote_id):
        pc = FakePeerConnection(remote_id, fail_remote=(remote_id == "b"))
        peers.append(pc)
        return pc

    client = SignalingClient("ws://relay.test", peer_factory=factory)
    client.client_id = "a"
    return client


def _attach(client, frames=()):
    websocket = FakeWebSocket(frames)
    client._websocket = websocket
    return websocket


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_peer_connection_failure_does_not_stop_dispatch(self, client):
        """A rejected offer from one peer is logged and the next peer is still answered."""
        websocket = _attach(client, [_offer("b"), _offer("c")])
        await client.run()
        assert [(f["type"], f["to"]) for f in websocket.sent] == [("answer", "c")]
        assert client.negotiators["c"].state == "stable"

    @pytest.mark.asyncio
    async def test_bad_frame_skipped(self, client):
        websocket = _attach(client, ["{not json", _offer("c")])
        await client.run()
        assert [f["type"] for f in websocket.sent] == ["answer"]

    @pytest.mark.asyncio
    async def test_relay_errors_recorded(self, client):
        _attach(client, [json.dumps({
            "type": "error",
            "payload": {"reason": "unknown-target", "detail": "no client with id z"},
        })])
        await client.run()
        assert client.errors == [{"reason": "unknown-target", "detail": "no client with id z"}]


class TestPeerConnectionRelease:
    @pytest.mark.asyncio
    async def test_relayed_bye_closes_peer_connection(self, client, peers):
        websocket = _attach(client, [_offer("c"), _frame("bye", "c")])
        await client.run()
        assert "c" not in client.negotiators
        assert peers[0].closed
        assert [f["type"] for f in websocket.sent] == ["answer"]

    @pytest.mark.asyncio
    async def test_hang_up_closes_peer_connection(self, client, peers):
        websocket = _attach(client)
        await client.call("c")
        await client.hang_up("c")
        assert peers[0].closed
        assert [(f["type"], f["to"]) for f in websocket.sent] == [("offer", "c"), ("bye", "c")]

    @pytest.mark.asyncio
    async def test_closed_negotiator_replaced_and_released(self, client, peers):
        _attach(client)
        await client.call("c")
        await peers[0].state_callback("closed")
        assert client.negotiators["c"].closed

        negotiator = await client.negotiator_for("c")
        assert not negotiator.closed
        assert negotiator.pc is peers[1]
        assert peers[0].closed
        assert not peers[1].closed

    @pytest.mark.asyncio
    async def test_client_close_releases_everything(self, client, peers):
        websocket = _attach(client)
        await client.call("c")
        await client.call("d")
        await client.close()
        assert client.negotiators == {}
        assert all(pc.closed for pc in peers)
        assert websocket.closed

    @pytest.mark.asyncio
    async def test_peer_connection_without_close_is_tolerated(self):
        class MinimalPeerConnection(FakePeerConnection):
            close = None

        client = SignalingClient(
            "ws://relay.test", peer_factory=lambda remote_id: MinimalPeerConnection(remote_id)
        )
        client.client_id = "a"
        websocket = _attach(client)
        await client.call("c")
        await client.hang_up("c")
        assert [f["type"] for f in websocket.sent] == ["offer", "bye"]
