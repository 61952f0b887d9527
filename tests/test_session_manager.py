"""Tests for SessionManager: lazy creation, locking, closing and eviction."""

import asyncio

import pytest

from rtc_signaling.negotiation.manager import SessionManager
from rtc_signaling.negotiation.session import (
    MAX_PENDING_CANDIDATES,
    PHASE_HAVE_OFFER,
    PHASE_STABLE,
)
from rtc_signaling.protocol import ERR_PROTOCOL_VIOLATION, ERR_SESSION_CLOSED, Envelope

A = "alice"
B = "bob"
C = "carol"


# ── helpers ──────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _msg(msg_type, sender, to, payload=None):
    return Envelope(type=msg_type, sender=sender, to=to, payload=payload)


# ── fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def manager(clock, delivered):
    async def deliver(delivery):
        delivered.append(delivery)
        return True

    return SessionManager(deliver=deliver, idle_timeout=60.0, closed_linger=10.0, clock=clock)


# ── handle ───────────────────────────────────────────────────────────────────

class TestHandle:
    @pytest.mark.asyncio
    async def test_offer_creates_session_lazily(self, manager, delivered):
        assert manager.get(A, B) is None
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        assert manager.get(B, A).phase == PHASE_HAVE_OFFER
        assert [(d.to, d.envelope.type) for d in delivered] == [(B, "offer")]

    @pytest.mark.asyncio
    async def test_answer_never_creates_session(self, manager, delivered):
        transition = await manager.handle(_msg("answer", B, A, {"sdp": "y"}))
        assert transition.error == ERR_PROTOCOL_VIOLATION
        assert len(manager) == 0
        assert delivered == []

    @pytest.mark.asyncio
    async def test_full_exchange(self, manager, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("answer", B, A, {"sdp": "y"}))
        assert manager.get(A, B).phase == PHASE_STABLE
        assert len(delivered) == 2

    @pytest.mark.asyncio
    async def test_pairs_are_independent(self, manager):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("offer", A, C, {"sdp": "x"}))
        assert len(manager) == 2
        assert {s.pair for s in manager.sessions_for(A)} == {(A, B), (A, C)}
        assert [s.pair for s in manager.sessions_for(B)] == [(A, B)]

    @pytest.mark.asyncio
    async def test_unrelated_pair_not_blocked(self, manager):
        """A held lock on one pair does not delay another pair."""
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        entry = manager._entries[(A, B)]
        async with entry.lock:
            await asyncio.wait_for(manager.handle(_msg("offer", A, C, {"sdp": "x"})), 1)

    @pytest.mark.asyncio
    async def test_bye_without_session_is_forwarded(self, manager, delivered):
        await manager.handle(_msg("bye", A, B))
        assert [(d.to, d.envelope.type, d.envelope.sender) for d in delivered] == [
            (B, "bye", A)
        ]
        assert len(manager) == 0


class TestClosing:
    @pytest.mark.asyncio
    async def test_bye_removes_session_and_tombstones(self, manager, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("bye", B, A))
        assert manager.get(A, B) is None
        assert manager.sessions_for(A) == []
        assert manager.is_tombstoned(A, B)
        assert delivered[-1].to == A

    @pytest.mark.asyncio
    async def test_late_candidate_gets_session_closed(self, manager, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("bye", B, A))
        count = len(delivered)
        transition = await manager.handle(_msg("ice-candidate", A, B, {"candidate": "c"}))
        assert transition.error == ERR_SESSION_CLOSED
        assert len(delivered) == count
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_new_offer_after_bye_starts_fresh(self, manager):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("bye", B, A))
        transition = await manager.handle(_msg("offer", B, A, {"sdp": "z"}))
        assert transition.error is None
        assert manager.get(A, B).offerer == B
        assert not manager.is_tombstoned(A, B)

    @pytest.mark.asyncio
    async def test_tombstone_expires(self, manager, clock):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("bye", B, A))
        clock.now += 11
        transition = await manager.handle(_msg("ice-candidate", A, B, {"candidate": "c"}))
        assert transition.error is None

    @pytest.mark.asyncio
    async def test_close_client_notifies_each_peer_once(self, manager, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("offer", C, A, {"sdp": "x"}))
        delivered.clear()

        notified = await manager.close_client(A, reason="peer-disconnected")

        assert sorted(notified) == [B, C]
        assert sorted((d.to, d.envelope.type) for d in delivered) == [(B, "bye"), (C, "bye")]
        assert all(d.envelope.payload == {"reason": "peer-disconnected"} for d in delivered)
        assert len(manager) == 0
        assert await manager.close_client(A) == []


class TestEviction:
    @pytest.mark.asyncio
    async def test_abandoned_offer_evicted_with_timeout_bye(self, manager, clock, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        delivered.clear()
        clock.now += 61

        assert await manager.evict_idle() == 1

        assert len(manager) == 0
        assert sorted(d.to for d in delivered) == [A, B]
        assert all(
            d.envelope.payload == {"reason": "negotiation-timeout"} for d in delivered
        )

    @pytest.mark.asyncio
    async def test_stable_session_evicted_silently(self, manager, clock, delivered):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        await manager.handle(_msg("answer", B, A, {"sdp": "y"}))
        delivered.clear()
        clock.now += 61

        assert await manager.evict_idle() == 1
        assert delivered == []
        assert not manager.is_tombstoned(A, B)

    @pytest.mark.asyncio
    async def test_active_session_kept(self, manager, clock):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        clock.now += 59
        assert await manager.evict_idle() == 0
        assert manager.get(A, B) is not None

    @pytest.mark.asyncio
    async def test_activity_resets_idle_timer(self, manager, clock):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        clock.now += 50
        await manager.handle(_msg("answer", B, A, {"sdp": "y"}))
        clock.now += 50
        assert await manager.evict_idle() == 0

    @pytest.mark.asyncio
    async def test_candidate_flood_does_not_keep_session_alive(self, manager, clock, delivered):
        for n in range(MAX_PENDING_CANDIDATES):
            await manager.handle(_msg("ice-candidate", A, B, {"candidate": f"c{n}"}))
        clock.now += 50
        transition = await manager.handle(_msg("ice-candidate", A, B, {"candidate": "extra"}))
        assert transition.error == ERR_PROTOCOL_VIOLATION
        assert len(manager.get(A, B).pending_candidates) == MAX_PENDING_CANDIDATES

        clock.now += 11
        assert await manager.evict_idle() == 1
        assert sorted(d.to for d in delivered) == [A, B]

    @pytest.mark.asyncio
    async def test_sweeper_runs_until_cancelled(self, manager, clock):
        await manager.handle(_msg("offer", A, B, {"sdp": "x"}))
        clock.now += 61
        sweeper = asyncio.create_task(manager.run_sweeper(0.01))
        for _ in range(100):
            if len(manager) == 0:
                break
            await asyncio.sleep(0.01)
        sweeper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sweeper
        assert len(manager) == 0
