"""Negotiation module for rtc-signaling.

This module provides the per-pair offer/answer state machine:
- session: Pure transition function, glare resolution and candidate buffering
- manager: Per-pair locking, lazy session creation and idle eviction
"""

from rtc_signaling.negotiation.session import (
    Delivery,
    NegotiationSession,
    Transition,
    is_polite,
    pair_key,
    step,
    terminate,
)
from rtc_signaling.negotiation.manager import SessionManager

__all__ = [
    # Session
    "Delivery",
    "NegotiationSession",
    "Transition",
    "is_polite",
    "pair_key",
    "step",
    "terminate",
    # Manager
    "SessionManager",
]
