"""Peer-to-peer two-player game sessions over WebRTC."""

from valentine_duel.errors import (
    BrokerUnavailable,
    InvalidDescriptor,
    MediaPermissionDenied,
    NegotiationTimeout,
    PeerSessionError,
    PeerUnreachable,
    TransportClosed,
)
from valentine_duel.session import GameHandle, GameSession

__all__ = [
    "BrokerUnavailable",
    "GameHandle",
    "GameSession",
    "InvalidDescriptor",
    "MediaPermissionDenied",
    "NegotiationTimeout",
    "PeerSessionError",
    "PeerUnreachable",
    "TransportClosed",
]
