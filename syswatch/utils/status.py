"""Peer health state enumeration."""

from enum import Enum


class PeerState(Enum):
    """Reachability state of a watched peer."""

    UNKNOWN = "unknown"
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"

    @property
    def is_alive(self) -> bool:
        """Only an Up peer is reported as alive."""
        return self is PeerState.UP
