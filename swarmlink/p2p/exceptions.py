"""Exception types for peering and discovery errors."""
from __future__ import annotations


class PeerSessionError(Exception):
    """Error negotiating or using a peer session."""

    pass


class NegotiationError(PeerSessionError):
    """The transport reported a failure during the offer/answer handshake."""

    pass


class NegotiationTimeoutError(NegotiationError):
    """Timeout waiting on a peer session to finish negotiating."""

    pass


class DiscoveryError(Exception):
    """The discovery client was used incorrectly (e.g., before starting)."""

    pass
