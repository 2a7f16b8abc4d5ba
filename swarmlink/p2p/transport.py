"""WebRTC transport adapter.

A [`PeerSession`][swarmlink.p2p.session.PeerSession] only talks to the
WebRTC stack through the narrow
[`PeerTransport`][swarmlink.p2p.transport.PeerTransport] protocol which
mirrors the subset of
[`RTCPeerConnection`](https://aiortc.readthedocs.io/en/latest/api.html)
that negotiation requires. The default factory builds an aiortc
connection; tests substitute an in-memory fake.
"""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp

DEFAULT_ICE_SERVERS = (
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
)
"""Public STUN servers used when no ICE servers are configured."""

CHANNEL_LABEL = 'swarmlink'
"""Label of the data channel opened by the initiating peer."""


@runtime_checkable
class DataChannel(Protocol):
    """Data channel interface used by sessions."""

    @property
    def label(self) -> str:
        """Channel label."""
        ...

    @property
    def readyState(self) -> str:  # noqa: N802
        """One of `'connecting'`, `'open'`, `'closing'`, or `'closed'`."""
        ...

    def send(self, data: bytes | str) -> None:
        """Send a message over the channel."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register a handler for `open`, `close`, `error`, or `message`."""
        ...


@runtime_checkable
class PeerTransport(Protocol):
    """Peer connection interface used by sessions.

    The method names follow the W3C WebRTC API (and aiortc) so that an
    [`RTCPeerConnection`][aiortc.RTCPeerConnection] satisfies the protocol
    without wrapping.
    """

    @property
    def localDescription(self) -> RTCSessionDescription | None:  # noqa: N802
        """Local session description, including gathered candidates."""
        ...

    @property
    def iceGatheringState(self) -> str:  # noqa: N802
        """One of `'new'`, `'gathering'`, or `'complete'`."""
        ...

    @property
    def connectionState(self) -> str:  # noqa: N802
        """Aggregate transport state (e.g., `'connected'` or `'failed'`)."""
        ...

    async def createOffer(self) -> RTCSessionDescription:  # noqa: N802
        """Create an offer description."""
        ...

    async def createAnswer(self) -> RTCSessionDescription:  # noqa: N802
        """Create an answer description."""
        ...

    async def setLocalDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Apply a local description."""
        ...

    async def setRemoteDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Apply a remote description."""
        ...

    async def addIceCandidate(  # noqa: N802
        self,
        candidate: RTCIceCandidate | None,
    ) -> None:
        """Apply a remote candidate."""
        ...

    def createDataChannel(  # noqa: N802
        self,
        label: str,
        ordered: bool = True,
    ) -> Any:
        """Create a data channel."""
        ...

    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register an event handler.

        Events used are `icegatheringstatechange`, `connectionstatechange`,
        `datachannel` and, in trickle mode, `icecandidate`.
        """
        ...


TransportFactory = Callable[[], PeerTransport]
"""Callable that returns a new, unused transport."""


def create_aiortc_transport(
    ice_servers: Sequence[str] | None = None,
) -> RTCPeerConnection:
    """Create a new aiortc peer connection.

    Args:
        ice_servers: STUN/TURN server URLs. `None` uses the
            [`DEFAULT_ICE_SERVERS`][swarmlink.p2p.transport.DEFAULT_ICE_SERVERS]
            and an empty sequence disables ICE servers entirely (host
            candidates only, e.g., for local testing).

    Returns:
        New peer connection.
    """
    urls = DEFAULT_ICE_SERVERS if ice_servers is None else tuple(ice_servers)
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in urls],
    )
    return RTCPeerConnection(configuration=configuration)


def aiortc_transport_factory(
    ice_servers: Sequence[str] | None = None,
) -> TransportFactory:
    """Get a factory of aiortc transports sharing one ICE configuration."""
    servers = None if ice_servers is None else tuple(ice_servers)

    def _factory() -> PeerTransport:
        return create_aiortc_transport(servers)

    return _factory


def description_to_message(
    description: RTCSessionDescription,
) -> dict[str, str]:
    """Convert a session description to a signaling payload."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_message(
    message: dict[str, Any],
) -> RTCSessionDescription:
    """Convert a signaling payload to a session description.

    Raises:
        ValueError: if the payload is not an offer or answer with a string
            SDP.
    """
    kind = message.get('type')
    sdp = message.get('sdp')
    if kind not in ('offer', 'answer') or not isinstance(sdp, str):
        raise ValueError(f'Invalid session description payload: {message!r}')
    return RTCSessionDescription(sdp=sdp, type=kind)


def candidate_to_message(candidate: RTCIceCandidate) -> dict[str, Any]:
    """Convert a candidate to the `candidate` field of a signaling payload."""
    return {
        'candidate': f'candidate:{candidate_to_sdp(candidate)}',
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


def candidate_from_message(message: dict[str, Any]) -> RTCIceCandidate | None:
    """Convert the `candidate` field of a signaling payload to a candidate.

    Returns:
        The candidate or `None` for the empty end-of-candidates marker.

    Raises:
        ValueError: if the candidate line cannot be parsed.
    """
    line = message.get('candidate')
    if not line:
        return None
    if not isinstance(line, str):
        raise ValueError(f'Invalid candidate payload: {message!r}')
    if line.startswith('candidate:'):
        line = line.split(':', 1)[1]
    if len(line.split()) < 8:
        raise ValueError(f'Invalid candidate line: {line!r}')
    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as e:
        raise ValueError(f'Invalid candidate line: {line!r}') from e
    candidate.sdpMid = message.get('sdpMid')
    candidate.sdpMLineIndex = message.get('sdpMLineIndex')
    return candidate
