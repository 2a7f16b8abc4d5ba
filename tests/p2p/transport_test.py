from __future__ import annotations

import pytest
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription

from swarmlink.p2p.transport import aiortc_transport_factory
from swarmlink.p2p.transport import candidate_from_message
from swarmlink.p2p.transport import candidate_to_message
from swarmlink.p2p.transport import create_aiortc_transport
from swarmlink.p2p.transport import DataChannel
from swarmlink.p2p.transport import description_from_message
from swarmlink.p2p.transport import description_to_message
from swarmlink.p2p.transport import PeerTransport
from testing.transport import FakeDataChannel
from testing.transport import FakeNetwork

CANDIDATE = (
    'candidate:842163049 1 udp 1677729535 192.168.1.10 54400 typ srflx '
    'raddr 0.0.0.0 rport 0'
)


@pytest.mark.asyncio()
async def test_create_aiortc_transport() -> None:
    transport = create_aiortc_transport([])
    assert isinstance(transport, RTCPeerConnection)
    assert isinstance(transport, PeerTransport)
    await transport.close()

    transport = aiortc_transport_factory(['stun:localhost:3478'])()
    assert isinstance(transport, RTCPeerConnection)
    await transport.close()


def test_fakes_satisfy_protocols() -> None:
    network = FakeNetwork()
    assert isinstance(network.factory(), PeerTransport)
    assert isinstance(FakeDataChannel('test'), DataChannel)


def test_description_messages() -> None:
    description = RTCSessionDescription(sdp='v=0\r\n', type='offer')
    message = description_to_message(description)
    assert message == {'type': 'offer', 'sdp': 'v=0\r\n'}

    parsed = description_from_message(message)
    assert parsed.type == 'offer'
    assert parsed.sdp == 'v=0\r\n'


@pytest.mark.parametrize(
    'message',
    (
        {'type': 'candidate', 'sdp': 'v=0'},
        {'type': 'offer'},
        {'type': 'answer', 'sdp': 42},
        {},
    ),
)
def test_description_from_bad_message(message) -> None:
    with pytest.raises(ValueError, match='Invalid session description'):
        description_from_message(message)


def test_candidate_messages() -> None:
    message = {'candidate': CANDIDATE, 'sdpMid': '0', 'sdpMLineIndex': 0}
    candidate = candidate_from_message(message)
    assert candidate is not None
    assert candidate.ip == '192.168.1.10'
    assert candidate.port == 54400
    assert candidate.type == 'srflx'
    assert candidate.sdpMid == '0'
    assert candidate.sdpMLineIndex == 0

    converted = candidate_to_message(candidate)
    assert converted['candidate'].startswith('candidate:')
    assert converted['sdpMid'] == '0'
    assert candidate_from_message(converted) == candidate


def test_candidate_end_of_candidates() -> None:
    assert candidate_from_message({'candidate': ''}) is None
    assert candidate_from_message({}) is None


@pytest.mark.parametrize(
    'message',
    ({'candidate': 'candidate:garbage'}, {'candidate': 42}),
)
def test_candidate_from_bad_message(message) -> None:
    with pytest.raises(ValueError, match='Invalid candidate'):
        candidate_from_message(message)
