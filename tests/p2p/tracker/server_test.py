from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest import mock

import pytest
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from swarmlink.p2p.tracker.server import TrackerServer
from testing.utils import open_port
from testing.utils import wait_until

INFO_HASH = 'a' * 40
OFFER = {'type': 'offer', 'sdp': 'v=0'}
ANSWER = {'type': 'answer', 'sdp': 'v=0'}


async def _request(
    websocket: ClientConnection,
    message: dict[str, Any],
) -> dict[str, Any]:
    await websocket.send(json.dumps(message))
    return await _recv(websocket)


async def _recv(websocket: ClientConnection) -> dict[str, Any]:
    return json.loads(await asyncio.wait_for(websocket.recv(), 1))


def _announce(peer_id: str, **kwargs: Any) -> dict[str, Any]:
    return {
        'action': 'announce',
        'info_hash': INFO_HASH,
        'peer_id': peer_id,
        'numwant': 10,
        **kwargs,
    }


@pytest.mark.asyncio()
async def test_announce_stats(tracker_server) -> None:
    async with connect(tracker_server.address) as websocket:
        response = await _request(websocket, _announce('peer_a', left=0))

    assert response == {
        'action': 'announce',
        'interval': 1,
        'info_hash': INFO_HASH,
        'complete': 1,
        'incomplete': 0,
    }


@pytest.mark.asyncio()
async def test_relay_offer_and_answer(tracker_server) -> None:
    async with connect(tracker_server.address) as a, connect(
        tracker_server.address,
    ) as b:
        await _request(b, _announce('peer_b'))

        offers = [{'offer_id': '1' * 40, 'offer': OFFER}]
        stats = await _request(a, _announce('peer_a', offers=offers))
        assert stats['incomplete'] == 2

        relayed = await _recv(b)
        assert relayed == {
            'action': 'announce',
            'info_hash': INFO_HASH,
            'peer_id': 'peer_a',
            'offer_id': '1' * 40,
            'offer': OFFER,
        }

        await b.send(
            json.dumps(
                _announce(
                    'peer_b',
                    to_peer_id='peer_a',
                    offer_id='1' * 40,
                    answer=ANSWER,
                ),
            ),
        )
        answer = await _recv(a)
        assert answer == {
            'action': 'announce',
            'info_hash': INFO_HASH,
            'peer_id': 'peer_b',
            'offer_id': '1' * 40,
            'answer': ANSWER,
        }


@pytest.mark.asyncio()
async def test_offers_not_relayed_to_self(tracker_server) -> None:
    async with connect(tracker_server.address) as websocket:
        offers = [{'offer_id': '1' * 40, 'offer': OFFER}]
        await _request(websocket, _announce('peer_a', offers=offers))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(websocket.recv(), 0.1)


@pytest.mark.asyncio()
async def test_answer_to_unknown_peer(tracker_server) -> None:
    async with connect(tracker_server.address) as websocket:
        response = await _request(
            websocket,
            _announce(
                'peer_b',
                to_peer_id='peer_x',
                offer_id='1' * 40,
                answer=ANSWER,
            ),
        )
    assert 'peer_x' in response['failure reason']


@pytest.mark.asyncio()
async def test_scrape(tracker_server) -> None:
    async with connect(tracker_server.address) as websocket:
        await _request(websocket, _announce('peer_a'))

        response = await _request(
            websocket,
            {'action': 'scrape', 'info_hash': INFO_HASH},
        )
        assert response == {
            'action': 'scrape',
            'files': {
                INFO_HASH: {'complete': 0, 'incomplete': 1, 'downloaded': 0},
            },
        }

        response = await _request(websocket, {'action': 'scrape'})
        assert list(response['files']) == [INFO_HASH]

        other = 'b' * 40
        response = await _request(
            websocket,
            {'action': 'scrape', 'info_hash': [INFO_HASH, other]},
        )
        assert response['files'][other]['incomplete'] == 0


@pytest.mark.parametrize(
    'request_',
    (
        'not json',
        '[1, 2]',
        json.dumps({'action': 'stop'}),
        json.dumps({'action': 'announce', 'peer_id': 'peer_a'}),
        json.dumps({'action': 'announce', 'info_hash': INFO_HASH}),
        json.dumps({'action': 'scrape', 'info_hash': 42}),
        json.dumps(_announce('peer_a', offers='bad')),
        json.dumps(_announce('peer_a', to_peer_id='x', answer='bad')),
    ),
)
@pytest.mark.asyncio()
async def test_bad_requests(tracker_server, request_: str) -> None:
    async with connect(tracker_server.address) as websocket:
        await websocket.send(request_)
        response = await _recv(websocket)
        # Bad announces may be preceded by the swarm statistics.
        if 'failure reason' not in response:
            response = await _recv(websocket)
    assert isinstance(response['failure reason'], str)


@pytest.mark.asyncio()
async def test_peers_removed_on_disconnect(tracker_server) -> None:
    manager = tracker_server.tracker_server.swarm_manager
    async with connect(tracker_server.address) as websocket:
        await _request(websocket, _announce('peer_a'))
        assert manager.get_peer(INFO_HASH, 'peer_a') is not None

    await wait_until(lambda: manager.get_swarm(INFO_HASH) is None)


@pytest.mark.asyncio()
async def test_message_size_limit() -> None:
    server = TrackerServer(max_message_bytes=100)
    host, port = 'localhost', open_port()
    async with serve(server.handler, host, port):
        async with connect(f'ws://{host}:{port}') as websocket:
            await websocket.send('x' * 200)
            with pytest.raises(ConnectionClosed) as exc_info:
                await asyncio.wait_for(websocket.recv(), 1)
    assert exc_info.value.rcvd is not None
    assert exc_info.value.rcvd.code == 4003


@pytest.mark.asyncio()
async def test_send_on_closed_connection(caplog) -> None:
    server = TrackerServer()
    websocket = mock.AsyncMock()
    websocket.send.side_effect = ConnectionClosed(None, None)
    await server.send(websocket, {'action': 'announce'})
    assert any(['Connection closed' in r.message for r in caplog.records])
