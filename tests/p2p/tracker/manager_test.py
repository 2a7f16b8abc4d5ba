from __future__ import annotations

from unittest import mock

from swarmlink.p2p.tracker.manager import SwarmManager

INFO_HASH = 'a' * 40


def test_add_and_get_peers() -> None:
    manager = SwarmManager()
    websocket = mock.MagicMock()
    peer = manager.add_peer(INFO_HASH, 'peer_a', websocket)

    assert manager.get_peer(INFO_HASH, 'peer_a') is peer
    assert manager.get_peer(INFO_HASH, 'peer_b') is None
    assert manager.get_peer('b' * 40, 'peer_a') is None
    assert manager.get_peers_by_websocket(websocket) == [peer]

    swarm = manager.get_swarm(INFO_HASH)
    assert swarm is not None
    assert len(swarm) == 1
    assert manager.get_swarms() == [swarm]
    assert 'peer_a' in repr(peer)


def test_refresh_peer() -> None:
    manager = SwarmManager()
    websocket = mock.MagicMock()
    first = manager.add_peer(INFO_HASH, 'peer_a', websocket)
    second = manager.add_peer(INFO_HASH, 'peer_a', websocket, complete=True)

    assert first is second
    assert second.complete


def test_peer_moves_websocket() -> None:
    manager = SwarmManager()
    old = mock.MagicMock()
    new = mock.MagicMock()
    manager.add_peer(INFO_HASH, 'peer_a', old)
    peer = manager.add_peer(INFO_HASH, 'peer_a', new)

    assert manager.get_peer(INFO_HASH, 'peer_a') is peer
    assert manager.get_peers_by_websocket(old) == []
    assert manager.get_peers_by_websocket(new) == [peer]

    # Disconnecting the old socket does not remove the moved peer.
    assert manager.remove_websocket(old) == []
    assert manager.get_peer(INFO_HASH, 'peer_a') is peer


def test_swarm_stats() -> None:
    manager = SwarmManager()
    manager.add_peer(INFO_HASH, 'peer_a', mock.MagicMock(), complete=True)
    manager.add_peer(INFO_HASH, 'peer_b', mock.MagicMock())
    manager.add_peer(INFO_HASH, 'peer_c', mock.MagicMock())

    swarm = manager.get_swarm(INFO_HASH)
    assert swarm is not None
    assert swarm.complete == 1
    assert swarm.incomplete == 2
    assert swarm.stats() == {'complete': 1, 'incomplete': 2, 'downloaded': 0}


def test_random_peers() -> None:
    manager = SwarmManager()
    for i in range(5):
        manager.add_peer(INFO_HASH, f'peer_{i}', mock.MagicMock())
    swarm = manager.get_swarm(INFO_HASH)
    assert swarm is not None

    peers = swarm.random_peers(3, exclude='peer_0')
    assert len(peers) == 3
    assert len({peer.peer_id for peer in peers}) == 3
    assert all(peer.peer_id != 'peer_0' for peer in peers)

    assert len(swarm.random_peers(10, exclude='peer_0')) == 4
    assert swarm.random_peers(0, exclude='peer_0') == []


def test_remove_websocket() -> None:
    manager = SwarmManager()
    websocket = mock.MagicMock()
    manager.add_peer(INFO_HASH, 'peer_a', websocket)
    manager.add_peer('b' * 40, 'peer_a', websocket)
    other = manager.add_peer(INFO_HASH, 'peer_b', mock.MagicMock())

    removed = manager.remove_websocket(websocket)

    assert {peer.info_hash for peer in removed} == {INFO_HASH, 'b' * 40}
    assert manager.get_swarm('b' * 40) is None
    assert manager.get_peer(INFO_HASH, 'peer_a') is None
    assert manager.get_peer(INFO_HASH, 'peer_b') is other
    assert manager.remove_websocket(websocket) == []


def test_remove_peer() -> None:
    manager = SwarmManager()
    websocket = mock.MagicMock()
    peer = manager.add_peer(INFO_HASH, 'peer_a', websocket)
    manager.remove_peer(peer)
    # Removing twice is a no-op.
    manager.remove_peer(peer)

    assert manager.get_swarm(INFO_HASH) is None
    assert manager.get_peers_by_websocket(websocket) == []
