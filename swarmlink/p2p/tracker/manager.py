"""Helper classes for managing swarms of peers connected to a tracker."""
from __future__ import annotations

import dataclasses
import datetime
import random

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class SwarmPeer:
    """Representation of a peer announced in a swarm.

    Attributes:
        peer_id: Identity the peer announced with.
        info_hash: Swarm the peer announced to.
        websocket: WebSocket connection to the peer.
        complete: Peer reported it has nothing left to download (a seeder).
        created: Time the peer first announced at.
    """

    peer_id: str
    info_hash: str
    websocket: ServerConnection
    complete: bool = False
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(peer_id={self.peer_id}, '
            f'info_hash={self.info_hash}, address={address}, '
            f'created={created})'
        )


class Swarm:
    """Peers announced under one info hash."""

    def __init__(self, info_hash: str) -> None:
        self.info_hash = info_hash
        self.peers: dict[str, SwarmPeer] = {}

    def __len__(self) -> int:
        return len(self.peers)

    @property
    def complete(self) -> int:
        """Number of seeders."""
        return sum(1 for peer in self.peers.values() if peer.complete)

    @property
    def incomplete(self) -> int:
        """Number of leechers."""
        return len(self.peers) - self.complete

    def stats(self) -> dict[str, int]:
        """Get the scrape statistics of the swarm."""
        return {
            'complete': self.complete,
            'incomplete': self.incomplete,
            'downloaded': 0,
        }

    def random_peers(self, count: int, exclude: str) -> list[SwarmPeer]:
        """Choose up to `count` random peers other than `exclude`."""
        others = [
            peer for peer_id, peer in self.peers.items() if peer_id != exclude
        ]
        return random.sample(others, min(count, len(others)))


class SwarmManager:
    """Manages the swarms and peers known to a tracker.

    Warning:
        This class is intended for internal use by the
        [`TrackerServer`][swarmlink.p2p.tracker.server.TrackerServer].
    """

    def __init__(self) -> None:
        self._swarms: dict[str, Swarm] = {}
        self._peers_by_websocket: dict[
            ServerConnection,
            dict[tuple[str, str], SwarmPeer],
        ] = {}

    def add_peer(
        self,
        info_hash: str,
        peer_id: str,
        websocket: ServerConnection,
        *,
        complete: bool = False,
    ) -> SwarmPeer:
        """Add or refresh a peer in a swarm.

        A peer announcing the same identity from a new websocket replaces
        the previous registration.
        """
        swarm = self._swarms.setdefault(info_hash, Swarm(info_hash))
        peer = swarm.peers.get(peer_id)
        if peer is not None and peer.websocket is websocket:
            peer.complete = complete
            return peer
        if peer is not None:
            self._unindex(peer)

        peer = SwarmPeer(
            peer_id=peer_id,
            info_hash=info_hash,
            websocket=websocket,
            complete=complete,
        )
        swarm.peers[peer_id] = peer
        self._peers_by_websocket.setdefault(websocket, {})[
            (info_hash, peer_id)
        ] = peer
        return peer

    def get_swarm(self, info_hash: str) -> Swarm | None:
        """Get a swarm by info hash."""
        return self._swarms.get(info_hash, None)

    def get_swarms(self) -> list[Swarm]:
        """Get a list of all swarms."""
        return list(self._swarms.values())

    def get_peer(self, info_hash: str, peer_id: str) -> SwarmPeer | None:
        """Get a peer of a swarm by identity."""
        swarm = self._swarms.get(info_hash, None)
        return None if swarm is None else swarm.peers.get(peer_id, None)

    def get_peers_by_websocket(
        self,
        websocket: ServerConnection,
    ) -> list[SwarmPeer]:
        """Get the peers announced over a websocket connection."""
        return list(self._peers_by_websocket.get(websocket, {}).values())

    def remove_peer(self, peer: SwarmPeer) -> None:
        """Remove a peer from its swarm."""
        swarm = self._swarms.get(peer.info_hash, None)
        if swarm is not None and swarm.peers.get(peer.peer_id) is peer:
            del swarm.peers[peer.peer_id]
            if len(swarm) == 0:
                del self._swarms[peer.info_hash]
        self._unindex(peer)

    def remove_websocket(self, websocket: ServerConnection) -> list[SwarmPeer]:
        """Remove every peer announced over a websocket connection.

        Returns:
            The removed peers.
        """
        peers = self.get_peers_by_websocket(websocket)
        for peer in peers:
            self.remove_peer(peer)
        self._peers_by_websocket.pop(websocket, None)
        return peers

    def _unindex(self, peer: SwarmPeer) -> None:
        index = self._peers_by_websocket.get(peer.websocket)
        if index is None:
            return
        if index.get((peer.info_hash, peer.peer_id)) is peer:
            del index[(peer.info_hash, peer.peer_id)]
        if len(index) == 0:
            del self._peers_by_websocket[peer.websocket]
