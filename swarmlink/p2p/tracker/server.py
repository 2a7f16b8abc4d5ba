"""Minimal WebTorrent-compatible tracker for relaying WebRTC signaling.

The tracker is a lightweight server accessible by all peers of a swarm
that relays offers and answers between them. Once two peers have
exchanged an offer and answer, the tracker is no longer needed by that
pair. This implementation speaks the subset of the WebTorrent tracker
protocol used by
[`PeerDiscoveryClient`][swarmlink.p2p.discovery.PeerDiscoveryClient] and is
intended for local play and testing.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import Any

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import ConnectionClosedOK

from swarmlink.p2p.tracker.exceptions import BadRequestError
from swarmlink.p2p.tracker.manager import SwarmManager
from swarmlink.p2p.tracker.manager import SwarmPeer
from swarmlink.p2p.tracker.messages import FAILURE_REASON_KEY

logger = logging.getLogger(__name__)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or len(value) == 0:
        raise BadRequestError(f'Missing or invalid {key}.')
    return value


class TrackerServer:
    """WebTorrent-style websocket tracker.

    The tracker is built on websockets and designed to be served using
    [`serve()`][swarmlink.p2p.tracker.run.serve].

    Args:
        announce_interval: Seconds between announces suggested to clients.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        announce_interval: int = 120,
        max_message_bytes: int | None = None,
    ) -> None:
        self._announce_interval = announce_interval
        self._max_message_bytes = max_message_bytes
        self._swarm_manager = SwarmManager()

    @property
    def swarm_manager(self) -> SwarmManager:
        """Manager of swarms and their peers."""
        return self._swarm_manager

    async def send(
        self,
        websocket: ServerConnection,
        message: dict[str, Any],
    ) -> None:
        """Send a JSON frame on the socket.

        Args:
            websocket: Connection to send the message to.
            message: JSON object to encode and send.
        """
        try:
            await websocket.send(json.dumps(message))
        except ConnectionClosed:
            logger.error('Connection closed while attempting to send message')

    async def announce(
        self,
        websocket: ServerConnection,
        request: dict[str, Any],
    ) -> None:
        """Register the announcing peer and relay its offers or answer.

        An announce with an `answer` is forwarded to `to_peer_id`. Otherwise
        the tracker replies with swarm statistics and relays each offer to
        a different random peer of the swarm.

        Raises:
            BadRequestError: If the announce is malformed or the answer's
                target peer is not in the swarm.
        """
        info_hash = _require_str(request, 'info_hash')
        peer_id = _require_str(request, 'peer_id')
        peer = self.swarm_manager.add_peer(
            info_hash,
            peer_id,
            websocket,
            complete=request.get('left') == 0,
        )

        if 'answer' in request:
            await self._forward_answer(peer, request)
            return

        swarm = self.swarm_manager.get_swarm(info_hash)
        assert swarm is not None
        await self.send(
            websocket,
            {
                'action': 'announce',
                'interval': self._announce_interval,
                'info_hash': info_hash,
                'complete': swarm.complete,
                'incomplete': swarm.incomplete,
            },
        )

        offers = request.get('offers') or []
        if not isinstance(offers, list):
            raise BadRequestError('Offers must be a list.')
        targets = swarm.random_peers(len(offers), exclude=peer_id)
        for target, entry in zip(targets, offers):
            if not isinstance(entry, dict) or not isinstance(
                entry.get('offer'),
                dict,
            ):
                raise BadRequestError('Offer entries must be objects.')
            offer_id = _require_str(entry, 'offer_id')
            logger.info(
                f'Relaying offer {offer_id} from {peer_id} to '
                f'{target.peer_id}',
            )
            await self.send(
                target.websocket,
                {
                    'action': 'announce',
                    'info_hash': info_hash,
                    'peer_id': peer_id,
                    'offer_id': offer_id,
                    'offer': entry['offer'],
                },
            )

    async def _forward_answer(
        self,
        source: SwarmPeer,
        request: dict[str, Any],
    ) -> None:
        to_peer_id = _require_str(request, 'to_peer_id')
        offer_id = _require_str(request, 'offer_id')
        if not isinstance(request['answer'], dict):
            raise BadRequestError('Answer must be an object.')

        target = self.swarm_manager.get_peer(source.info_hash, to_peer_id)
        if target is None:
            logger.warning(
                f'Peer {source.peer_id} attempting to answer unknown peer '
                f'{to_peer_id}',
            )
            raise BadRequestError(
                f'Cannot forward answer to peer {to_peer_id} because this '
                'peer is not in the swarm.',
            )

        logger.info(
            f'Forwarding answer to offer {offer_id} from {source.peer_id} '
            f'to {to_peer_id}',
        )
        await self.send(
            target.websocket,
            {
                'action': 'announce',
                'info_hash': source.info_hash,
                'peer_id': source.peer_id,
                'offer_id': offer_id,
                'answer': request['answer'],
            },
        )

    async def scrape(
        self,
        websocket: ServerConnection,
        request: dict[str, Any],
    ) -> None:
        """Reply with the statistics of the requested swarms.

        `info_hash` may be one info hash, a list of them, or omitted to
        scrape every swarm.
        """
        requested = request.get('info_hash')
        if requested is None:
            info_hashes = [
                swarm.info_hash for swarm in self.swarm_manager.get_swarms()
            ]
        elif isinstance(requested, str):
            info_hashes = [requested]
        elif isinstance(requested, list) and all(
            isinstance(info_hash, str) for info_hash in requested
        ):
            info_hashes = requested
        else:
            raise BadRequestError('Invalid info_hash.')

        files: dict[str, dict[str, int]] = {}
        for info_hash in info_hashes:
            swarm = self.swarm_manager.get_swarm(info_hash)
            files[info_hash] = (
                {'complete': 0, 'incomplete': 0, 'downloaded': 0}
                if swarm is None
                else swarm.stats()
            )
        await self.send(websocket, {'action': 'scrape', 'files': files})

    async def _process_message(
        self,
        websocket: ServerConnection,
        request: dict[str, Any],
    ) -> None:
        # Dispatches the request to the correct method depending on the action
        action = request.get('action')
        if action == 'announce':
            await self.announce(websocket, request)
        elif action == 'scrape':
            await self.scrape(websocket, request)
        else:
            raise BadRequestError(f'Unknown action: {action!r}.')

    def _unregister(self, websocket: ServerConnection, expected: bool) -> None:
        peers = self.swarm_manager.remove_websocket(websocket)
        if len(peers) > 0:
            reason = 'ok' if expected else 'unexpected'
            logger.info(
                f'Removed peers {", ".join(p.peer_id for p in peers)} '
                f'for {reason} reason',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server message handler.

        Malformed requests are answered with a `failure reason` frame. The
        handler closes the connection with code 4003 if the client sends a
        message larger than the allowed size.

        Args:
            websocket: Websocket message was received on.
        """
        while True:
            try:
                message_str = await websocket.recv()
            except ConnectionClosedOK:
                self._unregister(websocket, expected=True)
                break
            except ConnectionClosed:
                self._unregister(websocket, expected=False)
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message_str) > self._max_message_bytes
            ):
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {websocket.remote_address} sent message with '
                    f'size {sys.getsizeof(message_str)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                self._unregister(websocket, expected=False)
                break

            try:
                request = json.loads(message_str)
                if not isinstance(request, dict):
                    raise BadRequestError('Request must be a JSON object.')
                await self._process_message(websocket, request)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning(
                    f'Invalid JSON received from {websocket.remote_address}',
                )
                await self.send(
                    websocket,
                    {FAILURE_REASON_KEY: 'Invalid JSON.'},
                )
            except BadRequestError as e:
                logger.warning(
                    f'Bad request from {websocket.remote_address}: {e}',
                )
                await self.send(websocket, {FAILURE_REASON_KEY: str(e)})
