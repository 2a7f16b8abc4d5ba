"""Tools for running a local tracker server for unit tests."""
from __future__ import annotations

from typing import AsyncGenerator
from typing import NamedTuple

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve as websocket_serve
from websockets.asyncio.server import Server

from swarmlink.p2p.tracker.server import TrackerServer
from testing.utils import open_port


class TrackerServerInfo(NamedTuple):
    """NamedTuple returned by tracker_server fixture."""

    tracker_server: TrackerServer
    websocket_server: Server
    host: str
    port: int
    address: str


@pytest_asyncio.fixture()
async def tracker_server() -> AsyncGenerator[TrackerServerInfo, None]:
    """Fixture that runs a tracker server locally.

    Yields:
        `TrackerServerInfo <.TrackerServerInfo>`
    """
    host = 'localhost'
    port = open_port()
    address = f'ws://{host}:{port}'

    tracker_server = TrackerServer(announce_interval=1)
    async with websocket_serve(
        tracker_server.handler,
        host,
        port,
    ) as websocket_server:
        server_info = TrackerServerInfo(
            tracker_server=tracker_server,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )
        assert websocket_server.is_serving()
        yield server_info
