from __future__ import annotations

import asyncio
import pathlib
from unittest import mock
from unittest.mock import AsyncMock

import click.testing
import pytest
from websockets.asyncio.server import serve

from swarmlink.p2p.cli import cli
from swarmlink.p2p.cli import run
from swarmlink.p2p.config import DiscoveryConfig
from swarmlink.p2p.tracker.exceptions import TrackerUnreachableError
from swarmlink.p2p.tracker.server import TrackerServer
from swarmlink.utils.config import loads
from testing.utils import open_port


def test_invoke() -> None:
    runner = click.testing.CliRunner()
    with mock.patch('swarmlink.p2p.cli.run', AsyncMock()) as mock_run:
        result = runner.invoke(cli)

    assert result.exit_code == 0
    mock_run.assert_awaited_once()


def test_invoke_and_override_defaults(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    filepath.write_text('topic = "from-file"\nannounce_interval = 2.0\n')

    async def _mock_run(config: DiscoveryConfig, greeting: str) -> None:
        assert config.tracker_urls == ['ws://a:1', 'ws://b:2']
        assert config.topic == 'my-game'
        assert config.peer_id == 'peer_test'
        assert config.ice_servers == []
        assert config.announce_interval == 2.0
        assert greeting == 'hi'

    options: list[str] = []
    options += ['--config', str(filepath)]
    options += ['--tracker', 'ws://a:1', '-t', 'ws://b:2']
    options += ['--topic', 'my-game']
    options += ['--peer-id', 'peer_test']
    options += ['--no-ice-servers']
    options += ['--greeting', 'hi']

    runner = click.testing.CliRunner()
    with mock.patch(
        'swarmlink.p2p.cli.run',
        AsyncMock(side_effect=_mock_run),
    ) as mock_run:
        result = runner.invoke(cli, options)

    assert result.exit_code == 0
    mock_run.assert_awaited_once()


def test_dump_config() -> None:
    options = ['--topic', 'my-game', '--ice-server', 'stun:localhost:3478']
    runner = click.testing.CliRunner()
    with mock.patch('swarmlink.p2p.cli.run', AsyncMock()) as mock_run:
        result = runner.invoke(cli, [*options, '--dump-config'])

    assert result.exit_code == 0
    mock_run.assert_not_awaited()
    config = loads(DiscoveryConfig, result.output)
    assert config.topic == 'my-game'
    assert config.ice_servers == ['stun:localhost:3478']


def test_trackers_unreachable() -> None:
    runner = click.testing.CliRunner()
    with mock.patch(
        'swarmlink.p2p.cli.run',
        AsyncMock(side_effect=TrackerUnreachableError('No trackers.')),
    ):
        result = runner.invoke(cli)

    assert result.exit_code == 1
    assert 'No trackers.' in result.output


@pytest.mark.timeout(30)
@pytest.mark.asyncio()
async def test_run_stops_when_trackers_lost() -> None:
    host, port = 'localhost', open_port()
    config = DiscoveryConfig(
        tracker_urls=[f'ws://{host}:{port}'],
        topic='cli-test',
        ice_servers=[],
    )

    server = TrackerServer()
    async with serve(server.handler, host, port):
        task = asyncio.create_task(run(config))
        while server.swarm_manager.get_swarm(config.swarm_info_hash) is None:
            await asyncio.sleep(0.01)
        assert not task.done()

    await asyncio.wait_for(task, 5)
