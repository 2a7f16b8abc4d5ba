"""CLI for joining a pool of peers and greeting every connected peer."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click

from swarmlink.p2p.config import DiscoveryConfig
from swarmlink.p2p.discovery import PeerDiscoveryClient
from swarmlink.p2p.events import DiscoveryEvent
from swarmlink.p2p.events import SessionEvent
from swarmlink.p2p.session import PeerSession
from swarmlink.p2p.tracker.exceptions import TrackerUnreachableError
from swarmlink.utils.config import dumps

logger = logging.getLogger(__name__)


async def run(config: DiscoveryConfig, greeting: str | None = None) -> None:
    """Discover peers until interrupted.

    Each connected peer is sent `greeting` and every message received from
    a peer is logged.

    Note:
        This function will not configure any logging.

    Args:
        config: Discovery configuration.
        greeting: Message sent to each peer once connected. Defaults to a
            message containing this peer's identity.
    """
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    greeting = f'hello from {config.peer_id}' if greeting is None else greeting

    def _on_connection(session: PeerSession) -> None:
        peer_id = session.remote_peer_id

        def _on_data(data: bytes | str) -> None:
            logger.info(f'Message from {peer_id}: {data!r}')

        session.on(SessionEvent.DATA, _on_data)
        session.send(greeting)

    def _on_closed() -> None:
        if not stop.done():
            stop.set_result(None)

    client = PeerDiscoveryClient(config)
    client.on(DiscoveryEvent.CONNECTION, _on_connection)
    client.on(
        DiscoveryEvent.PEER_DISCONNECTED,
        lambda peer_id: logger.info(f'Peer {peer_id} disconnected'),
    )
    client.on(
        DiscoveryEvent.UPDATE,
        lambda stats: logger.info(f'Swarm statistics: {stats}'),
    )
    client.on(DiscoveryEvent.CLOSED, _on_closed)

    async with client:
        logger.info(
            f'Peer {client.peer_id} discovering peers in swarm '
            f'{client.info_hash}',
        )
        logger.info('Use ctrl-C to stop')
        await stop
        await client.close(close_sessions=True)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option(
    '--tracker',
    '-t',
    'trackers',
    multiple=True,
    metavar='URL',
    help='Tracker URL. May be repeated. Replaces configured trackers.',
)
@click.option('--topic', metavar='NAME', help='Pool of peers to join.')
@click.option('--peer-id', metavar='ID', help='Identity of this peer.')
@click.option(
    '--ice-server',
    'ice_servers',
    multiple=True,
    metavar='URL',
    help='STUN/TURN server URL. May be repeated.',
)
@click.option(
    '--no-ice-servers',
    is_flag=True,
    help='Use host candidates only.',
)
@click.option('--greeting', metavar='TEXT', help='Message sent to new peers.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    default='INFO',
    help='Minimum logging level.',
)
@click.option(
    '--dump-config',
    is_flag=True,
    help='Print the resolved configuration as TOML and exit.',
)
def cli(
    config_path: str | None,
    trackers: tuple[str, ...],
    topic: str | None,
    peer_id: str | None,
    ice_servers: tuple[str, ...],
    no_ice_servers: bool,
    greeting: str | None,
    log_level: str,
    dump_config: bool,
) -> None:
    """Join a pool of peers and greet every peer connected to.

    If no configuration file is provided, a default configuration will be
    created from
    [`DiscoveryConfig()`][swarmlink.p2p.config.DiscoveryConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        DiscoveryConfig()
        if config_path is None
        else DiscoveryConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    overrides: dict[str, object] = {}
    if len(trackers) > 0:
        overrides['tracker_urls'] = list(trackers)
    if topic is not None:
        overrides['topic'] = topic
    if peer_id is not None:
        overrides['peer_id'] = peer_id
    if len(ice_servers) > 0:
        overrides['ice_servers'] = list(ice_servers)
    if no_ice_servers:
        overrides['ice_servers'] = []
    if len(overrides) > 0:
        config = DiscoveryConfig.model_validate(
            {**config.model_dump(), **overrides},
        )

    if dump_config:
        click.echo(dumps(config), nl=False)
        return

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=logging.getLevelName(log_level.upper()),
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # The websockets and WebRTC libraries log with much higher frequency.
    for name in ('websockets', 'aioice', 'aiortc'):
        logging.getLogger(name).setLevel(logging.WARNING)

    try:
        asyncio.run(run(config, greeting))
    except TrackerUnreachableError as e:
        raise click.ClickException(str(e)) from e
