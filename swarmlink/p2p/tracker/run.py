"""CLI and serving functions for running a tracker server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import signal
import sys

import click
from websockets.asyncio.server import serve as websocket_serve

from swarmlink.p2p.tracker.config import TrackerLoggingConfig
from swarmlink.p2p.tracker.config import TrackerServingConfig
from swarmlink.p2p.tracker.server import TrackerServer
from swarmlink.utils.tasks import cancel_and_wait
from swarmlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_BYTES = 2**20
"""Websocket frame size limit when `max_message_bytes` is not set."""


def periodic_swarm_logger(
    server: TrackerServer,
    interval: float = 60,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs the swarms known to a tracker.

    The totals are logged at `INFO` and the statistics of each swarm at
    `DEBUG`.

    Args:
        server: Tracker server instance to log swarms of.
        interval: Seconds between logging swarms.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            swarms = server.swarm_manager.get_swarms()
            peers = sum(len(swarm) for swarm in swarms)
            logger.info(
                f'Current swarms: {len(swarms)} (announced peers: {peers})',
            )
            for swarm in swarms:
                logger.debug(f'Swarm {swarm.info_hash}: {swarm.stats()}')

    task = spawn_guarded_background_task(_log)
    task.set_name('tracker-server-swarm-logger')

    return task


async def serve(config: TrackerServingConfig) -> None:
    """Run the tracker server until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. See
        [`configure_logging()`][swarmlink.p2p.tracker.run.configure_logging].

    Args:
        config: Serving configuration.
    """
    server = TrackerServer(
        announce_interval=config.announce_interval,
        max_message_bytes=config.max_message_bytes,
    )
    max_size = (
        DEFAULT_MAX_FRAME_BYTES
        if config.max_message_bytes is None
        else config.max_message_bytes
    )

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set_result, None)

    swarm_logger_task = (
        None
        if config.logging.current_swarms_interval is None
        else periodic_swarm_logger(
            server,
            config.logging.current_swarms_interval,
        )
    )

    async with websocket_serve(
        server.handler,
        config.host,
        config.port,
        max_size=max_size,
    ):
        logger.info(
            f'Tracker listening on {config.host or "*"}:{config.port} '
            f'(announce interval: {config.announce_interval}s)',
        )
        await stop

    await cancel_and_wait(swarm_logger_task)
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(signum)
    logger.info('Tracker server shutdown')


def configure_logging(config: TrackerLoggingConfig) -> None:
    """Log to stdout and, if `config.log_dir` is set, to a weekly file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'tracker.log'),
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.default_level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(config.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option(
    '--announce-interval',
    type=click.IntRange(min=1),
    metavar='SECONDS',
    help='Announce interval suggested to peers.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    announce_interval: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a tracker that relays offers and answers between peers.

    Options given on the command line override those read from the
    configuration file.
    """
    config = (
        TrackerServingConfig()
        if config_path is None
        else TrackerServingConfig.from_toml(config_path)
    )

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if announce_interval is not None:
        config.announce_interval = announce_interval
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    configure_logging(config.logging)
    asyncio.run(serve(config))
