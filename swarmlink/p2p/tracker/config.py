"""Tracker server configuration file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from swarmlink.utils.config import load_path


class TrackerLoggingConfig(BaseModel):
    """Tracker logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_swarms_interval: Optional seconds between logging the
            number of swarms and announced peers.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_swarms_interval: int | None = 60


class TrackerServingConfig(BaseModel):
    """Tracker serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        announce_interval: Seconds between announces suggested to clients.
        logging: Logging configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the tracker.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 8000
    announce_interval: int = Field(120, gt=0)
    logging: TrackerLoggingConfig = Field(
        default_factory=TrackerLoggingConfig,
    )
    max_message_bytes: int | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="tracker.toml"
            port = 8000
            announce_interval = 120
            max_message_bytes = 65536

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_swarms_interval = 60
            ```

            ```python
            from swarmlink.p2p.tracker.config import TrackerServingConfig

            config = TrackerServingConfig.from_toml('tracker.toml')
            ```

        Note:
            Omitted values will be set to their defaults (if they are an
            optional value with a default).
            ```toml title="tracker.toml"
            port = 9000
            ```

            ```python
            from swarmlink.p2p.tracker.config import TrackerServingConfig

            config = TrackerServingConfig.from_toml('tracker.toml')
            assert config.port == 9000
            assert config.announce_interval == 120
            ```
        """
        return load_path(cls, filepath)
