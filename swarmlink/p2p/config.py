"""Peer discovery configuration."""

from __future__ import annotations

import pathlib
import re
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator

from swarmlink.p2p.transport import DEFAULT_ICE_SERVERS
from swarmlink.utils.config import load_path
from swarmlink.utils.ids import generate_peer_id
from swarmlink.utils.ids import topic_to_info_hash

DEFAULT_TRACKER_URLS = (
    'wss://tracker.openwebtorrent.com/',
    'wss://tracker.btorrent.xyz/',
    'wss://tracker.fastcast.nz/',
    'wss://tracker.files.fm:7073/announce',
    'wss://tracker.sloppyta.co/',
    'wss://tracker.webtorrent.dev/',
    'wss://tracker.novage.com.ua/',
    'wss://tracker.magnetoo.io/',
    'wss://tracker.ghostchu-services.top:443/announce',
    'ws://tracker.ghostchu-services.top:80/announce',
    'ws://tracker.files.fm:7072/announce',
)
"""Public WebTorrent trackers that relay WebRTC offers."""

_INFO_HASH_RE = re.compile(r'^[0-9a-f]{40}$')


class DiscoveryConfig(BaseModel):
    """Peer discovery configuration.

    All durations are in seconds.

    Attributes:
        tracker_urls: Websocket URLs (`ws://` or `wss://`) of the trackers
            to announce to.
        topic: Name of the pool of peers to join (e.g., a game id). The
            tracker swarm key is the SHA-1 of the topic unless `info_hash`
            is given.
        info_hash: Explicit 40 character hex swarm key.
        peer_id: Identity of this peer within the pool. Generated if omitted.
        numwant: Number of peers requested from the tracker per announce.
        announce_interval: Initial seconds between scheduled announces.
        max_announce_interval: Upper bound of the announce interval.
        backoff_multiplier: Factor the announce interval grows by after
            each scheduled announce.
        offer_timeout_factor: An unanswered offer expires after this factor
            times the announcing tracker's current interval.
        max_pending_offers: Fresh offers are only generated while fewer
            than this many offers are outstanding.
        tracker_connect_timeout: Bound on connecting to each tracker.
        startup_timeout: Bound on generating the first offer at startup.
        negotiation_timeout: Bound on generating an offer or answer and on
            reaching the connected state after a remote description is
            applied.
        ice_gathering_timeout: Bound on waiting for ICE gathering to
            complete before sending a description.
        ice_servers: STUN/TURN server URLs. An empty list disables ICE
            servers (host candidates only).
    """

    model_config = ConfigDict(extra='forbid')

    tracker_urls: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKER_URLS),
        min_length=1,
    )
    topic: str = 'swarmlink'
    info_hash: str | None = None
    peer_id: str = Field(default_factory=generate_peer_id, min_length=1)
    numwant: int = Field(50, ge=0)
    announce_interval: float = Field(5.0, gt=0)
    max_announce_interval: float = Field(120.0, gt=0)
    backoff_multiplier: float = Field(1.1, ge=1)
    offer_timeout_factor: float = Field(2.0, gt=0)
    max_pending_offers: int = Field(1, ge=1)
    tracker_connect_timeout: float = Field(5.0, gt=0)
    startup_timeout: float = Field(10.0, gt=0)
    negotiation_timeout: float = Field(30.0, gt=0)
    ice_gathering_timeout: float = Field(3.0, gt=0)
    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )

    @field_validator('tracker_urls')
    @classmethod
    def _check_tracker_urls(cls, urls: list[str]) -> list[str]:
        for url in urls:
            if not url.startswith(('ws://', 'wss://')):
                raise ValueError(
                    f'Tracker URL must start with ws:// or wss://: {url}',
                )
        return urls

    @field_validator('info_hash')
    @classmethod
    def _check_info_hash(cls, info_hash: str | None) -> str | None:
        if info_hash is None:
            return None
        info_hash = info_hash.lower()
        if _INFO_HASH_RE.match(info_hash) is None:
            raise ValueError('info_hash must be 40 hexadecimal characters')
        return info_hash

    @model_validator(mode='after')
    def _check_intervals(self) -> Self:
        if self.max_announce_interval < self.announce_interval:
            raise ValueError(
                'max_announce_interval must be greater than or equal to '
                'announce_interval',
            )
        return self

    @property
    def swarm_info_hash(self) -> str:
        """Info hash sent to trackers, derived from `topic` if not given."""
        if self.info_hash is not None:
            return self.info_hash
        return topic_to_info_hash(self.topic)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peer.toml"
            tracker_urls = ["ws://localhost:8000"]
            topic = "my-game"
            announce_interval = 5.0
            ice_servers = []
            ```

            ```python
            from swarmlink.p2p.config import DiscoveryConfig

            config = DiscoveryConfig.from_toml('peer.toml')
            assert config.topic == 'my-game'
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        return load_path(cls, filepath)
