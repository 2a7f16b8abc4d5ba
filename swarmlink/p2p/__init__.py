"""Peer discovery and peer-to-peer sessions.

This module provides two main functionalities: the
[`PeerDiscoveryClient`][swarmlink.p2p.discovery.PeerDiscoveryClient] and
a WebTorrent-style tracker implementation.

* The [`PeerDiscoveryClient`][swarmlink.p2p.discovery.PeerDiscoveryClient]
  finds other peers of a pool by announcing WebRTC offers to one or more
  trackers and hands each connected
  [`PeerSession`][swarmlink.p2p.session.PeerSession] to the application.
  Peer connections are established using
  [aiortc](https://aiortc.readthedocs.io/){target=_blank}, an asyncio WebRTC
  implementation.
* The [`swarmlink.p2p.tracker`][swarmlink.p2p.tracker] module provides
  the tracker connection used by clients and a minimal tracker server for
  local play and testing.
"""
from __future__ import annotations

from swarmlink.p2p.config import DiscoveryConfig
from swarmlink.p2p.discovery import PeerDiscoveryClient
from swarmlink.p2p.events import DiscoveryEvent
from swarmlink.p2p.events import SessionEvent
from swarmlink.p2p.session import PeerSession
from swarmlink.p2p.session import SessionState
