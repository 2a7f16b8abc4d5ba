"""Tracker connection, wire messages, and server implementations."""
from __future__ import annotations

from swarmlink.p2p.tracker.connection import TrackerConnection
