"""General purpose utility functions."""
from __future__ import annotations

from swarmlink.utils.ids import generate_offer_id
from swarmlink.utils.ids import generate_peer_id
from swarmlink.utils.ids import topic_to_info_hash
