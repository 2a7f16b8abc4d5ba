"""Identifiers exchanged with trackers and peers."""
from __future__ import annotations

import hashlib
import secrets
import string

OFFER_ID_BYTES = 20
"""Offer IDs are 160 random bits, hex encoded."""
PEER_ID_PREFIX = 'peer_'
PEER_ID_LENGTH = 9

_PEER_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_offer_id() -> str:
    """Return a random 40 character hex offer ID."""
    return secrets.token_hex(OFFER_ID_BYTES)


def generate_peer_id() -> str:
    """Return a random peer identity like `#!python 'peer_k3x9z0q2a'`."""
    suffix = ''.join(
        secrets.choice(_PEER_ID_ALPHABET) for _ in range(PEER_ID_LENGTH)
    )
    return f'{PEER_ID_PREFIX}{suffix}'


def topic_to_info_hash(topic: str) -> str:
    """Hash a pool topic (e.g., a game ID) into a tracker info hash.

    Args:
        topic: Human readable name shared by all peers of a pool.

    Returns:
        SHA-1 digest of the UTF-8 encoded topic as 40 hex characters.
    """
    return hashlib.sha1(topic.encode('utf-8')).hexdigest()
