"""Message types for communication with WebTorrent-style trackers.

Frames are JSON objects sent as websocket text messages. Outbound requests
are [`TrackerRequest`][swarmlink.p2p.tracker.messages.TrackerRequest]
dataclasses and inbound frames are classified into
[`TrackerMessage`][swarmlink.p2p.tracker.messages.TrackerMessage]
dataclasses by
[`decode_tracker_message()`][swarmlink.p2p.tracker.messages.decode_tracker_message].
"""
from __future__ import annotations

import dataclasses
import json
from typing import Any
from typing import Union

from swarmlink.p2p.tracker.exceptions import TrackerMessageDecodeError
from swarmlink.p2p.tracker.exceptions import TrackerMessageEncodeError

FAILURE_REASON_KEY = 'failure reason'
"""Key of the error string in tracker failure frames."""


@dataclasses.dataclass
class OfferEntry:
    """One offer carried by an announce.

    Attributes:
        offer_id: 40 character hex id used to pair the answer with the offer.
        offer: Signaling payload `{'type': 'offer', 'sdp': ...}`.
    """

    offer_id: str
    offer: dict[str, Any]


@dataclasses.dataclass
class TrackerRequest:
    """Base outbound request."""

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON object representation of the request."""
        raise NotImplementedError


@dataclasses.dataclass
class AnnounceRequest(TrackerRequest):
    """Announce presence in a swarm and optionally advertise offers.

    Attributes:
        info_hash: Swarm key.
        peer_id: Identity of the announcing peer.
        numwant: Number of peers requested.
        offers: Offers to relay to other peers in the swarm.
    """

    info_hash: str
    peer_id: str
    numwant: int
    offers: list[OfferEntry] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            'action': 'announce',
            'info_hash': self.info_hash,
            'peer_id': self.peer_id,
            'numwant': self.numwant,
        }
        if len(self.offers) > 0:
            data['offers'] = [
                {'offer_id': entry.offer_id, 'offer': entry.offer}
                for entry in self.offers
            ]
        return data


@dataclasses.dataclass
class AnswerRequest(TrackerRequest):
    """Answer an offer relayed by the tracker.

    Attributes:
        info_hash: Swarm key.
        peer_id: Identity of the answering peer.
        to_peer_id: Identity of the peer that made the offer.
        offer_id: Id of the offer being answered.
        answer: Signaling payload `{'type': 'answer', 'sdp': ...}`.
    """

    info_hash: str
    peer_id: str
    to_peer_id: str
    offer_id: str
    answer: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            'action': 'announce',
            'info_hash': self.info_hash,
            'peer_id': self.peer_id,
            'to_peer_id': self.to_peer_id,
            'offer_id': self.offer_id,
            'answer': self.answer,
        }


@dataclasses.dataclass
class ScrapeRequest(TrackerRequest):
    """Request swarm statistics.

    Attributes:
        info_hash: Swarm key.
    """

    info_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {'action': 'scrape', 'info_hash': self.info_hash}


@dataclasses.dataclass
class RelayedOffer:
    """Offer from another peer relayed by the tracker."""

    peer_id: str
    offer_id: str
    offer: dict[str, Any]
    info_hash: str | None = None


@dataclasses.dataclass
class RelayedAnswer:
    """Answer to one of our offers relayed by the tracker."""

    peer_id: str
    offer_id: str
    answer: dict[str, Any]
    info_hash: str | None = None


@dataclasses.dataclass
class TrackerFailure:
    """Error reported by the tracker."""

    reason: str


@dataclasses.dataclass
class AnnounceStats:
    """Swarm statistics returned in response to an announce.

    Attributes:
        complete: Number of seeders in the swarm.
        incomplete: Number of leechers in the swarm.
        interval: Announce interval suggested by the tracker, if any.
        info_hash: Swarm key, if echoed by the tracker.
    """

    complete: int | None = None
    incomplete: int | None = None
    interval: int | None = None
    info_hash: str | None = None


@dataclasses.dataclass
class ScrapeResponse:
    """Scrape response. The raw frame is kept as is."""

    data: dict[str, Any]


@dataclasses.dataclass
class UnknownMessage:
    """Well-formed frame that matches no known message type."""

    data: dict[str, Any]


TrackerMessage = Union[
    RelayedOffer,
    RelayedAnswer,
    TrackerFailure,
    AnnounceStats,
    ScrapeResponse,
    UnknownMessage,
]
"""Union of all inbound message types."""


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _description(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data[key]
    if not isinstance(value, dict):
        raise TrackerMessageDecodeError(
            f'Expected {key} to be an object but got {type(value).__name__}.',
        )
    return value


def classify_tracker_message(data: dict[str, Any]) -> TrackerMessage:
    """Classify a decoded frame.

    Classification is by priority: (1) a frame with `offer` and `peer_id`
    is a relayed offer, (2) a frame with `answer` and `peer_id` is a
    relayed answer, (3) a frame with `failure reason` is a failure, (4)
    `action == 'announce'` is swarm statistics, (5) `action == 'scrape'`
    is a scrape response, and anything else is unknown.

    Args:
        data: JSON object received from the tracker.

    Returns:
        Classified message.

    Raises:
        TrackerMessageDecodeError: If an offer or answer frame is missing
            required fields.
    """
    if 'offer' in data and 'peer_id' in data:
        if 'offer_id' not in data:
            raise TrackerMessageDecodeError('Relayed offer has no offer_id.')
        return RelayedOffer(
            peer_id=str(data['peer_id']),
            offer_id=str(data['offer_id']),
            offer=_description(data, 'offer'),
            info_hash=data.get('info_hash'),
        )
    if 'answer' in data and 'peer_id' in data:
        if 'offer_id' not in data:
            raise TrackerMessageDecodeError('Relayed answer has no offer_id.')
        return RelayedAnswer(
            peer_id=str(data['peer_id']),
            offer_id=str(data['offer_id']),
            answer=_description(data, 'answer'),
            info_hash=data.get('info_hash'),
        )
    if FAILURE_REASON_KEY in data:
        return TrackerFailure(reason=str(data[FAILURE_REASON_KEY]))
    action = data.get('action')
    if action == 'announce':
        return AnnounceStats(
            complete=_optional_int(data.get('complete')),
            incomplete=_optional_int(data.get('incomplete')),
            interval=_optional_int(data.get('interval')),
            info_hash=data.get('info_hash'),
        )
    if action == 'scrape':
        return ScrapeResponse(data=data)
    return UnknownMessage(data=data)


def decode_tracker_message(message: str | bytes) -> TrackerMessage:
    """Decode a websocket frame into a tracker message.

    Args:
        message: JSON text (or UTF-8 bytes) received from the tracker.

    Returns:
        Parsed message.

    Raises:
        TrackerMessageDecodeError: If the frame is not a JSON object or is
            a malformed offer or answer.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TrackerMessageDecodeError(
            'Failed to load frame as JSON.',
        ) from e

    if not isinstance(data, dict):
        raise TrackerMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    return classify_tracker_message(data)


def encode_tracker_message(message: TrackerRequest) -> str:
    """Encode a request as a JSON string.

    Args:
        message: Request to JSON encode.

    Raises:
        TrackerMessageEncodeError: If the request cannot be JSON encoded.
    """
    if not isinstance(message, TrackerRequest):
        raise TrackerMessageEncodeError(
            f'Message is not an instance of {TrackerRequest.__name__}. '
            f'Got {type(message).__name__}.',
        )

    try:
        return json.dumps(message.to_dict())
    except (TypeError, ValueError) as e:
        raise TrackerMessageEncodeError('Error encoding message.') from e
