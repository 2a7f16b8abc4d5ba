from __future__ import annotations

import json

import pytest

from swarmlink.p2p.tracker.exceptions import TrackerMessageDecodeError
from swarmlink.p2p.tracker.exceptions import TrackerMessageEncodeError
from swarmlink.p2p.tracker.messages import AnnounceRequest
from swarmlink.p2p.tracker.messages import AnnounceStats
from swarmlink.p2p.tracker.messages import AnswerRequest
from swarmlink.p2p.tracker.messages import decode_tracker_message
from swarmlink.p2p.tracker.messages import encode_tracker_message
from swarmlink.p2p.tracker.messages import OfferEntry
from swarmlink.p2p.tracker.messages import RelayedAnswer
from swarmlink.p2p.tracker.messages import RelayedOffer
from swarmlink.p2p.tracker.messages import ScrapeRequest
from swarmlink.p2p.tracker.messages import ScrapeResponse
from swarmlink.p2p.tracker.messages import TrackerFailure
from swarmlink.p2p.tracker.messages import UnknownMessage

INFO_HASH = 'a' * 40
OFFER = {'type': 'offer', 'sdp': 'v=0'}
ANSWER = {'type': 'answer', 'sdp': 'v=0'}


def test_encode_announce() -> None:
    request = AnnounceRequest(
        info_hash=INFO_HASH,
        peer_id='peer_a',
        numwant=50,
        offers=[OfferEntry(offer_id='1' * 40, offer=OFFER)],
    )
    data = json.loads(encode_tracker_message(request))
    assert data == {
        'action': 'announce',
        'info_hash': INFO_HASH,
        'peer_id': 'peer_a',
        'numwant': 50,
        'offers': [{'offer_id': '1' * 40, 'offer': OFFER}],
    }


def test_encode_announce_without_offers() -> None:
    request = AnnounceRequest(info_hash=INFO_HASH, peer_id='a', numwant=1)
    data = json.loads(encode_tracker_message(request))
    assert 'offers' not in data


def test_encode_answer() -> None:
    request = AnswerRequest(
        info_hash=INFO_HASH,
        peer_id='peer_b',
        to_peer_id='peer_a',
        offer_id='1' * 40,
        answer=ANSWER,
    )
    data = json.loads(encode_tracker_message(request))
    assert data['action'] == 'announce'
    assert data['to_peer_id'] == 'peer_a'
    assert data['answer'] == ANSWER


def test_encode_scrape() -> None:
    data = json.loads(encode_tracker_message(ScrapeRequest(INFO_HASH)))
    assert data == {'action': 'scrape', 'info_hash': INFO_HASH}


def test_encode_errors() -> None:
    with pytest.raises(TrackerMessageEncodeError, match='not an instance'):
        encode_tracker_message({'action': 'announce'})  # type: ignore[arg-type]

    request = AnnounceRequest(
        info_hash=INFO_HASH,
        peer_id='peer_a',
        numwant=1,
        offers=[OfferEntry(offer_id='1', offer={'sdp': object()})],
    )
    with pytest.raises(TrackerMessageEncodeError, match='Error encoding'):
        encode_tracker_message(request)


def test_decode_relayed_offer() -> None:
    frame = json.dumps(
        {
            'action': 'announce',
            'info_hash': INFO_HASH,
            'peer_id': 'peer_a',
            'offer_id': '1' * 40,
            'offer': OFFER,
        },
    )
    message = decode_tracker_message(frame)
    assert message == RelayedOffer(
        peer_id='peer_a',
        offer_id='1' * 40,
        offer=OFFER,
        info_hash=INFO_HASH,
    )


def test_decode_relayed_answer_bytes() -> None:
    frame = json.dumps(
        {'peer_id': 'peer_b', 'offer_id': '1' * 40, 'answer': ANSWER},
    ).encode()
    message = decode_tracker_message(frame)
    assert isinstance(message, RelayedAnswer)
    assert message.answer == ANSWER
    assert message.info_hash is None


def test_decode_priority() -> None:
    # A frame with an offer and a failure reason is still an offer.
    frame = json.dumps(
        {
            'action': 'announce',
            'peer_id': 'peer_a',
            'offer_id': '1',
            'offer': OFFER,
            'failure reason': 'ignored',
        },
    )
    assert isinstance(decode_tracker_message(frame), RelayedOffer)

    frame = json.dumps({'action': 'announce', 'failure reason': 'bad'})
    assert decode_tracker_message(frame) == TrackerFailure(reason='bad')

    # An offer without a peer id is not relayed.
    frame = json.dumps({'action': 'announce', 'offer': OFFER})
    assert isinstance(decode_tracker_message(frame), AnnounceStats)


def test_decode_announce_stats() -> None:
    frame = json.dumps(
        {
            'action': 'announce',
            'interval': 120,
            'info_hash': INFO_HASH,
            'complete': 2,
            'incomplete': 3,
        },
    )
    assert decode_tracker_message(frame) == AnnounceStats(
        complete=2,
        incomplete=3,
        interval=120,
        info_hash=INFO_HASH,
    )

    frame = json.dumps({'action': 'announce', 'complete': 'many'})
    assert decode_tracker_message(frame) == AnnounceStats()


def test_decode_scrape_and_unknown() -> None:
    data = {'action': 'scrape', 'files': {INFO_HASH: {'complete': 1}}}
    assert decode_tracker_message(json.dumps(data)) == ScrapeResponse(data)

    data = {'action': 'stop'}
    assert decode_tracker_message(json.dumps(data)) == UnknownMessage(data)


@pytest.mark.parametrize(
    'frame',
    (
        'not json',
        '[1, 2, 3]',
        '"string"',
        b'\xff\xfe',
        json.dumps({'peer_id': 'a', 'offer': OFFER}),
        json.dumps({'peer_id': 'a', 'offer_id': '1', 'offer': 'sdp'}),
        json.dumps({'peer_id': 'a', 'answer': ANSWER}),
        json.dumps({'peer_id': 'a', 'offer_id': '1', 'answer': None}),
    ),
)
def test_decode_errors(frame) -> None:
    with pytest.raises(TrackerMessageDecodeError):
        decode_tracker_message(frame)
