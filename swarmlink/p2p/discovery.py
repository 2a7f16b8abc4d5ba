"""Discover peers through trackers and negotiate sessions with them."""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import time
from types import TracebackType
from typing import Any
from typing import Generator

from swarmlink.p2p.config import DiscoveryConfig
from swarmlink.p2p.events import DiscoveryEvent
from swarmlink.p2p.events import EventDispatcher
from swarmlink.p2p.events import Handler
from swarmlink.p2p.events import SessionEvent
from swarmlink.p2p.exceptions import DiscoveryError
from swarmlink.p2p.exceptions import PeerSessionError
from swarmlink.p2p.session import PeerSession
from swarmlink.p2p.tracker.connection import TrackerConnection
from swarmlink.p2p.tracker.exceptions import TrackerDisconnectedError
from swarmlink.p2p.tracker.exceptions import TrackerUnreachableError
from swarmlink.p2p.tracker.messages import AnnounceRequest
from swarmlink.p2p.tracker.messages import AnnounceStats
from swarmlink.p2p.tracker.messages import AnswerRequest
from swarmlink.p2p.tracker.messages import OfferEntry
from swarmlink.p2p.tracker.messages import RelayedAnswer
from swarmlink.p2p.tracker.messages import RelayedOffer
from swarmlink.p2p.tracker.messages import ScrapeRequest
from swarmlink.p2p.tracker.messages import ScrapeResponse
from swarmlink.p2p.tracker.messages import TrackerFailure
from swarmlink.p2p.tracker.messages import TrackerMessage
from swarmlink.p2p.transport import aiortc_transport_factory
from swarmlink.p2p.transport import TransportFactory
from swarmlink.utils.ids import generate_offer_id
from swarmlink.utils.tasks import ScheduledTask
from swarmlink.utils.tasks import spawn_logged_task


@dataclasses.dataclass
class PendingOffer:
    """Offer announced to trackers and not yet answered.

    Attributes:
        offer_id: Random 40 character hex id pairing the answer to the offer.
        session: Initiating session that generated the offer.
        offer: Signaling payload `{'type': 'offer', 'sdp': ...}`.
        created: [`time.monotonic()`][time.monotonic] when the offer was
            generated.
        expiry: Timer that discards the offer if it is not answered.
    """

    offer_id: str
    session: PeerSession
    offer: dict[str, Any]
    created: float
    expiry: ScheduledTask | None = None

    def cancel_expiry(self) -> None:
        """Cancel the expiry timer."""
        if self.expiry is not None:
            self.expiry.cancel()


class PeerDiscoveryClient:
    """Discover peers through trackers and connect to them.

    The client connects to every configured tracker, announces an offer
    generated by an initiating
    [`PeerSession`][swarmlink.p2p.session.PeerSession], and answers
    offers from other peers relayed by the trackers. Each session that
    opens its data channel is handed to the caller through the
    [`DiscoveryEvent.CONNECTION`][swarmlink.p2p.events.DiscoveryEvent]
    event, at most once per remote identity. From then on the caller owns
    the session.

    When two peers offer to each other at the same time, the session
    initiated by the peer with the greater identity is kept.

    Example:
        ```python
        from swarmlink.p2p.config import DiscoveryConfig
        from swarmlink.p2p.discovery import PeerDiscoveryClient
        from swarmlink.p2p.events import DiscoveryEvent

        config = DiscoveryConfig(topic='my-game')
        client = PeerDiscoveryClient(config)

        def on_connection(session):
            session.send('hello')

        client.on(DiscoveryEvent.CONNECTION, on_connection)
        await client.start()
        ...
        await client.close()
        ```

    Note:
        The client can also be used as an asynchronous context manager or
        initialized with `await`.

        ```python
        async with PeerDiscoveryClient(config) as client:
            ...
        ```

    Args:
        config: Discovery configuration. Defaults are used if `None`.
        transport_factory: Callable returning a new transport for each
            session. Defaults to aiortc peer connections using the ICE
            servers in `config`.
        logger: Logger to use instead of the module logger.
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        logger: logging.Logger | logging.LoggerAdapter[Any] | None = None,
    ) -> None:
        self._config = DiscoveryConfig() if config is None else config
        self._peer_id = self._config.peer_id
        self._info_hash = self._config.swarm_info_hash
        self._transport_factory = (
            aiortc_transport_factory(self._config.ice_servers)
            if transport_factory is None
            else transport_factory
        )
        self._logger = (
            logging.getLogger(__name__) if logger is None else logger
        )
        self._events: EventDispatcher[DiscoveryEvent] = EventDispatcher(
            self._logger,
        )

        self._trackers: dict[str, TrackerConnection] = {}
        self._offers: dict[str, PendingOffer] = {}
        self._offer_lock = asyncio.Lock()
        self._negotiating: dict[str, PeerSession] = {}
        self._connected: dict[str, PeerSession] = {}
        self._sessions: set[PeerSession] = set()
        self._discovered_count: int | None = None

        self._started = False
        self._closed = False

    async def __aenter__(self) -> PeerDiscoveryClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, PeerDiscoveryClient]:
        return self.__aenter__().__await__()

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._peer_id}]'

    @property
    def config(self) -> DiscoveryConfig:
        """Discovery configuration."""
        return self._config

    @property
    def peer_id(self) -> str:
        """Identity of this peer."""
        return self._peer_id

    @property
    def info_hash(self) -> str:
        """Swarm key announced to trackers."""
        return self._info_hash

    @property
    def discovered_peers(self) -> frozenset[str]:
        """Identities of peers with a connected session."""
        return frozenset(self._connected)

    @property
    def pending_offers(self) -> dict[str, PendingOffer]:
        """Copy of the outstanding offers keyed by offer id."""
        return dict(self._offers)

    @property
    def trackers(self) -> dict[str, TrackerConnection]:
        """Copy of the open tracker connections keyed by URL."""
        return dict(self._trackers)

    @property
    def discovered_count(self) -> int | None:
        """Seeders plus leechers last reported by a tracker."""
        return self._discovered_count

    @property
    def started(self) -> bool:
        """The client is started and has at least one tracker."""
        return self._started

    def get_session(self, peer_id: str) -> PeerSession | None:
        """Get the connected session for a peer, if any."""
        return self._connected.get(peer_id)

    def on(self, event: DiscoveryEvent, handler: Handler) -> Handler:
        """Register a handler for a discovery event."""
        return self._events.on(event, handler)

    def once(self, event: DiscoveryEvent, handler: Handler) -> Handler:
        """Register a handler that is invoked at most once."""
        return self._events.once(event, handler)

    def off(
        self,
        event: DiscoveryEvent,
        handler: Handler | None = None,
    ) -> None:
        """Remove one or all handlers for a discovery event."""
        self._events.off(event, handler)

    async def start(self) -> None:
        """Connect to trackers and begin announcing.

        Note:
            This method is a no-op if the client is already started.

        Raises:
            TrackerUnreachableError: If no tracker could be connected to or
                every tracker was lost before announcing began.
        """
        if self._started:
            return
        self._closed = False

        urls = list(dict.fromkeys(self._config.tracker_urls))
        trackers = [
            TrackerConnection(
                url,
                announce_interval=self._config.announce_interval,
                max_announce_interval=self._config.max_announce_interval,
                backoff_multiplier=self._config.backoff_multiplier,
                logger=self._logger,
            )
            for url in urls
        ]
        results = await asyncio.gather(
            *(
                tracker.connect(self._config.tracker_connect_timeout)
                for tracker in trackers
            ),
            return_exceptions=True,
        )
        for tracker, result in zip(trackers, results):
            if isinstance(result, Exception):
                self._logger.warning(f'{self._log_prefix}: {result}')
                self._events.emit(DiscoveryEvent.ERROR, result)
            else:
                self._trackers[tracker.url] = tracker

        if len(self._trackers) == 0:
            raise TrackerUnreachableError(
                f'Failed to connect to any of the {len(urls)} trackers.',
            )
        self._logger.info(
            f'{self._log_prefix}: connected to {len(self._trackers)}/'
            f'{len(urls)} trackers',
        )
        self._started = True

        pending: PendingOffer | None = None
        try:
            pending = await asyncio.wait_for(
                self._create_offer(self._config.announce_interval),
                self._config.startup_timeout,
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                f'{self._log_prefix}: no offer generated within '
                f'{self._config.startup_timeout}s, announcing without one',
            )

        for tracker in list(self._trackers.values()):
            try:
                tracker.listen(
                    self.handle_tracker_message,
                    self._on_tracker_lost,
                )
            except TrackerDisconnectedError as e:
                # Lost while the startup offer was being generated.
                del self._trackers[tracker.url]
                self._logger.warning(f'{self._log_prefix}: {e}')
                self._events.emit(DiscoveryEvent.ERROR, e)
                await tracker.close()
                continue
            await self._announce(tracker, pending)
            tracker.start_announcing(self._scheduled_announce)

        if len(self._trackers) == 0:
            self._started = False
            await self._discard_offers()
            raise TrackerUnreachableError(
                'Lost connection to every tracker during startup.',
            )

        self._events.emit(DiscoveryEvent.READY)

    async def close(self, close_sessions: bool = False) -> None:
        """Stop discovery and close all trackers.

        Sessions still negotiating are closed. Connected sessions belong to
        the caller and are only closed if `close_sessions` is `True`.
        """
        if self._closed:
            return
        self._closed = True
        self._started = False

        trackers = list(self._trackers.values())
        self._trackers.clear()
        for tracker in trackers:
            await tracker.close()

        await self._discard_offers()
        for session in list(self._sessions):
            await session.close()
        if close_sessions:
            for session in list(self._connected.values()):
                await session.close()
        self._logger.info(f'{self._log_prefix}: closed discovery client')

    async def scrape(self) -> int:
        """Request swarm statistics from every connected tracker.

        Responses are emitted as
        [`DiscoveryEvent.SCRAPE`][swarmlink.p2p.events.DiscoveryEvent].

        Returns:
            Number of trackers the request was sent to.

        Raises:
            DiscoveryError: If the client is not started.
        """
        if not self._started:
            raise DiscoveryError('Discovery client has not been started.')
        sent = 0
        request = ScrapeRequest(info_hash=self._info_hash)
        for tracker in list(self._trackers.values()):
            if await tracker.send(request):
                sent += 1
        return sent

    async def handle_tracker_message(
        self,
        tracker: TrackerConnection,
        message: TrackerMessage,
    ) -> None:
        """Process a message received from a tracker.

        Args:
            tracker: Tracker the message was received from. Answers to
                relayed offers are sent back through this tracker.
            message: Decoded tracker message.
        """
        if isinstance(message, RelayedOffer):
            await self._handle_offer(tracker, message)
        elif isinstance(message, RelayedAnswer):
            await self._handle_answer(message)
        elif isinstance(message, TrackerFailure):
            self._logger.warning(
                f'{self._log_prefix}: tracker {tracker.url} reported '
                f'failure: {message.reason}',
            )
            self._events.emit(DiscoveryEvent.TRACKER_FAILURE, message.reason)
        elif isinstance(message, AnnounceStats):
            complete = message.complete or 0
            incomplete = message.incomplete or 0
            self._discovered_count = complete + incomplete
            self._events.emit(
                DiscoveryEvent.UPDATE,
                {'complete': complete, 'incomplete': incomplete},
            )
        elif isinstance(message, ScrapeResponse):
            self._events.emit(DiscoveryEvent.SCRAPE, message.data)
        else:
            self._logger.debug(
                f'{self._log_prefix}: dropping unrecognized message from '
                f'{tracker.url}: {message!r}',
            )

    def _new_session(
        self,
        *,
        initiator: bool,
        remote_peer_id: str | None = None,
    ) -> PeerSession:
        session = PeerSession(
            self._transport_factory(),
            initiator=initiator,
            local_peer_id=self._peer_id,
            remote_peer_id=remote_peer_id,
            ice_gathering_timeout=self._config.ice_gathering_timeout,
            negotiation_timeout=self._config.negotiation_timeout,
            logger=self._logger,
        )
        self._sessions.add(session)
        session.on(
            SessionEvent.CONNECT,
            functools.partial(self._on_session_connect, session),
        )
        session.on(
            SessionEvent.ERROR,
            functools.partial(self._on_session_error, session),
        )
        session.on(
            SessionEvent.CLOSE,
            functools.partial(self._on_session_close, session),
        )
        return session

    async def _create_offer(self, interval: float) -> PendingOffer | None:
        session = self._new_session(initiator=True)
        try:
            offer = await session.start()
        except asyncio.CancelledError:
            await session.close()
            raise
        if offer is None:
            self._sessions.discard(session)
            return None

        offer_id = generate_offer_id()
        pending = PendingOffer(
            offer_id=offer_id,
            session=session,
            offer=offer,
            created=time.monotonic(),
        )
        pending.expiry = ScheduledTask(
            self._config.offer_timeout_factor * interval,
            self._expire_offer,
            offer_id,
            name=f'offer-expiry-{offer_id[:8]}',
        )
        self._offers[offer_id] = pending
        self._logger.debug(
            f'{self._log_prefix}: created offer {offer_id} '
            f'(pending={len(self._offers)})',
        )
        return pending

    async def _maybe_create_offer(
        self,
        interval: float,
    ) -> PendingOffer | None:
        async with self._offer_lock:
            if len(self._offers) >= self._config.max_pending_offers:
                return None
            try:
                return await asyncio.wait_for(
                    self._create_offer(interval),
                    self._config.negotiation_timeout,
                )
            except asyncio.TimeoutError:
                self._logger.warning(
                    f'{self._log_prefix}: timeout generating offer',
                )
                return None

    async def _expire_offer(self, offer_id: str) -> None:
        pending = self._offers.pop(offer_id, None)
        if pending is None:
            return
        self._logger.info(
            f'{self._log_prefix}: offer {offer_id} expired after '
            f'{time.monotonic() - pending.created:.1f}s without an answer',
        )
        await pending.session.close()

    async def _discard_offers(self) -> None:
        offers = list(self._offers.values())
        self._offers.clear()
        for pending in offers:
            pending.cancel_expiry()
            await pending.session.close()

    async def _announce(
        self,
        tracker: TrackerConnection,
        pending: PendingOffer | None,
    ) -> bool:
        offers = (
            []
            if pending is None
            else [OfferEntry(offer_id=pending.offer_id, offer=pending.offer)]
        )
        request = AnnounceRequest(
            info_hash=self._info_hash,
            peer_id=self._peer_id,
            numwant=self._config.numwant,
            offers=offers,
        )
        sent = await tracker.send(request)
        self._logger.debug(
            f'{self._log_prefix}: announce to {tracker.url} with '
            f'{len(offers)} offer(s) (sent={sent})',
        )
        return sent

    async def _scheduled_announce(self, tracker: TrackerConnection) -> None:
        if self._closed:
            return
        pending = await self._maybe_create_offer(tracker.interval)
        await self._announce(tracker, pending)

    async def _handle_offer(
        self,
        tracker: TrackerConnection,
        message: RelayedOffer,
    ) -> None:
        remote = message.peer_id
        if remote == self._peer_id:
            self._logger.debug(f'{self._log_prefix}: ignoring own offer')
            return
        if remote in self._connected:
            self._logger.debug(
                f'{self._log_prefix}: ignoring offer from connected peer '
                f'{remote}',
            )
            return

        existing = self._negotiating.get(remote)
        if existing is not None:
            if existing.initiator and remote > self._peer_id:
                # The greater identity initiates so yield to the remote offer.
                self._logger.info(
                    f'{self._log_prefix}: yielding to offer from {remote}',
                )
                del self._negotiating[remote]
                await existing.close()
            else:
                self._logger.debug(
                    f'{self._log_prefix}: ignoring duplicate offer from '
                    f'{remote}',
                )
                return

        session = self._new_session(initiator=False, remote_peer_id=remote)
        self._negotiating[remote] = session
        self._logger.info(
            f'{self._log_prefix}: answering offer {message.offer_id} from '
            f'{remote} via {tracker.url}',
        )

        async def _send_answer(payload: dict[str, Any]) -> None:
            if payload.get('type') != 'answer':
                return
            answer = AnswerRequest(
                info_hash=self._info_hash,
                peer_id=self._peer_id,
                to_peer_id=remote,
                offer_id=message.offer_id,
                answer=payload,
            )
            if not await tracker.send(answer):
                self._logger.warning(
                    f'{self._log_prefix}: failed to send answer to {remote} '
                    f'because {tracker.url} is disconnected',
                )
                await session.close()

        session.on(SessionEvent.SIGNAL, _send_answer)
        session.signal(message.offer)

    async def _handle_answer(self, message: RelayedAnswer) -> None:
        pending = self._offers.pop(message.offer_id, None)
        if pending is None:
            self._logger.info(
                f'{self._log_prefix}: ignoring stale answer for offer '
                f'{message.offer_id} from {message.peer_id}',
            )
            return
        pending.cancel_expiry()

        remote = message.peer_id
        session = pending.session
        if remote == self._peer_id or remote in self._connected:
            self._logger.debug(
                f'{self._log_prefix}: closing late session to {remote}',
            )
            await session.close()
            return

        existing = self._negotiating.get(remote)
        if existing is not None and existing is not session:
            if existing.initiator or remote > self._peer_id:
                self._logger.debug(
                    f'{self._log_prefix}: already negotiating with {remote}, '
                    f'discarding answer to offer {message.offer_id}',
                )
                await session.close()
                return
            self._logger.info(
                f'{self._log_prefix}: replacing session initiated by {remote}',
            )
            del self._negotiating[remote]
            await existing.close()

        session.remote_peer_id = remote
        self._negotiating[remote] = session
        self._logger.info(
            f'{self._log_prefix}: received answer to offer '
            f'{message.offer_id} from {remote}',
        )
        session.signal(message.answer)

    def _on_session_connect(self, session: PeerSession) -> None:
        remote = session.remote_peer_id
        if remote is None:
            spawn_logged_task(session.close)
            return

        current = self._connected.get(remote)
        if current is session:
            return
        if (
            current is not None
            or self._negotiating.get(remote) is not session
        ):
            self._logger.info(
                f'{self._log_prefix}: closing redundant session to {remote}',
            )
            spawn_logged_task(session.close)
            return

        del self._negotiating[remote]
        self._connected[remote] = session
        self._sessions.discard(session)
        self._logger.info(f'{self._log_prefix}: connected to peer {remote}')
        self._events.emit(DiscoveryEvent.CONNECTION, session)

    def _on_session_error(
        self,
        session: PeerSession,
        error: PeerSessionError,
    ) -> None:
        peer_id = self._forget_session(session)
        if peer_id is not None:
            self._events.emit(DiscoveryEvent.PEER_FAILED, peer_id, error)

    def _on_session_close(self, session: PeerSession) -> None:
        peer_id = self._forget_session(session)
        if peer_id is not None:
            self._events.emit(DiscoveryEvent.PEER_DISCONNECTED, peer_id)

    def _forget_session(self, session: PeerSession) -> str | None:
        self._sessions.discard(session)
        for offer_id, pending in list(self._offers.items()):
            if pending.session is session:
                del self._offers[offer_id]
                pending.cancel_expiry()

        peer_id = session.remote_peer_id
        if peer_id is None:
            return None
        registered = False
        if self._negotiating.get(peer_id) is session:
            del self._negotiating[peer_id]
            registered = True
        if self._connected.get(peer_id) is session:
            del self._connected[peer_id]
            registered = True
        return peer_id if registered else None

    async def _on_tracker_lost(
        self,
        tracker: TrackerConnection,
        error: TrackerDisconnectedError,
    ) -> None:
        if self._trackers.get(tracker.url) is tracker:
            del self._trackers[tracker.url]
        self._logger.warning(f'{self._log_prefix}: {error}')
        self._events.emit(DiscoveryEvent.ERROR, error)
        await tracker.close()

        if len(self._trackers) == 0 and not self._closed:
            self._logger.warning(
                f'{self._log_prefix}: lost connection to every tracker',
            )
            self._started = False
            await self._discard_offers()
            self._events.emit(DiscoveryEvent.CLOSED)
