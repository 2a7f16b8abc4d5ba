"""Signaling state machine for one peer-to-peer session."""
from __future__ import annotations

import asyncio
import enum
import logging
import sys
from types import TracebackType
from typing import Any

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from aiortc.exceptions import InvalidStateError

from swarmlink.p2p.events import EventDispatcher
from swarmlink.p2p.events import Handler
from swarmlink.p2p.events import SessionEvent
from swarmlink.p2p.exceptions import NegotiationError
from swarmlink.p2p.exceptions import NegotiationTimeoutError
from swarmlink.p2p.exceptions import PeerSessionError
from swarmlink.p2p.transport import candidate_from_message
from swarmlink.p2p.transport import candidate_to_message
from swarmlink.p2p.transport import CHANNEL_LABEL
from swarmlink.p2p.transport import DataChannel
from swarmlink.p2p.transport import description_from_message
from swarmlink.p2p.transport import description_to_message
from swarmlink.p2p.transport import PeerTransport
from swarmlink.utils.tasks import cancel_and_wait
from swarmlink.utils.tasks import ScheduledTask
from swarmlink.utils.tasks import spawn_logged_task

MAX_BUFFERED_CANDIDATES = 32
"""Candidates kept while waiting on the remote description."""


class SessionState(enum.Enum):
    """Negotiation state of a peer session."""

    NEW = 'new'
    """No description has been generated or applied."""
    LOCAL_OFFER_SENT = 'local-offer-sent'
    """The initiator emitted its offer and waits on an answer."""
    REMOTE_OFFER_RECEIVED = 'remote-offer-received'
    """The responder applied the remote offer and is generating an answer."""
    LOCAL_ANSWER_SENT = 'local-answer-sent'
    """The responder emitted its answer and waits on the channel."""
    CONNECTED = 'connected'
    """The data channel is open."""
    CLOSED = 'closed'
    """The session was closed. Terminal."""
    FAILED = 'failed'
    """Negotiation or the transport failed. Terminal."""

    @property
    def terminal(self) -> bool:
        """No further transitions are possible from this state."""
        return self in (SessionState.CLOSED, SessionState.FAILED)


class PeerSession:
    """Drive one transport session through its offer/answer handshake.

    A session is either the *initiator*, which opens the data channel and
    generates the offer with
    [`start()`][swarmlink.p2p.session.PeerSession.start], or the
    *responder*, which answers an offer passed to
    [`signal()`][swarmlink.p2p.session.PeerSession.signal]. Signaling
    payloads produced locally are emitted as
    [`SessionEvent.SIGNAL`][swarmlink.p2p.events.SessionEvent] and must be
    delivered to the remote session by the caller.

    By default candidates are not trickled: a description is emitted only
    once ICE gathering completes (or `ice_gathering_timeout` elapses) so it
    carries every candidate. This is the mode used with trackers which can
    only relay a single offer and answer.

    Example:
        ```python
        from swarmlink.p2p.events import SessionEvent
        from swarmlink.p2p.session import PeerSession
        from swarmlink.p2p.transport import create_aiortc_transport

        offerer = PeerSession(
            create_aiortc_transport([]), initiator=True, local_peer_id='a',
        )
        answerer = PeerSession(
            create_aiortc_transport([]), initiator=False, local_peer_id='b',
        )
        offerer.on(SessionEvent.SIGNAL, answerer.signal)
        answerer.on(SessionEvent.SIGNAL, offerer.signal)
        answerer.on(SessionEvent.DATA, print)

        await offerer.start()
        await offerer.ready(timeout=10)
        offerer.send('hello')
        ```

    Args:
        transport: Unused transport this session takes ownership of.
        initiator: This side generates the offer.
        local_peer_id: Identity of the local peer.
        remote_peer_id: Identity of the remote peer, if known.
        trickle: Emit candidates individually instead of waiting for ICE
            gathering to complete.
        ice_gathering_timeout: Seconds to wait on ICE gathering before
            emitting a description anyway.
        negotiation_timeout: Seconds the session may take to open the data
            channel once the remote description is applied.
        max_buffered_candidates: Candidates kept while no remote description
            is set. Extra candidates are dropped.
        logger: Logger to use instead of the module logger.
    """

    def __init__(
        self,
        transport: PeerTransport,
        *,
        initiator: bool,
        local_peer_id: str,
        remote_peer_id: str | None = None,
        trickle: bool = False,
        ice_gathering_timeout: float = 3.0,
        negotiation_timeout: float = 30.0,
        max_buffered_candidates: int = MAX_BUFFERED_CANDIDATES,
        logger: logging.Logger | logging.LoggerAdapter[Any] | None = None,
    ) -> None:
        self._transport = transport
        self._initiator = initiator
        self._local_peer_id = local_peer_id
        self._remote_peer_id = remote_peer_id
        self._trickle = trickle
        self._ice_gathering_timeout = ice_gathering_timeout
        self._negotiation_timeout = negotiation_timeout
        self._max_buffered_candidates = max_buffered_candidates
        self._logger = (
            logging.getLogger(__name__) if logger is None else logger
        )

        self._events: EventDispatcher[SessionEvent] = EventDispatcher(
            self._logger,
        )
        self._state = SessionState.NEW
        self._channel: DataChannel | None = None
        self._connected_once = False
        self._remote_description_set = False
        self._pending_candidates: list[dict[str, Any]] = []

        self._signal_queue: asyncio.Queue[Any] = asyncio.Queue()
        self._signal_task: asyncio.Task[None] | None = None
        self._handshake_timer: ScheduledTask | None = None
        self._gathering_complete = asyncio.Event()
        self._settled = asyncio.Event()

        self._transport.on(
            'icegatheringstatechange',
            self._on_ice_gathering_state_change,
        )
        self._transport.on(
            'connectionstatechange',
            self._on_connection_state_change,
        )
        self._transport.on('datachannel', self._on_datachannel)
        if self._trickle:
            self._transport.on('icecandidate', self._on_ice_candidate)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(local={self._local_peer_id!r}, '
            f'remote={self._remote_peer_id!r}, state={self._state.name})'
        )

    @property
    def _log_prefix(self) -> str:
        remote = (
            'pending' if self._remote_peer_id is None else self._remote_peer_id
        )
        return f'{self.__class__.__name__}[{self._local_peer_id} > {remote}]'

    @property
    def state(self) -> SessionState:
        """Current negotiation state."""
        return self._state

    @property
    def initiator(self) -> bool:
        """This side generated the offer."""
        return self._initiator

    @property
    def connected(self) -> bool:
        """The data channel is open and the session is not terminal."""
        return self._state is SessionState.CONNECTED

    @property
    def local_peer_id(self) -> str:
        """Identity of the local peer."""
        return self._local_peer_id

    @property
    def remote_peer_id(self) -> str | None:
        """Identity of the remote peer or `None` if not yet known."""
        return self._remote_peer_id

    @remote_peer_id.setter
    def remote_peer_id(self, peer_id: str) -> None:
        self._remote_peer_id = peer_id

    @property
    def transport(self) -> PeerTransport:
        """Underlying transport."""
        return self._transport

    @property
    def channel(self) -> DataChannel | None:
        """Data channel or `None` if not yet created or received."""
        return self._channel

    def on(self, event: SessionEvent, handler: Handler) -> Handler:
        """Register a handler for a session event."""
        return self._events.on(event, handler)

    def once(self, event: SessionEvent, handler: Handler) -> Handler:
        """Register a handler that is invoked at most once."""
        return self._events.once(event, handler)

    def off(self, event: SessionEvent, handler: Handler | None = None) -> None:
        """Remove one or all handlers for a session event."""
        self._events.off(event, handler)

    async def start(self) -> dict[str, Any] | None:
        """Create the data channel and generate the local offer.

        The offer is emitted as a `SIGNAL` event and also returned.

        Returns:
            The offer payload or `None` if negotiation failed or the session \
            was closed while generating the offer.

        Raises:
            PeerSessionError: If this session is not the initiator or was
                already started.
        """
        if not self._initiator:
            raise PeerSessionError(
                f'{self._log_prefix}: only the initiating peer can start.',
            )
        if self._state is not SessionState.NEW or self._channel is not None:
            raise PeerSessionError(
                f'{self._log_prefix}: cannot start in state '
                f'{self._state.name}.',
            )

        self._attach_channel(
            self._transport.createDataChannel(CHANNEL_LABEL, ordered=True),
        )

        try:
            offer = await self._transport.createOffer()
            await self._transport.setLocalDescription(offer)
            await self._wait_for_ice_gathering()
            payload = self._local_description_payload()
        except Exception as e:
            if not self._state.terminal:
                await self._fail(
                    NegotiationError(f'Failed to generate offer: {e!r}'),
                )
            return None

        if self._state is not SessionState.NEW:
            return None

        self._state = SessionState.LOCAL_OFFER_SENT
        self._logger.debug(f'{self._log_prefix}: emitting offer')
        self._events.emit(SessionEvent.SIGNAL, payload)
        return payload

    def signal(self, message: dict[str, Any]) -> None:
        """Pass a signaling payload received from the remote peer.

        This never blocks. Payloads are applied in arrival order by a
        background task.

        Args:
            message: `{'type': 'offer' | 'answer', 'sdp': ...}` or
                `{'type': 'candidate', 'candidate': {...}}`.
        """
        if self._state.terminal:
            self._logger.debug(
                f'{self._log_prefix}: ignoring signal in state '
                f'{self._state.name}',
            )
            return
        self._signal_queue.put_nowait(message)
        if self._signal_task is None:
            self._signal_task = spawn_logged_task(self._process_signals)
            self._signal_task.set_name(
                f'peer-session-signal-{self._local_peer_id}',
            )

    def send(self, payload: bytes | str) -> bool:
        """Send a message to the remote peer.

        Returns:
            `True` if the message was handed to the channel or `False` if \
            the session is not connected.
        """
        channel = self._channel
        if (
            self._state is not SessionState.CONNECTED
            or channel is None
            or channel.readyState != 'open'
        ):
            return False
        try:
            channel.send(payload)
        except (InvalidStateError, TypeError, ValueError) as e:
            self._logger.debug(f'{self._log_prefix}: send failed: {e!r}')
            return False
        return True

    async def ready(self, timeout: float | None = None) -> None:
        """Wait for the data channel to open.

        Args:
            timeout: Maximum seconds to wait. `None` waits indefinitely.

        Raises:
            NegotiationTimeoutError: If the channel does not open within
                `timeout`.
            PeerSessionError: If the session closed or failed before the
                channel opened.
        """
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise NegotiationTimeoutError(
                f'{self._log_prefix}: timeout waiting on data channel.',
            ) from e
        if not self._connected_once:
            raise PeerSessionError(
                f'{self._log_prefix}: session ended in state '
                f'{self._state.name} before connecting.',
            )

    async def close(self) -> None:
        """Close the session and release the channel and transport.

        Safe to call from any state and idempotent. Emits `CLOSE` unless the
        session already closed or failed.
        """
        if self._state.terminal:
            return
        self._state = SessionState.CLOSED
        self._settled.set()
        self._logger.info(f'{self._log_prefix}: closing session')
        await self._release()
        self._events.emit(SessionEvent.CLOSE)
        self._events.clear()

    async def _fail(self, error: PeerSessionError) -> None:
        if self._state.terminal:
            return
        self._state = SessionState.FAILED
        self._settled.set()
        self._logger.warning(f'{self._log_prefix}: session failed: {error}')
        await self._release()
        self._events.emit(SessionEvent.ERROR, error)
        self._events.clear()

    async def _release(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
        self._pending_candidates.clear()
        await cancel_and_wait(self._signal_task)

        channel = self._channel
        if channel is not None and channel.readyState not in (
            'closing',
            'closed',
        ):
            channel.close()
        await self._transport.close()

    async def _process_signals(self) -> None:
        while not self._state.terminal:
            message = await self._signal_queue.get()
            if self._state.terminal:
                break
            await self._handle_signal(message)

    async def _handle_signal(self, message: Any) -> None:
        if not isinstance(message, dict):
            self._logger.warning(
                f'{self._log_prefix}: ignoring malformed signal {message!r}',
            )
            return

        kind = message.get('type')
        if kind == 'offer':
            await self._handle_remote_offer(message)
        elif kind == 'answer':
            await self._handle_remote_answer(message)
        elif kind == 'candidate' or 'candidate' in message:
            await self._handle_remote_candidate(message.get('candidate'))
        else:
            self._logger.warning(
                f'{self._log_prefix}: ignoring signal of unknown type '
                f'{kind!r}',
            )

    async def _handle_remote_offer(self, message: dict[str, Any]) -> None:
        if self._initiator or self._state is not SessionState.NEW:
            self._logger.info(
                f'{self._log_prefix}: ignoring offer in state '
                f'{self._state.name}',
            )
            return

        try:
            description = description_from_message(message)
            await self._transport.setRemoteDescription(description)
        except Exception as e:
            await self._fail(
                NegotiationError(f'Failed to apply remote offer: {e!r}'),
            )
            return

        self._remote_description_set = True
        self._state = SessionState.REMOTE_OFFER_RECEIVED
        self._logger.debug(f'{self._log_prefix}: applied remote offer')
        await self._flush_candidates()
        self._arm_handshake_timer()

        try:
            answer = await self._transport.createAnswer()
            await self._transport.setLocalDescription(answer)
            await self._wait_for_ice_gathering()
            payload = self._local_description_payload()
        except Exception as e:
            await self._fail(
                NegotiationError(f'Failed to generate answer: {e!r}'),
            )
            return

        if self._state.terminal:
            return
        if self._state is SessionState.REMOTE_OFFER_RECEIVED:
            self._state = SessionState.LOCAL_ANSWER_SENT
        self._logger.debug(f'{self._log_prefix}: emitting answer')
        self._events.emit(SessionEvent.SIGNAL, payload)

    async def _handle_remote_answer(self, message: dict[str, Any]) -> None:
        if (
            not self._initiator
            or self._state is not SessionState.LOCAL_OFFER_SENT
            or self._remote_description_set
        ):
            self._logger.info(
                f'{self._log_prefix}: ignoring answer in state '
                f'{self._state.name}',
            )
            return

        try:
            description = description_from_message(message)
            await self._transport.setRemoteDescription(description)
        except Exception as e:
            await self._fail(
                NegotiationError(f'Failed to apply remote answer: {e!r}'),
            )
            return

        self._remote_description_set = True
        self._logger.debug(f'{self._log_prefix}: applied remote answer')
        await self._flush_candidates()
        self._arm_handshake_timer()

    async def _handle_remote_candidate(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            self._logger.debug(
                f'{self._log_prefix}: ignoring empty candidate',
            )
            return
        if not self._remote_description_set:
            if len(self._pending_candidates) >= self._max_buffered_candidates:
                self._logger.debug(
                    f'{self._log_prefix}: candidate buffer full, dropping '
                    'candidate',
                )
            else:
                self._pending_candidates.append(payload)
            return
        await self._apply_candidate(payload)

    async def _apply_candidate(self, payload: dict[str, Any]) -> None:
        try:
            candidate = candidate_from_message(payload)
            if candidate is not None:
                await self._transport.addIceCandidate(candidate)
        except Exception as e:
            self._logger.debug(
                f'{self._log_prefix}: failed to apply candidate: {e!r}',
            )

    async def _flush_candidates(self) -> None:
        candidates, self._pending_candidates = self._pending_candidates, []
        for payload in candidates:
            await self._apply_candidate(payload)

    async def _wait_for_ice_gathering(self) -> None:
        if self._trickle or self._transport.iceGatheringState == 'complete':
            return
        try:
            await asyncio.wait_for(
                self._gathering_complete.wait(),
                self._ice_gathering_timeout,
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                f'{self._log_prefix}: ICE gathering did not complete within '
                f'{self._ice_gathering_timeout}s, continuing with the '
                'candidates gathered so far',
            )

    def _local_description_payload(self) -> dict[str, str]:
        description = self._transport.localDescription
        if description is None:
            raise PeerSessionError(
                f'{self._log_prefix}: transport has no local description.',
            )
        return description_to_message(description)

    def _arm_handshake_timer(self) -> None:
        if self._handshake_timer is not None or self._connected_once:
            return
        self._handshake_timer = ScheduledTask(
            self._negotiation_timeout,
            self._on_handshake_timeout,
            name=f'peer-session-handshake-{self._local_peer_id}',
        )

    async def _on_handshake_timeout(self) -> None:
        if self._connected_once or self._state.terminal:
            return
        await self._fail(
            NegotiationTimeoutError(
                'Data channel did not open within '
                f'{self._negotiation_timeout}s of applying the remote '
                'description.',
            ),
        )

    def _attach_channel(self, channel: DataChannel) -> None:
        self._channel = channel
        channel.on('open', self._on_channel_open)
        channel.on('message', self._on_channel_message)
        channel.on('close', self._on_channel_close)
        channel.on('error', self._on_channel_error)
        if channel.readyState == 'open':
            self._on_channel_open()

    def _on_channel_open(self) -> None:
        if self._connected_once or self._state.terminal:
            return
        self._connected_once = True
        self._state = SessionState.CONNECTED
        self._settled.set()
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
        self._logger.info(f'{self._log_prefix}: data channel open')
        self._events.emit(SessionEvent.CONNECT)

    def _on_channel_message(self, data: bytes | str) -> None:
        self._events.emit(SessionEvent.DATA, data)

    def _on_channel_close(self) -> None:
        if not self._state.terminal:
            self._logger.info(f'{self._log_prefix}: data channel closed')
            spawn_logged_task(self.close)

    def _on_channel_error(self, error: Any = None) -> None:
        if not self._state.terminal:
            spawn_logged_task(
                self._fail,
                NegotiationError(f'Data channel error: {error!r}'),
            )

    def _on_datachannel(self, channel: DataChannel) -> None:
        if self._initiator or self._channel is not None:
            self._logger.warning(
                f'{self._log_prefix}: ignoring unexpected data channel '
                f'{channel.label!r}',
            )
            return
        self._logger.debug(
            f'{self._log_prefix}: received data channel {channel.label!r}',
        )
        self._attach_channel(channel)

    def _on_ice_gathering_state_change(self) -> None:
        if self._transport.iceGatheringState == 'complete':
            self._gathering_complete.set()

    def _on_ice_candidate(self, candidate: Any = None) -> None:
        if candidate is None or self._state.terminal:
            return
        self._events.emit(
            SessionEvent.SIGNAL,
            {
                'type': 'candidate',
                'candidate': candidate_to_message(candidate),
            },
        )

    def _on_connection_state_change(self) -> None:
        state = self._transport.connectionState
        self._logger.debug(f'{self._log_prefix}: transport state {state}')
        if self._state.terminal:
            return
        if state == 'failed':
            spawn_logged_task(
                self._fail,
                NegotiationError('Transport connection failed.'),
            )
        elif state == 'closed':
            spawn_logged_task(self.close)
