"""Typed events and handler tables for sessions and discovery clients."""
from __future__ import annotations

import enum
import inspect
import logging
from typing import Any
from typing import Callable
from typing import Generic
from typing import TypeVar

from swarmlink.utils.tasks import spawn_logged_task

EventT = TypeVar('EventT', bound=enum.Enum)
Handler = Callable[..., Any]


class SessionEvent(enum.Enum):
    """Events emitted by a [`PeerSession`][swarmlink.p2p.session.PeerSession].

    Attributes:
        SIGNAL: A signaling payload (`dict`) is ready for the remote peer.
        CONNECT: The data channel is open. Fires at most once.
        DATA: A message (`str` or `bytes`) was received from the peer.
        ERROR: Negotiation or the transport failed. Argument is the exception.
        CLOSE: The session was closed.
    """

    SIGNAL = 'signal'
    CONNECT = 'connect'
    DATA = 'data'
    ERROR = 'error'
    CLOSE = 'close'


class DiscoveryEvent(enum.Enum):
    """Events emitted by a discovery client.

    Attributes:
        READY: Startup finished and announcing began.
        CONNECTION: A new peer session is connected. Argument is the session.
        PEER_FAILED: A known peer's session failed. Arguments are the peer
            id and the exception.
        PEER_DISCONNECTED: A known peer's session closed. Argument is the
            peer id.
        UPDATE: A tracker reported swarm statistics. Argument is a `dict`
            with `complete` and `incomplete` counts.
        SCRAPE: A tracker answered a scrape. Argument is the raw frame.
        TRACKER_FAILURE: A tracker sent a failure reason. Argument is the
            reason string.
        ERROR: A tracker failed to connect or its connection was lost.
            Argument is the exception.
        CLOSED: Every tracker connection was lost.
    """

    READY = 'ready'
    CONNECTION = 'connection'
    PEER_FAILED = 'peer_failed'
    PEER_DISCONNECTED = 'peer_disconnected'
    UPDATE = 'update'
    SCRAPE = 'scrape'
    TRACKER_FAILURE = 'tracker_failure'
    ERROR = 'error'
    CLOSED = 'closed'


class EventDispatcher(Generic[EventT]):
    """Table of event handlers with a fault boundary around each handler.

    Handlers are invoked in registration order. An exception raised by one
    handler is logged and does not prevent the remaining handlers from
    running, nor does it propagate to the emitter. Handlers may be plain
    functions or coroutine functions; coroutines are run as background
    tasks whose failures are logged.

    Example:
        ```python
        from swarmlink.p2p.events import EventDispatcher
        from swarmlink.p2p.events import SessionEvent

        events: EventDispatcher[SessionEvent] = EventDispatcher()
        events.on(SessionEvent.DATA, print)
        events.emit(SessionEvent.DATA, 'hello')
        ```

    Args:
        logger: Logger used to report handler failures.
    """

    def __init__(
        self,
        logger: logging.Logger | logging.LoggerAdapter[Any] | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger(__name__)
        self._logger = logger
        self._handlers: dict[EventT, list[Handler]] = {}
        self._once: set[tuple[EventT, int]] = set()

    def on(self, event: EventT, handler: Handler) -> Handler:
        """Register a handler for an event.

        Returns:
            The handler so this method may be used as a decorator factory
            argument.
        """
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def once(self, event: EventT, handler: Handler) -> Handler:
        """Register a handler that is removed after its first invocation."""
        self.on(event, handler)
        self._once.add((event, id(handler)))
        return handler

    def off(self, event: EventT, handler: Handler | None = None) -> None:
        """Remove one handler, or all handlers when `handler` is `None`."""
        if handler is None:
            for removed in self._handlers.pop(event, []):
                self._once.discard((event, id(removed)))
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            if handler not in handlers:
                self._once.discard((event, id(handler)))

    def clear(self) -> None:
        """Remove every registered handler."""
        self._handlers.clear()
        self._once.clear()

    def handlers(self, event: EventT) -> tuple[Handler, ...]:
        """Get the handlers currently registered for an event."""
        return tuple(self._handlers.get(event, ()))

    def emit(self, event: EventT, *args: Any) -> int:
        """Invoke every handler registered for an event.

        Args:
            event: Event to emit.
            args: Positional arguments passed to each handler.

        Returns:
            Number of handlers invoked.
        """
        # Copy so handlers may register or remove handlers while running.
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            if (event, id(handler)) in self._once:
                self.off(event, handler)
            try:
                result = handler(*args)
            except Exception:
                self._logger.exception(
                    f'Unhandled exception in {event.name} handler '
                    f'{handler!r}',
                )
                continue
            if inspect.isawaitable(result):
                spawn_logged_task(_await, result)
        return len(handlers)


async def _await(awaitable: Any) -> None:
    await awaitable
