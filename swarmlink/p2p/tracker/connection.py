"""Connection to a single WebTorrent-style tracker."""
from __future__ import annotations

import asyncio
import inspect
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import WebSocketException
from websockets.protocol import State

from swarmlink.p2p.tracker.exceptions import TrackerDisconnectedError
from swarmlink.p2p.tracker.exceptions import TrackerMessageDecodeError
from swarmlink.p2p.tracker.exceptions import TrackerMessageEncodeError
from swarmlink.p2p.tracker.exceptions import TrackerUnreachableError
from swarmlink.p2p.tracker.messages import decode_tracker_message
from swarmlink.p2p.tracker.messages import encode_tracker_message
from swarmlink.p2p.tracker.messages import TrackerMessage
from swarmlink.p2p.tracker.messages import TrackerRequest
from swarmlink.utils.tasks import cancel_and_wait
from swarmlink.utils.tasks import spawn_logged_task

MessageHandler = Callable[
    ['TrackerConnection', TrackerMessage],
    Union[Awaitable[None], None],
]
CloseHandler = Callable[
    ['TrackerConnection', TrackerDisconnectedError],
    Union[Awaitable[None], None],
]
AnnounceCallback = Callable[['TrackerConnection'], Awaitable[None]]


class TrackerConnection:
    """Websocket connection to one tracker and its announce schedule.

    Each connection owns two optional background tasks: a listener
    which decodes incoming frames and passes them to a handler, and an
    announcer which invokes a callback on a schedule that backs off
    geometrically. After `k` scheduled announces the interval is
    `min(announce_interval * backoff_multiplier**k, max_announce_interval)`.

    Tip:
        This class can be used as an async context manager!
        ```python
        from swarmlink.p2p.tracker.connection import TrackerConnection

        async with TrackerConnection('ws://localhost:8000') as tracker:
            await tracker.send(...)
        ```

    Args:
        url: Address of the tracker. Must start with `ws://` or `wss://`.
        announce_interval: Initial seconds between scheduled announces.
        max_announce_interval: Upper bound on the announce interval.
        backoff_multiplier: Factor the interval grows by after each
            scheduled announce.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A
            TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        verify_certificate: Verify the tracker's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.
        logger: Logger to use instead of the module logger.

    Raises:
        ValueError: If `url` does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        url: str,
        *,
        announce_interval: float = 5.0,
        max_announce_interval: float = 120.0,
        backoff_multiplier: float = 1.1,
        ssl_context: ssl.SSLContext | None = None,
        verify_certificate: bool = True,
        logger: logging.Logger | logging.LoggerAdapter[Any] | None = None,
    ) -> None:
        if not (url.startswith('ws://') or url.startswith('wss://')):
            raise ValueError(
                f'Tracker URL must start with ws:// or wss://. Got {url}.',
            )

        self._url = url
        self._initial_interval = announce_interval
        self._interval = announce_interval
        self._max_interval = max_announce_interval
        self._backoff_multiplier = backoff_multiplier
        self._announce_count = 0

        if self._url.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._logger = (
            logging.getLogger(__name__) if logger is None else logger
        )

        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._announce_task: asyncio.Task[None] | None = None
        self._closed = False

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(url={self._url!r})'

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._url}]'

    @property
    def url(self) -> str:
        """Address of the tracker."""
        return self._url

    @property
    def interval(self) -> float:
        """Current seconds between scheduled announces."""
        return self._interval

    @property
    def announce_count(self) -> int:
        """Number of scheduled announces recorded."""
        return self._announce_count

    @property
    def connected(self) -> bool:
        """Websocket connection to the tracker is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def closed(self) -> bool:
        """The connection was closed locally."""
        return self._closed

    async def connect(self, timeout: float = 5.0) -> None:
        """Open the websocket connection.

        Note:
            This method is a no-op if a connection is already established.

        Args:
            timeout: Seconds to wait on the opening handshake.

        Raises:
            TrackerUnreachableError: If the tracker could not be connected
                to within `timeout`.
        """
        async with self._connect_lock:
            if self.connected:
                return

            try:
                self._websocket = await websocket_connect(
                    self._url,
                    open_timeout=timeout,
                    ssl=self._ssl_context,
                )
            except (
                OSError,
                asyncio.TimeoutError,
                WebSocketException,
            ) as e:
                raise TrackerUnreachableError(
                    f'Failed to connect to tracker at {self._url}: {e!r}',
                ) from e

            self._closed = False
            self._logger.info(f'{self._log_prefix}: connected to tracker')

    def record_announce(self) -> float:
        """Record a scheduled announce and grow the interval.

        Returns:
            The new interval.
        """
        self._announce_count += 1
        self._interval = min(
            self._interval * self._backoff_multiplier,
            self._max_interval,
        )
        return self._interval

    def reset_interval(self) -> None:
        """Reset the announce interval and count to the initial values."""
        self._interval = self._initial_interval
        self._announce_count = 0

    async def send(self, message: TrackerRequest) -> bool:
        """Send a request to the tracker.

        Args:
            message: Request to encode and send.

        Returns:
            `True` if the frame was written or `False` if the connection \
            is not open.

        Raises:
            TrackerMessageEncodeError: If the request cannot be encoded.
        """
        frame = encode_tracker_message(message)
        if not self.connected:
            self._logger.debug(
                f'{self._log_prefix}: dropping {type(message).__name__} '
                'because the connection is not open',
            )
            return False

        assert self._websocket is not None
        try:
            await self._websocket.send(frame)
        except ConnectionClosed:
            self._logger.debug(
                f'{self._log_prefix}: connection closed while sending '
                f'{type(message).__name__}',
            )
            return False
        return True

    def listen(
        self,
        handler: MessageHandler,
        on_close: CloseHandler | None = None,
    ) -> None:
        """Start receiving frames in a background task.

        Each decoded message is passed to `handler(self, message)`.
        Malformed frames are logged and skipped, and exceptions raised by the
        handler are logged without stopping the listener. When the
        connection is lost, `on_close(self, error)` is invoked unless the
        connection was closed locally with
        [`close()`][swarmlink.p2p.tracker.connection.TrackerConnection.close].

        Raises:
            TrackerDisconnectedError: If the connection is not open.
        """
        if self._websocket is None or not self.connected:
            raise TrackerDisconnectedError(
                f'Connection to tracker at {self._url} is not open.',
            )
        if self._listen_task is not None and not self._listen_task.done():
            return
        self._listen_task = spawn_logged_task(
            self._listen,
            self._websocket,
            handler,
            on_close,
        )
        self._listen_task.set_name(f'tracker-listen-{self._url}')

    async def _listen(
        self,
        websocket: ClientConnection,
        handler: MessageHandler,
        on_close: CloseHandler | None,
    ) -> None:
        reason: BaseException | None = None
        try:
            async for frame in websocket:
                try:
                    message = decode_tracker_message(frame)
                except TrackerMessageDecodeError as e:
                    self._logger.warning(
                        f'{self._log_prefix}: dropping malformed frame: {e}',
                    )
                    continue

                try:
                    result = handler(self, message)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._logger.exception(
                        f'{self._log_prefix}: error handling '
                        f'{type(message).__name__}',
                    )
        except ConnectionClosed as e:
            reason = e

        if self._closed:
            return

        self._logger.warning(
            f'{self._log_prefix}: connection to tracker lost',
        )
        if on_close is not None:
            error = TrackerDisconnectedError(
                f'Connection to tracker at {self._url} was lost: {reason!r}',
            )
            result = on_close(self, error)
            if inspect.isawaitable(result):
                await result

    def start_announcing(self, announce: AnnounceCallback) -> None:
        """Start the announce schedule in a background task.

        The task sleeps for the current interval, invokes
        `await announce(self)`, and then calls
        [`record_announce()`][swarmlink.p2p.tracker.connection.TrackerConnection.record_announce],
        repeating until the connection is closed. Exceptions raised by
        `announce` are logged and the schedule continues.
        """
        if self._announce_task is not None and not self._announce_task.done():
            return
        self._announce_task = spawn_logged_task(self._announce_loop, announce)
        self._announce_task.set_name(f'tracker-announce-{self._url}')

    async def _announce_loop(self, announce: AnnounceCallback) -> None:
        while not self._closed:
            await asyncio.sleep(self._interval)
            if not self.connected:
                break
            try:
                await announce(self)
            except (TrackerMessageEncodeError, TrackerDisconnectedError) as e:
                self._logger.warning(f'{self._log_prefix}: {e}')
            except Exception:
                self._logger.exception(
                    f'{self._log_prefix}: scheduled announce failed',
                )
            interval = self.record_announce()
            self._logger.debug(
                f'{self._log_prefix}: next announce in {interval:.2f}s '
                f'(count={self._announce_count})',
            )

    async def close(self) -> None:
        """Stop background tasks and close the connection.

        This method is idempotent.
        """
        if self._closed and self._websocket is None:
            return
        self._closed = True

        await cancel_and_wait(self._announce_task)
        await cancel_and_wait(self._listen_task)

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
            self._logger.info(f'{self._log_prefix}: closed connection')
