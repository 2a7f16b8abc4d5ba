"""Safely spawn asyncio background tasks and cancellable timers."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception.
    """
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that raises SystemExit on task exception."""
    if (
        not task.cancelled()
        and task.exception() is not None
        and not isinstance(task.exception(), SafeTaskExitError)
    ):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )
        raise SystemExit(1)


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that logs, but does not raise, a task exception."""
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            f'Exception in task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task and sets the done
    callback to [`exit_on_error()`][swarmlink.utils.tasks.exit_on_error].
    This is "safe" because it will ensure exceptions inside the task get logged
    and cause the program to exit. Otherwise, background tasks that are not
    awaited may not have their exceptions raised such that programs hang with
    no notice of the exception that caused the hang.

    Tasks can raise [`SafeTaskExit`][swarmlink.utils.tasks.SafeTaskExitError]
    to signal the task is finished but should not cause a system exit.

    Source: https://stackoverflow.com/questions/62588076

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    task.add_done_callback(exit_on_error)
    return task


def spawn_logged_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and log its failure.

    Unlike
    [`spawn_guarded_background_task()`][swarmlink.utils.tasks.spawn_guarded_background_task],
    an exception in the task is logged with its traceback but does not
    exit the program. This is used for per-peer work where one failing peer
    must not bring down discovery of the others.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    task.add_done_callback(log_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    Does nothing if `task` is `None`, already done, or is the task
    currently executing (a task cannot wait on itself).
    """
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, SafeTaskExitError):
        pass


class ScheduledTask:
    """Run a coroutine function once after a delay.

    The timer belongs to whichever object created it and that object is
    responsible for calling [`cancel()`][swarmlink.utils.tasks.ScheduledTask.cancel]
    when it is destroyed so the callback never runs against stale state.
    Cancelling is idempotent and is a no-op once the callback has started,
    which allows the callback to tear down its own owner.

    Example:
        ```python
        from swarmlink.utils.tasks import ScheduledTask

        async def expire(offer_id: str) -> None:
            ...

        timer = ScheduledTask(10, expire, offer_id, name='offer-expiry')
        ...
        timer.cancel()
        ```

    Args:
        delay: Seconds to wait before invoking the callback.
        coro: Coroutine function to invoke.
        args: Positional arguments for the coroutine.
        name: Optional name of the underlying asyncio task.
        kwargs: Keyword arguments for the coroutine.
    """

    def __init__(
        self,
        delay: float,
        coro: Callable[..., Coroutine[Any, Any, None]],
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._delay = delay
        self._fired = False
        self._task = spawn_logged_task(self._run, coro, *args, **kwargs)
        if name is not None:
            self._task.set_name(name)

    async def _run(
        self,
        coro: Callable[..., Coroutine[Any, Any, None]],
        *args: Any,
        **kwargs: Any,
    ) -> None:
        await asyncio.sleep(self._delay)
        self._fired = True
        await coro(*args, **kwargs)

    @property
    def delay(self) -> float:
        """Seconds between creation and invocation."""
        return self._delay

    @property
    def fired(self) -> bool:
        """The delay elapsed and the callback was invoked."""
        return self._fired

    @property
    def cancelled(self) -> bool:
        """The timer was cancelled before it fired."""
        return self._task.cancelled()

    def done(self) -> bool:
        """Check if the timer has finished, fired or cancelled."""
        return self._task.done()

    def cancel(self) -> None:
        """Cancel the timer if it has not fired yet."""
        if not self._fired and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the timer to fire or be cancelled."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass
