"""Debounced recompile trigger: Idle -> Debouncing -> Compiling -> Idle"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum


LOGGER = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.15


class NotifierState(str, Enum):
    idle       = "idle"
    debouncing = "debouncing"
    compiling  = "compiling"


class ChangeNotifier:
    """Coalesces bursts of change signals into one call of on_change.

    A signal while Debouncing pushes the wakeup back by a full window. A signal
    while Compiling is remembered and starts a fresh debounce once the running
    compile finishes. signal() must run on the loop thread; watcher threads use
    signal_threadsafe().
    """

    def __init__(
        self,
        on_change: Callable[[], Awaitable[None]],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        loop: asyncio.AbstractEventLoop | None = None,
        ):
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self.loop = loop or asyncio.get_running_loop()
        self.state = NotifierState.idle
        self.compile_count = 0
        self._wakeup: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._changed_while_compiling = False

    def signal(self) -> None:
        if self.state == NotifierState.compiling:
            self._changed_while_compiling = True
            return
        if self._wakeup is not None:
            self._wakeup.cancel()
        self.state = NotifierState.debouncing
        self._wakeup = self.loop.call_later(self.debounce_seconds, self._wake)

    def signal_threadsafe(self) -> None:
        self.loop.call_soon_threadsafe(self.signal)

    def _wake(self) -> None:
        self._wakeup = None
        self.state = NotifierState.compiling
        self.compile_count += 1
        self._task = self.loop.create_task(self._compile())

    async def _compile(self) -> None:
        try:
            await self.on_change()
        except Exception:
            LOGGER.exception("recompile after file change failed")
        finally:
            self.state = NotifierState.idle
            if self._changed_while_compiling:
                self._changed_while_compiling = False
                self.signal()

    async def wait_idle(self) -> None:
        """Wait until no wakeup is pending and no compile is running."""
        while self.state != NotifierState.idle:
            if self._task is not None and self.state == NotifierState.compiling:
                await asyncio.shield(self._task)
            else:
                await asyncio.sleep(self.debounce_seconds / 2 or 0.01)

    def cancel(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.state = NotifierState.idle
