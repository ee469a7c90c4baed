"""Notification dispatch with per-path coalescing"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping

from mdpreview.control.channel import ControlChannel, Notification
from mdpreview.errors import PreviewError


LOGGER = logging.getLogger(__name__)

Handler = Callable[[Notification], Awaitable[None]]

# notifications in the same lane for the same path supersede each other
LANES = {
    "preview":    "preview",
    "previewAlt": "preview",
    "export":     "export",
}


class Dispatcher:
    """Routes notifications to handlers; never lets one notification kill the listener.

    While a handler runs for (lane, path), newer notifications for the same key
    replace each other, so only the latest one runs next.
    """

    def __init__(self, handlers: Mapping[str, Handler]):
        self.handlers = dict(handlers)
        self._latest: dict[tuple[str, str], Notification] = {}
        self._workers: dict[tuple[str, str], asyncio.Task] = {}

    def submit(self, note: Notification) -> None:
        if note.method not in self.handlers:
            LOGGER.warning("unknown notification %r ignored", note.method)
            return
        if note.path is None:
            LOGGER.warning("notification %r without a path ignored", note.method)
            return
        key = (LANES.get(note.method, note.method), note.path)
        if key in self._latest:
            LOGGER.debug("%s superseded by %s for %s", self._latest[key].method, note.method, note.path)
        self._latest[key] = note
        if key not in self._workers:
            self._workers[key] = asyncio.get_running_loop().create_task(self._drain(key))

    async def _drain(self, key: tuple[str, str]) -> None:
        try:
            while key in self._latest:
                note = self._latest.pop(key)
                try:
                    await self.handlers[note.method](note)
                except (PreviewError, OSError, KeyError, ValueError) as e:
                    LOGGER.error("%s %s failed: %s", note.method, note.path, e)
                except Exception:
                    LOGGER.exception("%s %s failed", note.method, note.path)
        finally:
            self._workers.pop(key, None)

    async def wait_idle(self) -> None:
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def serve(self, channel: ControlChannel) -> None:
        """Consume a channel until it closes."""
        async for note in channel.notifications():
            self.submit(note)
