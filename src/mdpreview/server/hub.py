"""Viewer registry with one ordered, bounded delivery queue per connection"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from mdpreview.core.models import OutputFormat, RenderOutput
from mdpreview.errors import SyncError
from mdpreview.server.events import PatchEvent, PatchKind, full_event


LOGGER = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


@dataclass(eq=False)
class ViewerConnection:
    """A browser-side viewer bound to one session's push channel."""
    connection_id: str
    session_id: str
    format: OutputFormat
    queue: asyncio.Queue = field(repr=False)
    last_acked_version: int = 0     # last version handed to this viewer's queue


class ViewerHub:
    """Fans patches out to viewers without letting any one viewer block the rest.

    Delivery per viewer is strictly ordered by version. A patch that does not
    directly follow the viewer's last version, or a queue overflow, turns into
    a full resync from the latest output instead.
    """

    def __init__(self, queue_size: int = 64):
        self.queue_size = queue_size
        self._viewers: dict[str, dict[str, ViewerConnection]] = {}
        self._ids = itertools.count(1)
        self.stats = {"connected": 0, "resyncs": 0, "events_sent": 0}

    def connect(self, session_id: str, fmt: OutputFormat, snapshot: RenderOutput | None) -> ViewerConnection:
        """Register a viewer; it starts with a full document for the current version."""
        conn = ViewerConnection(
            connection_id=f"viewer_{next(self._ids)}",
            session_id=session_id,
            format=OutputFormat(fmt),
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._viewers.setdefault(session_id, {})[conn.connection_id] = conn
        self.stats["connected"] += 1
        if snapshot is not None:
            self._resync(conn, snapshot)
        LOGGER.info("viewer %s connected to session %s (%s)", conn.connection_id, session_id, conn.format.value)
        return conn

    def disconnect(self, conn: ViewerConnection) -> None:
        viewers = self._viewers.get(conn.session_id, {})
        if viewers.pop(conn.connection_id, None) is not None:
            LOGGER.info("viewer %s disconnected from session %s", conn.connection_id, conn.session_id)

    def viewers(self, session_id: str) -> list[ViewerConnection]:
        return list(self._viewers.get(session_id, {}).values())

    def viewer_formats(self, session_id: str) -> set[OutputFormat]:
        return {c.format for c in self.viewers(session_id)}

    def publish(self, session_id: str, event: PatchEvent, snapshot: RenderOutput | None) -> None:
        """Deliver event to every viewer of its format; snapshot backs any resync."""
        for conn in self.viewers(session_id):
            if conn.format != event.format:
                continue
            try:
                self._deliver(conn, event)
            except SyncError as e:
                LOGGER.info("viewer %s resyncing: %s", conn.connection_id, e)
                if snapshot is not None:
                    self._resync(conn, snapshot)

    def _deliver(self, conn: ViewerConnection, event: PatchEvent) -> None:
        if event.patch_kind == PatchKind.banner:
            self._put(conn, event)
            return
        if event.document_version <= conn.last_acked_version:
            return
        if event.patch_kind == PatchKind.blocks and event.document_version != conn.last_acked_version + 1:
            raise SyncError(f"missed versions after {conn.last_acked_version}")
        self._put(conn, event)
        conn.last_acked_version = event.document_version

    @staticmethod
    def _put(conn: ViewerConnection, event: PatchEvent) -> None:
        try:
            conn.queue.put_nowait(event)
        except asyncio.QueueFull as e:
            raise SyncError(f"{conn.queue.maxsize} undelivered events") from e

    def _resync(self, conn: ViewerConnection, snapshot: RenderOutput) -> None:
        while not conn.queue.empty():
            conn.queue.get_nowait()
        conn.queue.put_nowait(full_event(snapshot))
        conn.last_acked_version = snapshot.document_version
        self.stats["resyncs"] += 1

    async def stream(self, conn: ViewerConnection, keepalive: float = KEEPALIVE_SECONDS) -> AsyncIterator[str]:
        """Server-Sent Events for one viewer; unregisters it when the client goes away."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(conn.queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                self.stats["events_sent"] += 1
                yield event.to_sse()
        finally:
            self.disconnect(conn)
