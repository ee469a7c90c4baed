"""Session registry: one live render session per source file"""

import asyncio
import logging
import os
from urllib.parse import quote

from mdpreview.core.compiler import build_document, collect_images, read_source, render_document
from mdpreview.core.models import Document, OutputFormat, RenderOutput
from mdpreview.core.utils.diff import diff_outputs, diff_summary
from mdpreview.core.utils.hashing import sha256
from mdpreview.errors import PreviewError
from mdpreview.server.events import banner_event, blocks_event, full_event
from mdpreview.server.hub import ViewerHub
from mdpreview.session.notifier import ChangeNotifier
from mdpreview.session.watcher import SourceWatcher


LOGGER = logging.getLogger(__name__)


def session_id_for(path: str) -> str:
    """Stable id derived from the canonical source path."""
    return sha256(path)[:12]


class Session:
    """Live binding between one source file, its current render state and its viewers.

    Compiles are serialized by a per-session lock. Each request takes a ticket;
    a result whose ticket has been superseded by a later request is discarded,
    so documentVersion only ever moves forward and each version is compiled once.
    """

    def __init__(self, session_id: str, source_path: str, theme: str, hub: ViewerHub):
        self.session_id = session_id
        self.source_path = source_path
        self.theme = theme
        self.hub = hub
        self.document: Document | None = None
        self.outputs: dict[OutputFormat, RenderOutput] = {}
        self.version = 0
        self.watcher: SourceWatcher | None = None
        self.notifier: ChangeNotifier | None = None
        self.last_error: str | None = None
        self._lock = asyncio.Lock()
        self._ticket = 0
        self._pending: set[asyncio.Task] = set()

    @property
    def degraded(self) -> bool:
        return self.watcher is not None and self.watcher.degraded

    def asset_url(self, path: str) -> str:
        return f"/session/{self.session_id}/file?path={quote(path)}"

    def asset_paths(self) -> set[str]:
        if self.document is None:
            return set()
        return {img.resolved for img in collect_images(self.document.tree) if img.resolved}

    def output(self, fmt: OutputFormat) -> RenderOutput | None:
        """Latest output for fmt, rendering it from the current document if this version lacks it."""
        fmt = OutputFormat(fmt)
        current = self.outputs.get(fmt)
        if (current is None or current.document_version != self.version) and self.document is not None:
            current = render_document(self.document, fmt, self.version, self.asset_url)
            self.outputs[fmt] = current
        return current

    def formats(self) -> set[OutputFormat]:
        return {OutputFormat.html} | self.hub.viewer_formats(self.session_id)

    async def initial_compile(self) -> None:
        """First parse+compile; errors propagate so the session is never registered half-built."""
        text = await asyncio.to_thread(read_source, self.source_path)
        document = await asyncio.to_thread(build_document, text, self.theme, self.source_path)
        html = render_document(document, OutputFormat.html, 1, self.asset_url)
        self.document, self.version, self.outputs = document, 1, {OutputFormat.html: html}

    async def recompile(self) -> RenderOutput | None:
        """Compile current content and theme; publish diffs. Returns the new HTML output or None."""
        self._ticket += 1
        ticket = self._ticket
        async with self._lock:
            if ticket != self._ticket:
                return None
            theme = self.theme
            try:
                text = await asyncio.to_thread(read_source, self.source_path)
                document = await asyncio.to_thread(build_document, text, theme, self.source_path)
                version = self.version + 1
                outputs = {
                    fmt: render_document(document, fmt, version, self.asset_url)
                    for fmt in sorted(self.formats(), key=lambda f: f.value)
                }
            except PreviewError as e:
                LOGGER.warning("recompile of %s failed, keeping version %d: %s", self.source_path, self.version, e)
                self.last_error = str(e)
                for fmt in self.formats():
                    self.hub.publish(self.session_id, banner_event(self.version, str(e), fmt), self.outputs.get(fmt))
                return None

            if ticket != self._ticket:
                LOGGER.debug("discarding superseded compile of %s", self.source_path)
                return None

            previous = self.outputs
            self.document, self.version, self.outputs = document, version, outputs
            self.last_error = None
            for fmt, new in outputs.items():
                old = previous.get(fmt)
                ops = diff_outputs(old, new)
                if ops is None:
                    event = full_event(new)
                else:
                    event = blocks_event(new, ops)
                    LOGGER.debug("session %s v%d %s: %s", self.session_id, version, fmt.value, diff_summary(old.blocks, new.blocks))
                self.hub.publish(self.session_id, event, new)
            return outputs.get(OutputFormat.html)

    def request_recompile(self) -> asyncio.Task:
        """Schedule a recompile without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.recompile())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self.notifier is not None:
            await self.notifier.wait_idle()

    def start_watching(self, debounce_seconds: float) -> None:
        self.notifier = ChangeNotifier(self.recompile, debounce_seconds)
        self.watcher = SourceWatcher(self.source_path, self.notifier.signal_threadsafe)
        self.watcher.start()

    def close(self) -> None:
        if self.notifier is not None:
            self.notifier.cancel()
        if self.watcher is not None:
            self.watcher.stop()
        for task in list(self._pending):
            task.cancel()


class SessionRegistry:
    """The only cross-session mutable state.

    Creation is serialized by a lock; lookups read the table directly.
    """

    def __init__(
        self,
        hub: ViewerHub,
        base_url: str = "",
        debounce_seconds: float = 0.15,
        watch: bool = True,
        ):
        self.hub = hub
        self.base_url = base_url
        self.debounce_seconds = debounce_seconds
        self.watch = watch
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def canonical(path: str | os.PathLike) -> str:
        return os.path.realpath(os.path.expanduser(os.fspath(path)))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def find(self, path: str | os.PathLike) -> Session | None:
        return self._sessions.get(session_id_for(self.canonical(path)))

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def open_session(self, path: str | os.PathLike, theme: str, adopt_theme: bool = True) -> Session:
        """Return the session for path, creating and compiling it on first use.

        An existing session takes the new theme and recompiles in the background,
        unless adopt_theme is False; theme then only applies to a new session.
        Raises SourceUnreadableError (an OSError) when path cannot be read.
        """
        source_path = self.canonical(path)
        session_id = session_id_for(source_path)

        existing = self._sessions.get(session_id)
        if existing is not None:
            self._reuse(existing, theme if adopt_theme else None)
            return existing

        fresh = Session(session_id, source_path, theme, self.hub)
        await fresh.initial_compile()

        async with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                self._reuse(existing, theme if adopt_theme else None)
                return existing
            self._sessions[session_id] = fresh

        if self.watch:
            fresh.start_watching(self.debounce_seconds)
        LOGGER.info("session %s opened for %s (theme %s)", session_id, source_path, theme)
        return fresh

    def _reuse(self, session: Session, theme: str | None) -> None:
        if session.watcher is not None:
            session.watcher.ensure_alive()
        if theme is not None:
            session.theme = theme
            session.request_recompile()

    def viewer_address(self, session_id: str) -> str:
        """URL the editor should point a browser at for this session."""
        if session_id not in self._sessions:
            raise KeyError(session_id)
        return f"{self.base_url}/session/{session_id}"

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for s in sessions:
            s.close()
