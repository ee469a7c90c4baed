"""Coordinator: owns the registry, viewer hub, export pipeline and control dispatch"""

import asyncio
import logging
import webbrowser

from mdpreview.config import Settings
from mdpreview.control.channel import ControlChannel, Notification
from mdpreview.control.dispatcher import Dispatcher
from mdpreview.export.pipeline import ExportMode, ExportPipeline, Toolchain
from mdpreview.server.hub import ViewerHub
from mdpreview.session.registry import Session, SessionRegistry


LOGGER = logging.getLogger(__name__)


def open_browser(url: str, browser: str = "") -> bool:
    """Open url with the configured browser command, else the system default."""
    try:
        if browser:
            return webbrowser.get(f"{browser} %s").open(url)
        return webbrowser.open(url)
    except webbrowser.Error as e:
        LOGGER.error("failed to start browser %r: %s", browser or "default", e)
        return False


class Previewer:
    def __init__(self, settings: Settings, watch: bool = True):
        self.settings = settings
        self.hub = ViewerHub(queue_size=settings.viewer_queue_size)
        self.registry = SessionRegistry(
            self.hub,
            base_url=settings.base_url,
            debounce_seconds=settings.debounce_ms / 1000,
            watch=watch,
        )
        self.exports = ExportPipeline(
            self.registry,
            Toolchain(settings.latex_engine, settings.svg_converter, settings.export_timeout),
        )
        self.dispatcher = Dispatcher({
            "preview":    self.on_preview,
            "previewAlt": self.on_preview_alt,
            "export":     self.on_export,
        })
        self.last_session_id: str | None = None

    async def open(self, path: str, theme: str) -> Session:
        session = await self.registry.open_session(path, theme)
        self.last_session_id = session.session_id
        return session

    async def on_preview(self, note: Notification) -> None:
        await self.preview(note.path, self.settings.theme)

    async def on_preview_alt(self, note: Notification) -> None:
        await self.preview(note.path, self.settings.alt_theme)

    async def preview(self, path: str, theme: str) -> None:
        """Open (or refresh) the session for path and point a browser at it."""
        session = await self.open(path, theme)
        url = self.registry.viewer_address(session.session_id)
        LOGGER.info("preview %s at %s", session.source_path, url)
        if self.settings.open_browser:
            await asyncio.to_thread(open_browser, url, self.settings.browser)

    async def on_export(self, note: Notification) -> None:
        mode = ExportMode(note.params[1]) if len(note.params) > 1 else ExportMode.source
        # exports never change the theme a preview chose
        session = await self.registry.open_session(note.path, self.settings.theme, adopt_theme=False)
        self.exports.submit_export(session.session_id, mode)

    async def listen(self, channel: ControlChannel) -> None:
        await self.dispatcher.serve(channel)

    async def shutdown(self) -> None:
        await self.registry.close_all()
