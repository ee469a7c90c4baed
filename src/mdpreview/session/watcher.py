"""File watcher feeding a session's change notifier"""

import logging
import os
from collections.abc import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


LOGGER = logging.getLogger(__name__)


class SourceChangeHandler(FileSystemEventHandler):
    """Forwards events that touch one file; editors often save by rename, so dest_path counts too."""

    def __init__(self, source_path: str, on_change: Callable[[], None]):
        super().__init__()
        self.source_path = os.path.realpath(source_path)
        self.on_change = on_change

    def _touches_source(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.realpath(os.fsdecode(p)) == self.source_path for p in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._touches_source(event):
            self.on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._touches_source(event):
            self.on_change()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._touches_source(event):
            self.on_change()


class SourceWatcher:
    """One observer per session, watching the source file's directory.

    If arming fails the watcher retries once; after a second failure it is
    marked degraded and the session relies on manual refresh.
    """

    def __init__(self, source_path: str, on_change: Callable[[], None]):
        self.source_path = os.path.realpath(source_path)
        self.handler = SourceChangeHandler(self.source_path, on_change)
        self.observer: Observer | None = None
        self.degraded = False

    def start(self) -> bool:
        """Arm the observer, with one re-arm attempt. Returns False when degraded."""
        for attempt in (1, 2):
            try:
                self._arm()
                self.degraded = False
                return True
            except OSError as e:
                LOGGER.warning("watcher for %s failed to arm (attempt %d): %s", self.source_path, attempt, e)
                self._disarm()
        self.degraded = True
        LOGGER.error("live sync degraded for %s; manual refresh only", self.source_path)
        return False

    def ensure_alive(self) -> bool:
        """Re-arm if the observer thread died since the last check."""
        if self.observer is not None and self.observer.is_alive():
            return True
        LOGGER.warning("watcher for %s is not running, re-arming", self.source_path)
        self._disarm()
        return self.start()

    def _arm(self) -> None:
        observer = Observer()
        observer.schedule(self.handler, os.path.dirname(self.source_path), recursive=False)
        observer.start()
        self.observer = observer

    def _disarm(self) -> None:
        observer = self.observer
        self.observer = None
        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=2.0)
            except RuntimeError:
                # stop() on an observer that never started
                pass

    def stop(self) -> None:
        self._disarm()
