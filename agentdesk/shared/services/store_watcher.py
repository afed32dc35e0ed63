"""Recursive filesystem watch on the transcript store, using watchdog.

Every create/modify/delete/move below the root invokes the callback
from the observer thread. No debouncing happens here; callers that
broadcast (the HTTP server) coalesce bursts themselves.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class _StoreEventHandler(FileSystemEventHandler):
    """Forwards every change to the watcher callback."""

    def __init__(self, callback: Callable[[], None]):
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Error in session store change callback")


class StoreWatcher:
    """Lifecycle: ``start()`` -> callbacks on change -> ``stop()``."""

    def __init__(self, root: Path, callback: Callable[[], None]):
        self.root = Path(root)
        self._callback = callback
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> bool:
        """Begin watching. False when the root cannot be watched."""
        if self._observer is not None:
            return True
        observer = Observer()
        try:
            observer.schedule(
                _StoreEventHandler(self._callback), str(self.root), recursive=True,
            )
            observer.start()
        except OSError as exc:
            logger.warning("Cannot watch session store %s: %s", self.root, exc)
            return False
        self._observer = observer
        logger.info("Watching session store %s", self.root)
        return True

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        logger.info("Stopped watching session store %s", self.root)
