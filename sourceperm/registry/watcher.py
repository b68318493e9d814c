"""
Source folder watcher for live policy reload.
"""

import threading
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from sourceperm.config.settings import settings
from sourceperm.registry.events import SourceChangeFeed
from sourceperm.registry.file import CONFIG_FILE, GUIDE_FILE, PERMISSIONS_FILE, FileSourceRegistry
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)

WATCHED_FILES = (CONFIG_FILE, PERMISSIONS_FILE, GUIDE_FILE)


class SourceChangeHandler(FileSystemEventHandler):
    """Maps file events under <sources>/<slug>/ to slug callbacks.

    Bursts of events for one path are collapsed: the callback fires once,
    debounce seconds after the last event.
    """

    def __init__(self, watcher: "SourceFolderWatcher"):
        self.watcher = watcher
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return

        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)

        for raw_path in paths:
            self.dispatch_path(Path(str(raw_path)))

    def dispatch_path(self, file_path: Path) -> None:
        if file_path.name not in self.watcher.file_names:
            return

        slug = self.watcher.slug_for(file_path)
        if slug is None:
            return

        if self.watcher.debounce <= 0:
            self._fire(slug, file_path)
            return

        key = str(file_path)
        with self._lock:
            pending = self._timers.pop(key, None)
            if pending is not None:
                pending.cancel()
            timer = threading.Timer(self.watcher.debounce, self._fire, args=(slug, file_path))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def cancel_pending(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def _fire(self, slug: str, file_path: Path) -> None:
        with self._lock:
            self._timers.pop(str(file_path), None)
        try:
            self.watcher.on_change(slug, file_path)
        except Exception as e:
            logger.error(
                "source_change_handler_error",
                slug=slug,
                file_path=str(file_path),
                error=str(e),
                exc_info=True,
            )


class SourceFolderWatcher:
    """
    Watches a workspace's sources directory using watchdog.

    Calls on_change(slug, path) from the observer thread whenever a
    config.json, permissions.json or guide.md of a source changes.
    """

    def __init__(
        self,
        sources_dir: str | Path,
        on_change: Callable[[str, Path], None],
        debounce: float | None = None,
        file_names: tuple[str, ...] = WATCHED_FILES,
    ):
        self.sources_dir = Path(sources_dir)
        self.on_change = on_change
        self.debounce = debounce if debounce is not None else settings.watch_debounce
        self.file_names = file_names
        self.observer: Observer | None = None
        self._running = False
        self._handler: SourceChangeHandler | None = None

    def slug_for(self, file_path: Path) -> str | None:
        """Slug of the source folder containing file_path, if directly inside one."""
        try:
            relative = file_path.resolve().relative_to(self.sources_dir.resolve())
        except ValueError:
            return None
        if len(relative.parts) != 2:
            return None
        return relative.parts[0]

    def start(self) -> None:
        """Start watching for file changes."""
        if self._running and self.observer:
            logger.warning("source_watcher_already_running", sources_dir=str(self.sources_dir))
            return

        self.sources_dir.mkdir(parents=True, exist_ok=True)
        self._handler = SourceChangeHandler(self)
        self.observer = Observer()
        self.observer.schedule(
            self._handler, str(self.sources_dir), recursive=True
        )
        self.observer.start()
        self._running = True
        logger.info("source_watcher_started", sources_dir=str(self.sources_dir))

    def stop(self) -> None:
        """Stop watching for file changes."""
        if self.observer and self._running:
            self.observer.stop()
            self.observer.join()
            if self._handler is not None:
                self._handler.cancel_pending()
            self._running = False
            logger.info("source_watcher_stopped", sources_dir=str(self.sources_dir))

    def is_running(self) -> bool:
        return self._running


class WorkspaceSourceWatch:
    """
    Wires a folder watcher to a change feed.

    Every change rescans the workspace and publishes the full source list,
    tagged with the slug of the folder that changed, onto the feed's
    event loop.
    """

    def __init__(
        self,
        registry: FileSourceRegistry,
        workspace_id: str,
        feed: SourceChangeFeed,
        debounce: float | None = None,
    ):
        self.registry = registry
        self.workspace_id = workspace_id
        self.feed = feed
        self.watcher = SourceFolderWatcher(
            registry.sources_dir(workspace_id),
            on_change=self._handle_change,
            debounce=debounce,
        )

    def _handle_change(self, slug: str, file_path: Path) -> None:
        logger.info("source_files_changed", slug=slug, file=file_path.name)
        self.feed.publish_threadsafe(self.registry.scan_sources(self.workspace_id), slug)

    def start(self) -> None:
        self.watcher.start()

    def stop(self) -> None:
        self.watcher.stop()


__all__ = [
    "SourceChangeHandler",
    "SourceFolderWatcher",
    "WorkspaceSourceWatch",
    "WATCHED_FILES",
]
