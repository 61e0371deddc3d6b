"""File system watcher that feeds vault changes to the incremental monitor"""

import asyncio
import logging
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from vault_vectors.services.incremental import IncrementalUpdateMonitor

logger = logging.getLogger(__name__)


class VaultEventHandler(FileSystemEventHandler):
    """Forward file events from the observer thread onto the event loop"""

    def __init__(self, monitor: IncrementalUpdateMonitor, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.monitor = monitor
        self.loop = loop
        self.events_seen = 0

    def _forward(self, path: str) -> None:
        if not self.monitor.is_monitored(Path(path)):
            return
        self.events_seen += 1
        self.loop.call_soon_threadsafe(self.monitor.notify_change, path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        # Treat move as delete old + create new
        self._forward(event.src_path)
        self._forward(event.dest_path)


class VaultWatcher:
    """Runs a watchdog observer over the vault root"""

    def __init__(self, monitor: IncrementalUpdateMonitor):
        self.monitor = monitor
        self._observer = None
        self.handler: VaultEventHandler | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start watching; must be called with (or from) the loop that owns the monitor"""
        if self._observer is not None:
            return
        loop = loop or asyncio.get_running_loop()
        self.handler = VaultEventHandler(self.monitor, loop)
        observer = Observer()
        observer.schedule(self.handler, str(self.monitor.vault_root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Watching vault for changes: {self.monitor.vault_root}")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Stopped watching vault")
