"""Filesystem watcher that triggers debounced plugin reloads.

watchdog delivers events on its observer thread; they are marshalled
onto the event loop with ``call_soon_threadsafe`` and coalesced there
with ``loop.call_later`` so a burst of changes produces one reload.

A change is relevant when the path is a directory or the file name
ends with the bundle extension.
"""

import asyncio
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .bundles import is_bundle_name
from .tasks import spawn

logger = structlog.get_logger("gatebot.plugins")


def is_relevant_change(path: str, is_directory: bool = False) -> bool:
    """Whether a change at ``path`` should trigger a reload."""
    return is_directory or os.path.isdir(path) or is_bundle_name(os.path.basename(path))


class ReloadDebouncer:
    """Coalesces change notifications into a single reload callback.

    Must be driven from the event loop thread.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_reload: Callable[[], Awaitable[None]],
        debounce_seconds: float = 1.0,
    ):
        self._loop = loop
        self._on_reload = on_reload
        self.debounce_seconds = debounce_seconds
        self._timer: Optional[asyncio.TimerHandle] = None
        self.pending_changes = 0

    def notify(self) -> None:
        """Record one change and restart the debounce window."""
        self.pending_changes += 1
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        logger.info("plugin_change_debounced", changes=self.pending_changes)
        self.pending_changes = 0
        spawn(self._on_reload(), name="plugin-reload")

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.pending_changes = 0


class _PluginDirHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the debouncer on the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, debouncer: ReloadDebouncer):
        super().__init__()
        self._loop = loop
        self._debouncer = debouncer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        try:
            relevant = is_relevant_change(path, event.is_directory)
        except OSError as e:
            logger.error("plugin_change_check_failed", path=path, error=str(e))
            return
        if not relevant:
            return
        logger.info("plugin_change_detected", event=event.event_type, path=os.path.basename(path))
        self._loop.call_soon_threadsafe(self._debouncer.notify)


class PluginWatcher:
    """Watches the plugin root (non-recursive) and schedules reloads.

    Args:
        plugins_dir: Directory to watch.
        on_reload: Coroutine function invoked once per debounce window.
        debounce_seconds: Quiet period required before reloading.
    """

    def __init__(
        self,
        plugins_dir: Path,
        on_reload: Callable[[], Awaitable[None]],
        debounce_seconds: float = 1.0,
    ):
        self.plugins_dir = plugins_dir
        self._on_reload = on_reload
        self.debounce_seconds = debounce_seconds
        self._observer: Optional[Observer] = None
        self._debouncer: Optional[ReloadDebouncer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._observer is not None:
            return
        loop = loop or asyncio.get_running_loop()
        self.plugins_dir.mkdir(parents=True, exist_ok=True)

        self._debouncer = ReloadDebouncer(loop, self._on_reload, self.debounce_seconds)
        observer = Observer()
        observer.schedule(_PluginDirHandler(loop, self._debouncer), str(self.plugins_dir), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("plugin_watch_started", path=str(self.plugins_dir))

    def stop(self) -> None:
        if self._debouncer is not None:
            self._debouncer.cancel()
            self._debouncer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("plugin_watch_stopped")
