"""Watches the record directory and turns file changes into bean events.

The watcher never reads bean files itself: a change only says *which* bean
moved, and the store is asked for its current state. Bursts of writes to
one file are coalesced by a per-path debounce timer.
"""

import logging
import os
import re
import threading
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from talos.events import (
    BeanCreated,
    BeanDeleted,
    BeanUpdated,
    EventStream,
    StatusChanged,
    TagsChanged,
    WatcherEvent,
)
from talos.integrations.beans import BeansCliError
from talos.models import Bean

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.1

# Bean files are named {id}--{slug}.md
_BEAN_FILE = re.compile(r"^([A-Za-z0-9_-]+?)--")


def bean_id_from_path(path: str | Path) -> str | None:
    p = Path(path)
    if p.suffix != ".md":
        return None
    match = _BEAN_FILE.match(p.stem)
    return match.group(1) if match else None


class _BeanFileHandler(FileSystemEventHandler):
    def __init__(self, watcher: "Watcher"):
        super().__init__()
        self.watcher = watcher

    def _touch(self, event: FileSystemEvent, path):
        if not event.is_directory and path:
            self.watcher.schedule(os.fsdecode(path))

    def on_created(self, event):
        self._touch(event, event.src_path)

    def on_modified(self, event):
        self._touch(event, event.src_path)

    def on_deleted(self, event):
        self._touch(event, event.src_path)

    def on_moved(self, event):
        self._touch(event, event.src_path)
        self._touch(event, event.dest_path)


class Watcher:
    """Read-only observer of the record store.

    `store` needs `list_beans()` and `get_bean(id)`.
    """

    def __init__(self, beans_dir: str | Path, store, debounce: float = DEBOUNCE_SECONDS):
        self.beans_dir = Path(beans_dir)
        self.store = store
        self.debounce = debounce
        self.events: EventStream[WatcherEvent] = EventStream("watcher")
        self._cache: dict[str, Bean] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._observer: Observer | None = None

    # ── Cache ────────────────────────────────────────────────────────────────

    def get_bean(self, bean_id: str) -> Bean | None:
        with self._lock:
            return self._cache.get(bean_id)

    def get_all(self) -> list[Bean]:
        with self._lock:
            return list(self._cache.values())

    def load(self) -> int:
        """Bulk load every bean into the cache without publishing anything."""
        beans = self.store.list_beans()
        with self._lock:
            self._cache = {bean.id: bean for bean in beans}
        logger.info("Loaded %d beans", len(beans))
        return len(beans)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        if self._observer is not None:
            return
        self.load()
        self.beans_dir.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_BeanFileHandler(self), str(self.beans_dir), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self.beans_dir)

    def stop(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Watcher stopped")

    # ── Change handling ──────────────────────────────────────────────────────

    def schedule(self, path: str):
        """Restart the debounce window for a file."""
        if bean_id_from_path(path) is None:
            return
        timer = threading.Timer(self.debounce, self._fire, args=(path,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.get(path)
            self._timers[path] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire(self, path: str):
        with self._lock:
            if self._timers.get(path) is not threading.current_thread():
                return  # superseded by a later change
            del self._timers[path]
        bean_id = bean_id_from_path(path)
        if bean_id:
            self.refresh(bean_id)

    def refresh(self, bean_id: str) -> list[WatcherEvent]:
        """Re-fetch one bean, diff it against the cache and publish the result."""
        with self._refresh_lock:
            try:
                current = self.store.get_bean(bean_id)
            except BeansCliError as e:
                logger.error("Failed to fetch bean %s: %s", bean_id, e)
                return []

            with self._lock:
                previous = self._cache.get(bean_id)
                if current is None:
                    self._cache.pop(bean_id, None)
                else:
                    self._cache[bean_id] = current

            events = diff_beans(bean_id, previous, current)
            for event in events:
                self.events.publish(event)
            return events


def diff_beans(bean_id: str, previous: Bean | None, current: Bean | None) -> list[WatcherEvent]:
    if previous is None and current is None:
        return []
    if previous is None:
        return [BeanCreated(bean=current)]
    if current is None:
        return [BeanDeleted(bean_id=bean_id, previous=previous)]
    if previous == current:
        return []

    events: list[WatcherEvent] = [BeanUpdated(bean=current, previous=previous)]
    if previous.status != current.status:
        events.append(StatusChanged(bean=current, old_status=previous.status, new_status=current.status))
    added = sorted(set(current.tags) - set(previous.tags))
    removed = sorted(set(previous.tags) - set(current.tags))
    if added or removed:
        events.append(TagsChanged(bean=current, added=added, removed=removed))
    return events
